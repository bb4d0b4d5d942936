"""Per-namespace file locks serialising lifecycle operations across processes."""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

LOG = logging.getLogger(__name__)


@contextmanager
def namespace_lock(lock_dir: Path, name: str) -> Iterator[Path]:
    """Hold an exclusive ``flock`` on ``<lock_dir>/<name>.lock``.

    Blocks until any other holder (another hook invocation for the same
    name) releases it.  The lock file is left in place; removing it would
    race with a waiter that already opened it.
    """

    lock_dir = Path(lock_dir)
    lock_dir.mkdir(parents=True, exist_ok=True, mode=0o755)
    lock_file = lock_dir / f"{name}.lock"

    fd = os.open(str(lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            LOG.info("%s: waiting for lock %s", name, lock_file)
            fcntl.flock(fd, fcntl.LOCK_EX)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        LOG.debug("%s: acquired lock %s", name, lock_file)
        try:
            yield lock_file
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            LOG.debug("%s: released lock %s", name, lock_file)
    finally:
        os.close(fd)
