"""Exception hierarchy shared by the parser, generator and lifecycle code.

Every error carries the process exit code the CLI reports for it, so the
lifecycle hook surface can translate failures without a lookup table.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ConfinementError(Exception):
    """Base class for all vpn-netns failures."""

    exit_code = 1


class UsageError(ConfinementError):
    """Bad invocation (wrong arguments, unknown namespace name)."""

    exit_code = 1


class ConfigSourceError(ConfinementError):
    """The tunnel configuration source is missing or unreadable."""

    exit_code = 1


class ParseError(ConfinementError):
    """Structural violation in a wg-quick configuration."""

    exit_code = 2

    def __init__(
        self,
        message: str,
        line_number: Optional[int] = None,
        line: Optional[str] = None,
    ) -> None:
        self.message = message
        self.line_number = line_number
        self.line = line
        super().__init__(self._format())

    def _format(self) -> str:
        if self.line_number is None:
            return self.message
        if self.line is None:
            return f"line {self.line_number}: {self.message}"
        return f"line {self.line_number}: {self.message}: {self.line!r}"


class ValidationError(ConfinementError):
    """A mandatory section or field is missing or out of range."""

    exit_code = 3

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.message = message
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class ReachabilityError(ConfinementError):
    """A tunnel endpoint stayed unreachable after all probe attempts."""

    exit_code = 4

    def __init__(self, host: str, attempts: int) -> None:
        self.host = host
        self.attempts = attempts
        super().__init__(f"failed to reach '{host}' after {attempts} attempts")


class ResourceConflictError(ConfinementError):
    """An OS resource exists when it must not, or vanished when it must exist."""

    exit_code = 5


class CommandError(ConfinementError):
    """An external command or netlink request failed."""

    exit_code = 1

    def __init__(
        self,
        command: Sequence[str] | str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.command = command if isinstance(command, str) else " ".join(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f" (exit {returncode})" if returncode is not None else ""
        message = f"'{self.command}' failed{detail}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class TeardownError(ConfinementError):
    """One or more existing resources could not be removed."""

    exit_code = 1

    def __init__(self, name: str, failures: Sequence[str]) -> None:
        self.name = name
        self.failures = list(failures)
        super().__init__(
            f"teardown of '{name}' failed: " + "; ".join(self.failures)
        )


class OperationCancelled(ConfinementError):
    """A stop was requested while ``up`` was running."""

    exit_code = 130
