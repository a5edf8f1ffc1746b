"""Error taxonomy for daemon supervision and checking."""


class DaemonError(Exception):
    """Application-level error raised or returned by daemon operations."""

    def __init__(self, code: str, message: str) -> None:
        """Initialize with a machine-readable code and a human-readable message.

        Args:
            code: Machine-readable error code (e.g. "daemon_crashed").
            message: Human-readable error description.

        """
        super().__init__(message)
        self.code = code


class SpawnFailure(DaemonError):
    """The daemon executable or its configuration is invalid. Fatal for the session."""

    def __init__(self, message: str) -> None:
        super().__init__("spawn_failure", message)


class DaemonCrashed(DaemonError):
    """The daemon process died (or stopped answering) while a command was outstanding."""

    def __init__(self, message: str) -> None:
        super().__init__("daemon_crashed", message)


class DaemonUnavailable(DaemonError):
    """The crash-loop threshold was exceeded; no further automatic restarts."""

    def __init__(self, message: str) -> None:
        super().__init__("daemon_unavailable", message)


class CommandFailed(DaemonError):
    """The dmypy client exited with an unexpected code while the daemon stayed alive."""

    def __init__(self, message: str) -> None:
        super().__init__("command_failed", message)


class CheckFailure(DaemonError):
    """A check could not be completed even after the automatic retry."""

    def __init__(self, message: str) -> None:
        super().__init__("check_failed", message)


class Cancelled(DaemonError):
    """The request was superseded or its workspace was torn down. Never shown to the user."""

    def __init__(self, message: str = "Request cancelled.") -> None:
        super().__init__("cancelled", message)


class ConfigError(Exception):
    """A configuration file exists but cannot be used."""


# Errors after which no further daemon work is attempted until an explicit restart.
FATAL_CODES = frozenset({"spawn_failure", "daemon_unavailable"})

_BY_CODE: dict[str, type[DaemonError]] = {
    "spawn_failure": SpawnFailure,
    "daemon_crashed": DaemonCrashed,
    "daemon_unavailable": DaemonUnavailable,
    "command_failed": CommandFailed,
    "check_failed": CheckFailure,
    "cancelled": Cancelled,
}


def error_from_code(code: str, message: str) -> DaemonError:
    """Rebuild the typed error for a result's error code."""
    cls = _BY_CODE.get(code)
    if cls is None:
        return DaemonError(code, message)
    return cls(message)
