class SyncError(Exception):
    code = "sync_error"


class FatalFetchError(SyncError):
    """A source needed for matching could not be read; the run cannot continue."""

    code = "fatal_fetch"

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class InvalidDataError(SyncError):
    code = "invalid_data"


class StopRequested(SyncError):
    """Shutdown was requested before the request could be sent."""

    code = "stop_requested"


class RemoteError(SyncError):
    code = "remote_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        target: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.target = target
        self.attempts = attempts

    def __str__(self) -> str:
        message = super().__str__()
        if self.attempts > 1:
            return f"{message} (after {self.attempts} attempts)"
        return message


class TransientRemoteError(RemoteError):
    code = "transient_remote"


class ThrottledError(TransientRemoteError):
    code = "throttled"


class TerminalRemoteError(RemoteError):
    code = "terminal_remote"
