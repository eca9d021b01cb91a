from __future__ import annotations


class ProxyError(RuntimeError):
    """Base class for proxy engine failures."""


class DispatchFailed(ProxyError):
    def __init__(
        self,
        label: str,
        attempts: int,
        last_error: BaseException | None = None,
        *,
        retryable: bool = True,
    ) -> None:
        detail = f": {last_error!r}" if last_error is not None else ""
        super().__init__(f"{label} failed after {attempts} attempt(s){detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.retryable = retryable


class StorageFailure(ProxyError):
    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"storage operation '{operation}' failed{detail}")
        self.operation = operation


class SwitchConflict(ProxyError):
    def __init__(self, system_id: str, message: str) -> None:
        super().__init__(message)
        self.system_id = system_id


class ChannelRejected(ProxyError):
    """The channel refused the call outright (missing permission, unknown message); retrying cannot help."""
