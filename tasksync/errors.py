from __future__ import annotations


class TaskSyncError(Exception):
    pass


class ValidationError(TaskSyncError):
    pass


class UnknownRecordError(TaskSyncError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown record"


class CodecError(TaskSyncError, ValueError):
    pass


class StoreError(TaskSyncError):
    pass


class TransportError(TaskSyncError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RetriesExhausted(TransportError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        detail = str(last_error).strip() or last_error.__class__.__name__
        super().__init__(f"{operation} failed after {attempts} attempts: {detail}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
