from __future__ import annotations


class IngestionError(Exception):
    """Base class for failures that surface to a trigger caller as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AdmissionDenied(IngestionError):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", *, remaining: int = 0) -> None:
        super().__init__(message)
        self.remaining = remaining


class Unauthorized(IngestionError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class UpstreamFetchError(IngestionError):
    status_code = 502

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PersistenceWriteError(IngestionError):
    status_code = 500

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class MisconfigurationError(IngestionError):
    status_code = 500
