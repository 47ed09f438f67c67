from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_COORDINATES = "INVALID_COORDINATES"
    FETCH_FAILED = "FETCH_FAILED"
    INVALID_RESPONSE = "INVALID_RESPONSE"


class GeoPharCacheError(Exception):
    """Raised for expected failures of a live lookup or of caller input.

    The retry orchestrator folds these into "no usable result this attempt";
    the code and ``recoverable`` flag only shape what gets logged.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }
