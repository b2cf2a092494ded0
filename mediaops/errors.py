from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

INVALID_ARGUMENT = "invalid_argument"
NOT_FOUND = "not_found"
UNAUTHORIZED = "unauthorized"
INTERNAL_ERROR = "internal_error"

HTTP_STATUS: Dict[str, int] = {
    INVALID_ARGUMENT: 400,
    NOT_FOUND: 404,
    UNAUTHORIZED: 403,
    INTERNAL_ERROR: 500,
}


class MediaOpsError(RuntimeError):
    code = INTERNAL_ERROR

    def __init__(self, message: str, *, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data


class InvalidArgumentError(MediaOpsError):
    code = INVALID_ARGUMENT


class InvalidConfigurationError(InvalidArgumentError):
    """The request is well-formed but yields no work (e.g. no chapters)."""


class MediaNotFoundError(MediaOpsError):
    code = NOT_FOUND

    def __init__(self, message: str, file_path: Optional[str] = None) -> None:
        super().__init__(message, data={"fileName": file_path} if file_path else None)
        self.file_path = file_path


class MediaProbeError(MediaOpsError):
    code = INTERNAL_ERROR


@dataclass
class ErrorInfo:
    code: str
    message: str
    data: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            payload["data"] = dict(self.data)
        return payload

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 500)


def map_exception(exc: BaseException) -> ErrorInfo:
    if isinstance(exc, MediaOpsError):
        return ErrorInfo(code=exc.code, message=exc.message, data=exc.data)
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorInfo(code=INVALID_ARGUMENT, message=str(exc))
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)):
        filename = getattr(exc, "filename", None)
        return ErrorInfo(
            code=NOT_FOUND,
            message=exc.strerror or str(exc),
            data={"fileName": str(filename)} if filename else None,
        )
    if isinstance(exc, PermissionError):
        return ErrorInfo(code=UNAUTHORIZED, message=str(exc))
    return ErrorInfo(code=INTERNAL_ERROR, message=str(exc) or exc.__class__.__name__)


def dispatch(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
    """Run ``fn`` and wrap its outcome in a success/error envelope."""

    try:
        data = fn(*args, **kwargs)
    except Exception as exc:
        info = map_exception(exc)
        if info.code == INTERNAL_ERROR:
            logger.exception("Unhandled error in %s", getattr(fn, "__name__", fn))
        else:
            logger.info("Request rejected (%s): %s", info.code, info.message)
        return {"success": False, "error": info.as_dict()}
    return {"success": True, "data": data}
