"""Unified error handling utilities for the tgrelay API."""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from enum import Enum
from typing import Any
from uuid import uuid4

from fastapi import status
from fastapi.responses import JSONResponse

from tgrelay.logging import get_logger


class ErrorCode(str, Enum):
    """Application level error codes exposed via the public API."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_logger = get_logger(__name__)


class AppError(Exception):
    """Base exception for API facing errors."""

    __slots__ = ("message", "code", "http_status", "meta", "headers")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        meta: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.meta = meta
        self.headers = headers

    def as_response(self, *, request_path: str, method: str) -> JSONResponse:
        """Serialise the exception into the canonical error envelope."""

        return _build_response(
            message=self.message,
            code=self.code,
            status_code=self.http_status,
            request_path=request_path,
            method=method,
            meta=self.meta,
            headers=self.headers,
        )


class ValidationAppError(AppError):
    """Error raised when a client submitted invalid input."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            http_status=status_code,
            meta=meta,
        )


class NotFoundError(AppError):
    """Error raised when a resource could not be located."""

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            http_status=status.HTTP_404_NOT_FOUND,
        )


class ConflictError(AppError):
    """Error raised when the resource is not in a state that allows the call."""

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.CONFLICT,
            http_status=status.HTTP_409_CONFLICT,
            meta=meta,
        )


class InternalServerError(AppError):
    """Error raised when the application encountered an unexpected failure."""

    def __init__(self, message: str = "An unexpected error occurred.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.INTERNAL_ERROR,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"account not found: {account_id}")
        self.account_id = account_id


class ContactNotFoundError(NotFoundError):
    def __init__(self, contact_id: str) -> None:
        super().__init__(f"contact not found: {contact_id}")
        self.contact_id = contact_id


class NothingToRetryError(ValidationAppError):
    def __init__(self, job_id: str) -> None:
        super().__init__("no failed targets to retry", meta={"job_id": job_id})
        self.job_id = job_id


class HandshakeNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("session not found")


class SecretNotAwaitedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("no handshake awaiting secret")


class SecretSlotOccupiedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("a secret is already pending for this handshake")


def _copy_meta(meta: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if meta is None:
        return None
    return dict(meta)


def _log_level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code in {status.HTTP_409_CONFLICT, 502, 503, 504}:
        return logging.WARNING
    return logging.INFO


def _build_response(
    *,
    message: str,
    code: ErrorCode,
    status_code: int,
    request_path: str,
    method: str,
    meta: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    debug_id = uuid4().hex

    safe_meta = _copy_meta(meta)
    payload: MutableMapping[str, Any] = {
        "ok": False,
        "error": {"code": code.value, "message": message},
    }
    if safe_meta:
        payload["error"]["meta"] = safe_meta

    response = JSONResponse(status_code=status_code, content=payload)
    response.headers["X-Debug-Id"] = debug_id
    if headers:
        for name, value in headers.items():
            response.headers[name] = value

    _logger.log(
        _log_level_for_status(status_code),
        "API request failed",
        extra={
            "event": "api.error",
            "code": code.value,
            "status": status_code,
            "path": request_path,
            "method": method,
            "debug_id": debug_id,
        },
    )
    return response


def to_response(
    *,
    message: str,
    code: ErrorCode,
    status_code: int,
    request_path: str,
    method: str,
    meta: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Create an error response with the standard envelope."""

    return _build_response(
        message=message,
        code=code,
        status_code=status_code,
        request_path=request_path,
        method=method,
        meta=meta,
        headers=headers,
    )


__all__ = [
    "AccountNotFoundError",
    "AppError",
    "ConflictError",
    "ContactNotFoundError",
    "ErrorCode",
    "HandshakeNotFoundError",
    "InternalServerError",
    "JobNotFoundError",
    "NotFoundError",
    "NothingToRetryError",
    "SecretNotAwaitedError",
    "SecretSlotOccupiedError",
    "ValidationAppError",
    "to_response",
]
