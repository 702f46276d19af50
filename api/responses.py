"""
api/responses.py -- Response envelope helpers.

Every successful API response is {"success": true, "data": ...}; every error
is {"success": false, "error": {...}}. Handlers build payloads from api.models
response models and call ok(). Errors are raised as AppError and rendered by
the exception handlers in api/main.py through app_error_response().
"""

from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.models import ErrorDetail, ErrorResponse
from core.errors import AppError


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def ok(data: Any = None, status_code: int = 200, message: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"success": True, "data": jsonable_encoder(_dump(data))}
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


def error_response(status_code: int, code: str, message: str, detail: Any = None) -> JSONResponse:
    """Build the error envelope: {"success": false, "error": {code, message, detail}}."""
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    response = JSONResponse(status_code=status_code, content=jsonable_encoder(body.model_dump()))
    response.headers["Cache-Control"] = "no-store"
    return response


def app_error_response(exc: AppError) -> JSONResponse:
    return error_response(exc.status_code, exc.code, exc.message, exc.detail)


def no_store(response: JSONResponse) -> JSONResponse:
    """Mark a response carrying credentials as uncacheable. [M5]"""
    response.headers["Cache-Control"] = "no-store"
    return response
