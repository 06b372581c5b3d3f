from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.db import IntegrityError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from common.errors import DomainError

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."
CONSTRAINT_CONFLICT_MESSAGE = "The request conflicts with a record changed by another terminal."

EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


def build_error_envelope(*, code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(code=code, message=message, errors=errors, status_code=status_code),
        status=status_code,
    )


def _log_context(context: dict[str, Any]) -> dict[str, Any]:
    view = context.get("view")
    request = context.get("request")
    return {
        "view": view.__class__.__name__ if view else "unknown",
        "request_id": getattr(request, "request_id", None),
    }


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """Render every API failure as ``{code, message, errors, status}``.

    Domain errors carry their own code and details. A constraint violation that
    escaped the service layer (two terminals racing on the same table, shift or
    approval) is reported as a conflict instead of a server error.
    """
    log_context = _log_context(context)

    if isinstance(exc, DomainError):
        logger.info(
            "domain_error code=%s view=%s message=%s",
            exc.default_code,
            log_context["view"],
            exc.message,
            extra={"request_id": log_context["request_id"]},
        )
        return error_response(
            code=exc.default_code,
            message=exc.message,
            errors=exc.details or None,
            status_code=exc.status_code,
        )

    if isinstance(exc, IntegrityError):
        logger.warning(
            "constraint_conflict view=%s error=%s",
            log_context["view"],
            exc,
            extra={"request_id": log_context["request_id"]},
        )
        return error_response(code="conflict", message=CONSTRAINT_CONFLICT_MESSAGE, status_code=status.HTTP_409_CONFLICT)

    response = drf_exception_handler(exc, context)
    if response is None:
        logger.exception("Unhandled API exception in %s", log_context["view"], extra={"request_id": log_context["request_id"]})
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    response.data = build_error_envelope(
        code=_build_code(exc),
        message=_build_message(exc, response.data),
        errors=_normalize_errors(response.data),
        status_code=response.status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code
    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))
    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = data.get("detail") if isinstance(data, Mapping) else data if isinstance(data, str) else None
    if detail:
        return str(detail)
    if isinstance(exc, Throttled):
        return "Request was throttled."
    return str(getattr(exc, "detail", GENERIC_SERVER_ERROR_MESSAGE))


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        return None if set(data.keys()) == {"detail"} else data
    if isinstance(data, Sequence) and not isinstance(data, str):
        return data
    return None
