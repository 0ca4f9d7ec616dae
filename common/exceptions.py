from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from django.db import IntegrityError
from django.db.models import ProtectedError
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

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class BusinessRuleViolation(APIException):
    """A request that is well formed but breaks a stock or workflow rule.

    ``errors`` is returned verbatim in the envelope, e.g. the purchase orders
    rejected by a bulk action or the references blocking a delete.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The requested operation is not allowed in the current state."
    default_code = "business_rule_violation"

    def __init__(self, detail=None, code=None, errors=None):
        super().__init__(detail=detail, code=code)
        self.errors = errors


# Checked in order; the first matching class names the envelope code.
ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (BusinessRuleViolation, "business_rule_violation"),
    (ValidationError, "validation_error"),
    (NotAuthenticated, "not_authenticated"),
    (AuthenticationFailed, "authentication_failed"),
    (PermissionDenied, "permission_denied"),
    (NotFound, "not_found"),
    (MethodNotAllowed, "method_not_allowed"),
    (UnsupportedMediaType, "unsupported_media_type"),
    (ParseError, "parse_error"),
    (Throttled, "throttled"),
)


def build_error_envelope(*, code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    envelope = build_error_envelope(code=code, message=message, errors=errors, status_code=status_code)
    return Response(envelope, status=status_code)


def _database_error_response(exc: Exception) -> Response | None:
    if isinstance(exc, ProtectedError):
        referenced_by = sorted({str(obj._meta.verbose_name) for obj in exc.protected_objects})
        return error_response(
            code="protected_record",
            message="Record is still referenced and cannot be deleted.",
            errors={"referenced_by": referenced_by},
        )
    if isinstance(exc, IntegrityError):
        # Two writers racing past the SKU / code uniqueness checks.
        logger.warning("integrity_conflict error=%s", exc)
        return error_response(
            code="conflict",
            message="The record conflicts with an existing one. Reload and try again.",
            status_code=status.HTTP_409_CONFLICT,
        )
    return None


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    database_response = _database_error_response(exc)
    if database_response is not None:
        return database_response

    response = drf_exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception("Unhandled API exception in %s", view.__class__.__name__ if view else "unknown")
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    message, errors = _describe(exc, response.data)
    response.data = build_error_envelope(
        code=_code_for(exc),
        message=message,
        errors=errors,
        status_code=response.status_code,
    )
    return response


def _code_for(exc: Exception) -> str:
    for exception_class, code in ERROR_CODES:
        if isinstance(exc, exception_class):
            return code
    return str(getattr(exc, "default_code", "api_error"))


def _describe(exc: Exception, data: Any) -> tuple[str, Any]:
    """Split DRF's response payload into a human message and field errors."""
    if isinstance(exc, BusinessRuleViolation):
        return str(exc.detail), exc.errors
    if isinstance(exc, ValidationError):
        return "Validation failed.", data

    detail = data.get("detail") if isinstance(data, Mapping) else data
    if detail:
        return str(detail), None
    if isinstance(exc, Throttled):
        return "Request was throttled.", None
    return str(getattr(exc, "detail", "Request failed.")), None
