from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
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


class DomainError(APIException):
    """Base class for device registry errors rendered through the shared envelope."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request failed."
    default_code = "domain_error"


class MalformedIdentifier(DomainError):
    default_detail = "Identifier does not match the expected format."
    default_code = "malformed_identifier"


class InvalidSlot(DomainError):
    default_detail = "Slot is outside the allowed range."
    default_code = "invalid_slot"


class ResourceNotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource was not found."
    default_code = "not_found"


class ProjectNotFound(ResourceNotFound):
    default_detail = "Project was not found."


class DeviceNotFound(ResourceNotFound):
    default_detail = "Device was not found."


class UnknownDevice(ResourceNotFound):
    # Same shape for never-registered and deleted devices.
    default_detail = "Device is not registered."
    default_code = "unknown_device"


class Unauthorized(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid device key."
    default_code = "unauthorized"


class UniquenessConflict(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Value is already in use."
    default_code = "conflict"


class DuplicateName(UniquenessConflict):
    default_detail = "A project with this name already exists."
    default_code = "duplicate_name"


class SlotTaken(UniquenessConflict):
    default_detail = "This slot is already taken in the project."
    default_code = "slot_taken"


class CapacityExceeded(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Identifier capacity exhausted."
    default_code = "capacity_exceeded"


class MigrationFailure(DomainError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Legacy device migration failed."
    default_code = "migration_failure"

    def __init__(self, detail=None, *, device_id=None, legacy_id=None):
        super().__init__(detail)
        self.device_id = device_id
        self.legacy_id = legacy_id


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    response = drf_exception_handler(exc, context)

    if response is None:
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
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

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
