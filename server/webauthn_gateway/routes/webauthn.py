"""HTTP routes for the registration and login ceremonies."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Type

from flask import Blueprint, Response, current_app, jsonify, request

from ..errors import (
    CeremonyError,
    CeremonyTimeoutError,
    IdentityGenerationError,
    InvalidStateError,
    StorageError,
    UserNotFoundError,
    ValidationError,
)
from ..orchestrator import CeremonyOrchestrator

__all__ = ["EXTENSION_KEY", "bp"]

EXTENSION_KEY = "webauthn_gateway"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

bp = Blueprint("webauthn", __name__, url_prefix="/webauthn")


_REGISTER_BEGIN_STATUS: Mapping[Type[Exception], int] = {
    ValidationError: 400,
    IdentityGenerationError: 500,
    CeremonyError: 500,
    CeremonyTimeoutError: 500,
    StorageError: 500,
}
_REGISTER_FINISH_STATUS: Mapping[Type[Exception], int] = {
    ValidationError: 400,
    UserNotFoundError: 400,
    InvalidStateError: 400,
    CeremonyError: 400,
    CeremonyTimeoutError: 500,
    StorageError: 500,
}
_LOGIN_BEGIN_STATUS: Mapping[Type[Exception], int] = {
    ValidationError: 400,
    UserNotFoundError: 404,
    CeremonyError: 500,
    CeremonyTimeoutError: 500,
    StorageError: 500,
}
_LOGIN_FINISH_STATUS: Mapping[Type[Exception], int] = {
    ValidationError: 400,
    UserNotFoundError: 404,
    InvalidStateError: 400,
    CeremonyError: 500,
    CeremonyTimeoutError: 500,
    StorageError: 500,
}


def _orchestrator() -> CeremonyOrchestrator:
    return current_app.extensions[EXTENSION_KEY]


def _error_response(exc: Exception, statuses: Mapping[Type[Exception], int]) -> Response:
    status = next(
        (statuses[cls] for cls in type(exc).__mro__ if cls in statuses),
        500,
    )
    if status >= 500:
        current_app.logger.error("%s failed: %s", request.path, exc)
    response = jsonify({"error": str(exc)})
    response.status_code = status
    return response


def _plain_text(message: str) -> Response:
    return Response(message, status=200, mimetype="text/plain")


def _read_json_object() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("invalid request body")
    return payload


def _require_name(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


def _query_user_name() -> str:
    return _require_name(request.args.get("userName"), "userName")


@bp.after_app_request
def apply_cors_headers(response: Response) -> Response:
    for header, value in CORS_HEADERS.items():
        response.headers[header] = value
    return response


@bp.app_errorhandler(404)
def not_found(_exc: Exception):
    return jsonify({"message": "not found"}), 404


@bp.app_errorhandler(405)
def method_not_allowed(_exc: Exception):
    return jsonify({"message": "method not allowed"}), 405


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "healthy"})


@bp.route("/registration/begin", methods=["POST", "OPTIONS"])
def registration_begin():
    if request.method == "OPTIONS":
        return Response(status=200)

    try:
        payload = _read_json_object()
        name = _require_name(payload.get("name"), "name")
        display_name = payload.get("displayName")
        if display_name is None:
            display_name = name
        elif not isinstance(display_name, str):
            raise ValidationError("displayName must be a string")
        options = _orchestrator().register_begin(name, display_name)
    except (
        ValidationError,
        IdentityGenerationError,
        CeremonyError,
        CeremonyTimeoutError,
        StorageError,
    ) as exc:
        return _error_response(exc, _REGISTER_BEGIN_STATUS)

    return jsonify(options)


@bp.route("/registration/finish", methods=["POST", "OPTIONS"])
def registration_finish():
    if request.method == "OPTIONS":
        return Response(status=200)

    try:
        name = _query_user_name()
        response = _read_json_object()
        _orchestrator().register_finish(name, response)
    except (
        ValidationError,
        UserNotFoundError,
        InvalidStateError,
        CeremonyError,
        CeremonyTimeoutError,
        StorageError,
    ) as exc:
        return _error_response(exc, _REGISTER_FINISH_STATUS)

    current_app.logger.info("Registration finished for %s", name)
    return _plain_text("Registration Success")


@bp.route("/login/begin", methods=["POST", "OPTIONS"])
def login_begin():
    if request.method == "OPTIONS":
        return Response(status=200)

    try:
        payload = _read_json_object()
        name = _require_name(payload.get("name"), "name")
        options = _orchestrator().login_begin(name)
    except (
        ValidationError,
        UserNotFoundError,
        CeremonyError,
        CeremonyTimeoutError,
        StorageError,
    ) as exc:
        return _error_response(exc, _LOGIN_BEGIN_STATUS)

    return jsonify(options)


@bp.route("/login/finish", methods=["POST", "OPTIONS"])
def login_finish():
    if request.method == "OPTIONS":
        return Response(status=200)

    try:
        name = _query_user_name()
        response = _read_json_object()
        _orchestrator().login_finish(name, response)
    except (
        ValidationError,
        UserNotFoundError,
        InvalidStateError,
        CeremonyError,
        CeremonyTimeoutError,
        StorageError,
    ) as exc:
        return _error_response(exc, _LOGIN_FINISH_STATUS)

    current_app.logger.info("Login finished for %s", name)
    return _plain_text("Login Success")
