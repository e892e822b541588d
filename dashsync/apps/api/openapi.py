from __future__ import annotations

from typing import Any

from dashsync.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1", "backend": "postgrest"},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {
        "model": ErrorEnvelope,
        "description": "Bad request",
        "content": {"application/json": {"example": _error_example(code="BAD_REQUEST", message="Bad request")}},
    },
    401: {
        "model": ErrorEnvelope,
        "description": "Unauthorized",
        "content": {
            "application/json": {
                "example": _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid ops token"),
            }
        },
    },
    502: {
        "model": ErrorEnvelope,
        "description": "Data backend unavailable",
        "content": {
            "application/json": {
                "example": _error_example(code="BACKEND_UNAVAILABLE", message="backend error 503 on entries"),
            }
        },
    },
}
