"""
Response shapes shared by the circulation tools.

Every tool answers with human-readable ``content`` for the model plus
structured ``data`` for follow-up calls. Failures set ``isError`` and carry
the machine-readable error kind and code next to the message, so a terminal
can show "Copy not available" verbatim and still branch on
``copy_not_available``.
"""

from typing import Any

from pydantic import ValidationError

from ..database.repository import RepositoryException


def text_content(text: str) -> list[dict[str, str]]:
    return [{"type": "text", "text": text}]


def success_response(message: str, **data: Any) -> dict[str, Any]:
    return {"content": text_content(message), "data": data}


def error_response(error: RepositoryException) -> dict[str, Any]:
    """A refused operation: not found, conflict, policy, state or permission."""
    return {
        "isError": True,
        "content": text_content(error.message),
        "data": {"error": error.to_dict()},
    }


def invalid_params_response(operation: str, error: ValidationError) -> dict[str, Any]:
    return {
        "isError": True,
        "content": text_content(f"Invalid {operation} parameters: {error}"),
        "data": {"error": {"kind": "invalid_params", "code": None, "message": str(error)}},
    }


def unexpected_error_response(error: Exception) -> dict[str, Any]:
    return {
        "isError": True,
        "content": text_content(f"An unexpected error occurred: {error!s}"),
        "data": {"error": {"kind": "internal", "code": None, "message": str(error)}},
    }
