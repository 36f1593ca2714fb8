import uuid

from fastapi import Request


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def envelope(request: Request, data: dict | list | None, error: dict | None = None) -> dict:
    return {"data": data, "meta": {"request_id": _request_id(request)}, "error": error}


def exception_envelope(request: Request, status_code: int, message: str, code: str, details: dict | None = None) -> dict:
    return {
        "data": None,
        "meta": {"request_id": _request_id(request), "status_code": status_code},
        "error": {"code": code, "message": message, "details": details or {}},
    }
