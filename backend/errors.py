# errors.py - Application error taxonomy
# Every error raised by services and routers maps to one kind and one HTTP status.
# Handlers in main.py render them as {"error": {kind, message, details, request_id}}.

from typing import Any, Dict, Optional


class AppError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class BadRequest(AppError):
    kind = "bad_request"
    status_code = 400


class Unauthorized(AppError):
    """Credential problem. ``reason`` is one of missing, malformed, expired."""
    kind = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "", reason: str = "malformed"):
        super().__init__(message or f"Token {reason}", {"reason": reason})
        self.reason = reason


class Forbidden(AppError):
    kind = "forbidden"
    status_code = 403


class NotFound(AppError):
    kind = "not_found"
    status_code = 404


class Conflict(AppError):
    kind = "conflict"
    status_code = 409


class Internal(AppError):
    kind = "internal"
    status_code = 500


class StoreError(Internal):
    kind = "store_error"


# ============================================================
# UPSTREAM (GitHub, SMTP)
# ============================================================

class UpstreamError(AppError):
    kind = "upstream_error"
    status_code = 502


class GitHubNotFound(UpstreamError):
    kind = "upstream_not_found"
    status_code = 404


class GitHubUnauthorized(UpstreamError):
    kind = "upstream_unauthorized"
    status_code = 401


class RateLimited(UpstreamError):
    kind = "rate_limited"
    status_code = 429


class UpstreamTimeout(UpstreamError):
    kind = "upstream_timeout"
    status_code = 504


class DeliveryError(UpstreamError):
    kind = "delivery_failed"
    status_code = 502
