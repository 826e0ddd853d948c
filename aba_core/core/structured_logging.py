"""Structured logging helpers (PHI-safe)."""

from typing import Any

from aba_core.schemas.auth import Caller


def build_log_context(
    *,
    user_id: int | None = None,
    org_id: int | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if org_id:
        context["org_id"] = org_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def caller_log_context(caller: Caller | None, **extra: Any) -> dict[str, Any]:
    """Log context for a resolved caller. Never includes PHI."""
    if caller is None:
        return build_log_context(**extra)
    return build_log_context(user_id=caller.user_id, org_id=caller.organization_id, **extra)
