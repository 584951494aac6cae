"""Caller identity read from trusted gateway headers.

Authentication itself happens upstream; this service only reads the result.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header

from .errors import AuthenticationError, AuthorizationError
from .models import Caller


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("Missing caller identity")
    return Caller(user_id=user_id, role=(x_user_role or "user").strip().lower())


def require_admin(caller: Caller) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError("Admin role required")
    return caller


def check_internal_token(expected: str, provided: str | None) -> None:
    """Reject internal calls unless a token is configured and matches."""
    if not expected:
        raise AuthenticationError("Internal route is disabled: no internal token configured")
    if not provided or not hmac.compare_digest(expected, provided):
        raise AuthenticationError("Invalid internal token")


def admin_caller(caller: Caller = Depends(get_caller)) -> Caller:
    return require_admin(caller)
