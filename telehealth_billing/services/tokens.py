from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired


@dataclass(frozen=True)
class CallerContext:
    """Who is invoking an operation. Recorded as created_by/updated_by and on audit events."""

    user_id: Optional[int]
    role: str = "user"

    @classmethod
    def system(cls) -> "CallerContext":
        return cls(user_id=None, role="system")

    @property
    def is_system(self) -> bool:
        return self.role == "system"


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("CALLER_TOKEN_SALT", "caller-token-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


def issue_caller_token(ctx: CallerContext) -> str:
    return _serializer().dumps({"u": ctx.user_id, "r": ctx.role})


def from_token(token: str, max_age_seconds: int | None = None) -> Optional[CallerContext]:
    """Verify a signed caller token; None when tampered with or expired."""
    if max_age_seconds is None:
        max_age_seconds = int(current_app.config.get("CALLER_TOKEN_MAX_AGE", 3600))
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or "r" not in data:
        return None
    return CallerContext(user_id=data.get("u"), role=data["r"])
