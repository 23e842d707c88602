from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


class PrincipalTokenError(ValueError):
    """Raised when a principal bearer token is invalid or expired."""


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller as handed over by the identity provider."""

    user_id: str
    tenant_id: str | None
    roles: frozenset[str]
    expires_at: datetime
    email: str | None = None

    def has_any_role(self, allowed: tuple[str, ...] | frozenset[str]) -> bool:
        return any(role in self.roles for role in allowed)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def create_principal(
    *,
    user_id: str,
    tenant_id: str | None,
    roles: frozenset[str],
    ttl_minutes: int,
    email: str | None = None,
    now: datetime | None = None,
) -> Principal:
    issued_at = now or datetime.now(timezone.utc)
    return Principal(
        user_id=user_id,
        tenant_id=tenant_id,
        roles=roles,
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
        email=email,
    )


def encode_principal_token(principal: Principal, *, secret: str) -> str:
    if not secret:
        raise PrincipalTokenError("principal token secret is empty")

    payload_json = json.dumps(
        {
            "sub": principal.user_id,
            "email": principal.email,
            "tenant_id": principal.tenant_id,
            "roles": sorted(principal.roles),
            "exp": int(principal.expires_at.timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{payload_b64}.{signature}"


def decode_principal_token(token: str, *, secret: str, now: datetime | None = None) -> Principal:
    if not token or "." not in token:
        raise PrincipalTokenError("invalid token format")
    if not secret:
        raise PrincipalTokenError("principal token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    expected = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise PrincipalTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise PrincipalTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise PrincipalTokenError("token payload decoding failed")

    user_id = str(payload_obj.get("sub", "")).strip()
    if not user_id:
        raise PrincipalTokenError("token subject missing")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise PrincipalTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise PrincipalTokenError("token expired")

    raw_roles = payload_obj.get("roles", [])
    if not isinstance(raw_roles, list):
        raise PrincipalTokenError("token roles invalid")

    raw_tenant = payload_obj.get("tenant_id")
    tenant_id = str(raw_tenant).strip() if raw_tenant is not None else ""
    raw_email = payload_obj.get("email")

    return Principal(
        user_id=user_id,
        tenant_id=tenant_id or None,
        roles=frozenset(str(role) for role in raw_roles),
        expires_at=expires_at,
        email=str(raw_email) if raw_email else None,
    )
