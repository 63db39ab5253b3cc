from datetime import datetime, timedelta, timezone
import os

import jwt

JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL_HOURS = 8
REQUIRED_CLAIMS = ("sub", "company_id", "exp")
KNOWN_ROLES = frozenset({"SUPER_ADMIN", "OWNER", "ADMIN", "MANAGER", "EMPLOYEE"})


def _signing_key() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ValueError("JWT_SECRET is required")
    if len(secret) < 32:
        raise ValueError("JWT_SECRET must be at least 32 characters")
    return secret


def _token_ttl() -> timedelta:
    raw = os.getenv("JWT_TTL_HOURS")
    hours = int(raw) if raw else DEFAULT_TOKEN_TTL_HOURS
    return timedelta(hours=max(1, hours))


def _normalize_role(role: str) -> str:
    normalized = str(role).upper()
    if normalized not in KNOWN_ROLES:
        raise ValueError(f"Unknown role: {role}")
    return normalized


def create_access_token(user_id: int, company_id: int, role: str = "EMPLOYEE") -> str:
    """Sign a token binding a user to one company and one role."""
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "company_id": int(company_id),
        "role": _normalize_role(role),
        "iat": issued_at,
        "exp": issued_at + _token_ttl(),
    }
    return jwt.encode(claims, _signing_key(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    try:
        claims = jwt.decode(
            token,
            _signing_key(),
            algorithms=[JWT_ALGORITHM],
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.PyJWTError as exc:
        raise ValueError("Invalid or expired token") from exc

    role = claims.get("role")
    if role is not None and str(role).upper() not in KNOWN_ROLES:
        raise ValueError("Invalid token claims")

    return claims
