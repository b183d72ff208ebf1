"""Seam to the professional auth domain, which lives outside this package.

Only two things are consumed from it: "who is calling" (a verified JWT under
PROFESSIONAL_JWT_SECRET, audience "professional") and "is this user verified"
(the professional_users directory).
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import jwt

from persona_veil.errors import AuthenticationError
from persona_veil.models import VerificationStatus
from persona_veil.store.db import Database

ALGORITHM = "HS256"
AUDIENCE = "professional"


@dataclass(frozen=True)
class ProfessionalPrincipal:
    user_id: str
    role: str = "member"

    @property
    def is_moderator(self) -> bool:
        return self.role == "moderator"


def verify_professional_token(token: str, secret: str) -> ProfessionalPrincipal:
    if not token:
        raise AuthenticationError("Authentication required")
    try:
        payload = jwt.decode(
            token, secret, algorithms=[ALGORITHM], audience=AUDIENCE,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc
    return ProfessionalPrincipal(user_id=str(payload["sub"]), role=str(payload.get("role", "member")))


def issue_professional_token(user_id: str, secret: str, *, role: str = "member",
                             ttl_seconds: int = 3600) -> str:
    """Mint a professional-domain token. Production tokens come from the main auth service."""
    now = int(time.time())
    payload = {"sub": user_id, "role": role, "aud": AUDIENCE, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


@runtime_checkable
class UserDirectory(Protocol):
    """Read-only lookup of a professional user's verification state."""

    async def get_verification_status(self, user_id: str) -> VerificationStatus | None:
        ...


class SQLiteUserDirectory:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def get_verification_status(self, user_id: str) -> VerificationStatus | None:
        async with self._db.connect() as db:
            async with db.execute(
                "SELECT verification_status FROM professional_users WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return VerificationStatus(row[0])
        except ValueError:
            return VerificationStatus.UNVERIFIED

    async def upsert(self, user_id: str, status: VerificationStatus) -> None:
        """Mirror a status change pushed by the verification service."""
        async with self._db.connect() as db:
            await db.execute(
                """INSERT INTO professional_users (user_id, verification_status) VALUES (?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET verification_status = excluded.verification_status""",
                (user_id, status.value),
            )
