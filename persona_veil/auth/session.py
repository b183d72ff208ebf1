"""Anonymous-domain sessions, kept fully apart from professional auth.

Tokens are HS256 JWTs signed with ANONYMOUS_JWT_SECRET and scoped to the
"anonymous" audience. The only subject they carry is a persona id. Session
fingerprints are HMACs under a second secret (ANONYMOUS_SESSION_SECRET) and
live in process memory only; they exist for anomaly detection and are not a
durable identity.

Authorization state per token:
    Unauthenticated -> (create / switch) -> Active -> (expiry | logout | purge) -> Unauthenticated
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

import jwt

from persona_veil.crypto import primitives
from persona_veil.errors import AuthenticationError
from persona_veil.models import AnonymousSessionToken, SessionContext
from persona_veil.utils.timestamps import utcnow

_log = logging.getLogger(__name__)

ALGORITHM = "HS256"
AUDIENCE = "anonymous"
FINGERPRINT_SALT_BYTES = 16
TOKEN_ID_BYTES = 16


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"


@dataclass
class _Activity:
    persona_id: str
    expires_at: datetime
    last_seen: datetime
    fingerprint: str | None = None


class SessionIsolationLayer:
    def __init__(
        self,
        jwt_secret: str,
        session_secret: str,
        *,
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jwt_secret = jwt_secret
        self._session_secret = session_secret
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        # token id -> activity, for live tokens only
        self._activity: dict[str, _Activity] = {}
        # token id -> expiry, kept until the token would have expired anyway
        self._revoked: dict[str, datetime] = {}
        # persona id -> tokens issued before this instant are dead
        self._revoked_before: dict[str, datetime] = {}

    # ── Issue / verify ───────────────────────────────────────────────────────

    def issue_token(self, persona_id: str) -> str:
        now = self._clock()
        self._prune()
        expires_at = now + self.ttl
        token_id = primitives.random_hex(TOKEN_ID_BYTES)
        payload = {
            "persona_id": persona_id,
            "aud": AUDIENCE,
            "iat": now.timestamp(),
            "exp": int(expires_at.timestamp()),
            "jti": token_id,
            "fps": primitives.random_hex(FINGERPRINT_SALT_BYTES),
        }
        self._activity[token_id] = _Activity(persona_id, expires_at, now)
        return jwt.encode(payload, self._jwt_secret, algorithm=ALGORITHM)

    def decode_token(self, token: str) -> AnonymousSessionToken:
        """Validate signature, audience, expiry and revocation. Raises AuthenticationError."""
        if not token:
            raise AuthenticationError("Anonymous access requires authentication")
        try:
            payload = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=[ALGORITHM],
                audience=AUDIENCE,
                # expiry is checked below against the injected clock
                options={
                    "require": ["persona_id", "iat", "exp", "jti", "fps"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("Invalid anonymous token") from exc

        decoded = AnonymousSessionToken(
            persona_id=str(payload["persona_id"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            session_fingerprint_salt=str(payload["fps"]),
            token_id=str(payload["jti"]),
        )
        now = self._clock()
        if decoded.expires_at <= now:
            self._forget(decoded.token_id)
            raise AuthenticationError("Anonymous token expired")
        if decoded.token_id in self._revoked:
            raise AuthenticationError("Anonymous token revoked")
        cutoff = self._revoked_before.get(decoded.persona_id)
        if cutoff is not None and decoded.issued_at <= cutoff:
            raise AuthenticationError("Anonymous token revoked")
        return decoded

    def verify_anonymous_token(self, token: str) -> str:
        return self.decode_token(token).persona_id

    def state_of(self, token: str) -> SessionState:
        try:
            self.decode_token(token)
        except AuthenticationError:
            return SessionState.UNAUTHENTICATED
        return SessionState.ACTIVE

    # ── Fingerprints and activity ────────────────────────────────────────────

    def fingerprint(self, session: AnonymousSessionToken, user_agent: str | None) -> str:
        message = f"{session.persona_id}|{session.session_fingerprint_salt}|{user_agent or 'unknown'}"
        return primitives.hmac_digest(self._session_secret, message)

    def isolate_session(
        self,
        session: AnonymousSessionToken,
        user_agent: str | None,
        *,
        inactivity_timeout: timedelta | None = None,
        notify_suspicious: bool = True,
    ) -> SessionContext:
        """Bind the request to an ephemeral fingerprint and enforce the inactivity timeout."""
        now = self._clock()
        self._prune()
        activity = self._activity.get(session.token_id)
        if activity is None:
            # token issued by another process or before a restart
            activity = _Activity(session.persona_id, session.expires_at, now)
            self._activity[session.token_id] = activity

        if inactivity_timeout is not None and now - activity.last_seen > inactivity_timeout:
            self.revoke(session)
            raise AuthenticationError("Anonymous session timed out")
        activity.last_seen = now

        fp = self.fingerprint(session, user_agent)
        suspicious = False
        if activity.fingerprint is None:
            activity.fingerprint = fp
        elif not primitives.constant_time_equals(activity.fingerprint, fp):
            suspicious = True
            if notify_suspicious:
                _log.warning("suspicious activity on anonymous session persona=%s", session.persona_id)
        return SessionContext(
            persona_id=session.persona_id,
            token_id=session.token_id,
            fingerprint=fp,
            suspicious=suspicious,
        )

    # ── Ending sessions ──────────────────────────────────────────────────────

    def revoke(self, session: AnonymousSessionToken) -> None:
        self._prune()
        self._revoked[session.token_id] = session.expires_at
        self._forget(session.token_id)

    def logout(self, session: AnonymousSessionToken, *, purge: bool) -> None:
        self.revoke(session)
        if purge:
            self.purge_persona(session.persona_id)

    def purge_persona(self, persona_id: str) -> None:
        """Drop every fingerprint and activity record held for the persona."""
        for token_id in [t for t, a in self._activity.items() if a.persona_id == persona_id]:
            del self._activity[token_id]

    def revoke_persona(self, persona_id: str) -> None:
        """Kill every token already issued for the persona."""
        self._revoked_before[persona_id] = self._clock()
        self.purge_persona(persona_id)

    def rotate(self, persona_id: str) -> str:
        """Revoke the persona's live tokens and issue a replacement."""
        for token_id, activity in list(self._activity.items()):
            if activity.persona_id == persona_id:
                self._revoked[token_id] = activity.expires_at
                del self._activity[token_id]
        return self.issue_token(persona_id)

    def _forget(self, token_id: str) -> None:
        self._activity.pop(token_id, None)

    def _prune(self) -> None:
        now = self._clock()
        for token_id in [t for t, a in self._activity.items() if a.expires_at <= now]:
            del self._activity[token_id]
        for token_id in [t for t, exp in self._revoked.items() if exp <= now]:
            del self._revoked[token_id]
        for persona_id in [p for p, cut in self._revoked_before.items() if cut + self.ttl <= now]:
            del self._revoked_before[persona_id]
