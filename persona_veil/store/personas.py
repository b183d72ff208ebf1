"""Persona persistence, ownership checks and the per-owner quota.

This is the only module that reads or writes owner_user_id. Everything it
returns to callers outside the professional domain is a PublicPersonaView.

Deleting a persona is a hard delete of the persona row plus, in the same
transaction, a soft delete of its posts and comments (author_deleted = 1).
That content disappears from every public read but stays for moderation audit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import aiosqlite
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from persona_veil.auth.professional import UserDirectory
from persona_veil.auth.session import SessionIsolationLayer
from persona_veil.errors import NotAuthorized, NotFound, NotVerified, QuotaExceeded, ValidationError
from persona_veil.identity.generator import PersonaIdentityGenerator, generate_persona_id
from persona_veil.identity.stealth import StealthAddressEngine
from persona_veil.models import (
    CryptoMaterial,
    FingerprintingProtection,
    MetadataSettings,
    MixingParameters,
    Persona,
    PersonaUpdate,
    PrivateIdentity,
    PublicPersonaView,
    SecuritySettings,
    VerificationStatus,
    to_public_view,
)
from persona_veil.store.db import Database
from persona_veil.utils.retry import storage_call_with_retry
from persona_veil.utils.timestamps import from_epoch, utcnow

_log = logging.getLogger(__name__)

MIN_PROXY_HOPS = 1
MAX_PROXY_HOPS = 5

_PERSONA_COLUMNS = """
    persona_id, owner_user_id, display_name, avatar_url, public_key_hash,
    stealth_address, salt, mixing_json, fingerprinting_json, metadata_json,
    security_json, is_active, default_lifespan_hours, created_at, updated_at
"""


@dataclass(frozen=True)
class CreatedPersona:
    persona: PublicPersonaView
    private_identity: PrivateIdentity
    session_token: str


@dataclass(frozen=True)
class SwitchedPersona:
    persona: PublicPersonaView
    session_token: str


def _row_to_persona(row: Any) -> Persona:
    return Persona(
        persona_id=row[0],
        owner_user_id=row[1],
        display_name=row[2],
        avatar_url=row[3],
        crypto=CryptoMaterial(
            public_key_hash=row[4],
            stealth_address=row[5],
            salt=row[6],
            mixing_parameters=MixingParameters.model_validate_json(row[7]),
            fingerprinting_protection=FingerprintingProtection.model_validate_json(row[8]),
        ),
        metadata_settings=MetadataSettings.model_validate_json(row[9]),
        security_settings=SecuritySettings.model_validate_json(row[10]),
        is_active=bool(row[11]),
        default_content_lifespan_hours=row[12],
        created_at=from_epoch(row[13]),
        updated_at=from_epoch(row[14]),
    )


def _merge(current: BaseModel, patch: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge a partial update onto a model, ignoring unknown keys."""
    merged = current.model_dump()
    for key, value in patch.items():
        if key not in merged or value is None:
            continue
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **{k: v for k, v in value.items() if k in merged[key] and v is not None}}
        else:
            merged[key] = value
    return merged


def _validated(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(exc.errors()[0].get("msg", "Invalid settings")) from exc


class PersonaStore:
    def __init__(
        self,
        database: Database,
        directory: UserDirectory,
        generator: PersonaIdentityGenerator,
        stealth: StealthAddressEngine,
        sessions: SessionIsolationLayer,
        *,
        max_personas_per_user: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._directory = directory
        self._generator = generator
        self._stealth = stealth
        self._sessions = sessions
        self.max_personas_per_user = max_personas_per_user
        self._clock = clock

    # ── Internal helpers ─────────────────────────────────────────────────────

    async def _fetch(self, db: aiosqlite.Connection, persona_id: str) -> Persona | None:
        async with db.execute(
            f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE persona_id = ?", (persona_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return None if row is None else _row_to_persona(row)

    async def _owned(self, db: aiosqlite.Connection, persona_id: str, owner_user_id: str) -> Persona:
        persona = await self._fetch(db, persona_id)
        if persona is None:
            raise NotFound("Persona not found")
        if persona.owner_user_id != owner_user_id:
            raise NotAuthorized("Persona not found")
        return persona

    async def _count_active(self, db: aiosqlite.Connection, owner_user_id: str) -> int:
        async with db.execute(
            "SELECT COUNT(*) FROM personas WHERE owner_user_id = ? AND is_active = 1",
            (owner_user_id,),
        ) as cursor:
            return (await cursor.fetchone())[0]

    def _check_quota(self, active: int) -> None:
        if active >= self.max_personas_per_user:
            raise QuotaExceeded(
                f"Maximum of {self.max_personas_per_user} anonymous personas allowed per user"
            )

    async def _require_verified(self, owner_user_id: str) -> None:
        status = await self._directory.get_verification_status(owner_user_id)
        if status is not VerificationStatus.VERIFIED:
            raise NotVerified("Only verified users can create anonymous personas")

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create_persona(self, owner_user_id: str) -> CreatedPersona:
        await self._require_verified(owner_user_id)

        async def _precheck() -> None:
            async with self._db.connect() as db:
                self._check_quota(await self._count_active(db, owner_user_id))

        # Fail fast before the expensive key generation; the transaction below
        # repeats the check under the write lock.
        await storage_call_with_retry(_precheck)
        identity = await self._generator.generate_async()
        persona_id = generate_persona_id()
        now = self._clock()
        persona = Persona(
            persona_id=persona_id,
            owner_user_id=owner_user_id,
            display_name=identity.display_name,
            crypto=CryptoMaterial(
                public_key_hash=identity.public_key_hash,
                stealth_address=identity.stealth_address,
                salt=identity.salt,
            ),
            created_at=now,
            updated_at=now,
        )

        async def _insert() -> None:
            async with self._db.transaction() as db:
                self._check_quota(await self._count_active(db, owner_user_id))
                await db.execute(
                    f"INSERT INTO personas ({_PERSONA_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        persona.persona_id,
                        persona.owner_user_id,
                        persona.display_name,
                        persona.avatar_url,
                        persona.crypto.public_key_hash,
                        persona.crypto.stealth_address,
                        persona.crypto.salt,
                        persona.crypto.mixing_parameters.model_dump_json(),
                        persona.crypto.fingerprinting_protection.model_dump_json(),
                        persona.metadata_settings.model_dump_json(),
                        persona.security_settings.model_dump_json(),
                        int(persona.is_active),
                        persona.default_content_lifespan_hours,
                        now.timestamp(),
                        now.timestamp(),
                    ),
                )

        await storage_call_with_retry(_insert)
        _log.info("persona created persona=%s", persona_id)
        return CreatedPersona(
            persona=to_public_view(persona),
            private_identity=identity.private_identity,
            session_token=self._sessions.issue_token(persona_id),
        )

    async def get_personas_for_owner(self, owner_user_id: str) -> list[PublicPersonaView]:
        async def _list() -> list[PublicPersonaView]:
            async with self._db.connect() as db:
                async with db.execute(
                    f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE owner_user_id = ? ORDER BY created_at ASC",
                    (owner_user_id,),
                ) as cursor:
                    rows = await cursor.fetchall()
            return [to_public_view(_row_to_persona(r)) for r in rows]

        return await storage_call_with_retry(_list)

    async def update_persona(self, persona_id: str, owner_user_id: str,
                             update: PersonaUpdate) -> PublicPersonaView:
        async def _update() -> Persona:
            async with self._db.transaction() as db:
                persona = await self._owned(db, persona_id, owner_user_id)
                changes: dict[str, Any] = {}
                if update.display_name is not None:
                    if not update.display_name.strip():
                        raise ValidationError("Display name must not be blank")
                    changes["display_name"] = update.display_name.strip()
                if update.avatar_url is not None:
                    changes["avatar_url"] = update.avatar_url
                if update.is_active is not None and update.is_active != persona.is_active:
                    if update.is_active:
                        self._check_quota(await self._count_active(db, owner_user_id))
                    changes["is_active"] = update.is_active
                if not changes:
                    return persona
                updated = persona.model_copy(update={**changes, "updated_at": self._clock()})
                await db.execute(
                    """UPDATE personas SET display_name = ?, avatar_url = ?, is_active = ?, updated_at = ?
                       WHERE persona_id = ?""",
                    (updated.display_name, updated.avatar_url, int(updated.is_active),
                     updated.updated_at.timestamp(), persona_id),
                )
                return updated

        persona = await storage_call_with_retry(_update)
        if not persona.is_active:
            self._sessions.revoke_persona(persona_id)
        return to_public_view(persona)

    async def delete_persona(self, persona_id: str, owner_user_id: str) -> None:
        async def _delete() -> None:
            async with self._db.transaction() as db:
                await self._owned(db, persona_id, owner_user_id)
                await db.execute("DELETE FROM personas WHERE persona_id = ?", (persona_id,))
                await db.execute(
                    "UPDATE anonymous_posts SET author_deleted = 1 WHERE persona_id = ?", (persona_id,)
                )
                await db.execute(
                    "UPDATE post_comments SET author_deleted = 1 WHERE persona_id = ?", (persona_id,)
                )

        await storage_call_with_retry(_delete)
        self._sessions.revoke_persona(persona_id)
        _log.info("persona deleted persona=%s", persona_id)

    async def switch_persona(self, persona_id: str, owner_user_id: str) -> SwitchedPersona:
        """Refresh the stealth address and rotate the persona's anonymous sessions."""
        async def _switch() -> Persona:
            async with self._db.transaction() as db:
                persona = await self._owned(db, persona_id, owner_user_id)
                if not persona.is_active:
                    raise ValidationError("Persona is inactive")
                refreshed = self._stealth.refresh(persona)
                await db.execute(
                    "UPDATE personas SET salt = ?, stealth_address = ?, updated_at = ? WHERE persona_id = ?",
                    (refreshed.crypto.salt, refreshed.crypto.stealth_address,
                     refreshed.updated_at.timestamp(), persona_id),
                )
                return refreshed

        refreshed = await storage_call_with_retry(_switch)
        _log.info("persona switched persona=%s", persona_id)
        return SwitchedPersona(
            persona=to_public_view(refreshed),
            session_token=self._sessions.rotate(persona_id),
        )

    # ── Settings ─────────────────────────────────────────────────────────────

    async def _update_settings(self, persona_id: str, owner_user_id: str,
                               build: Callable[[Persona], Persona], columns: dict[str, Callable[[Persona], str]]) -> Persona:
        async def _apply() -> Persona:
            async with self._db.transaction() as db:
                persona = await self._owned(db, persona_id, owner_user_id)
                updated = build(persona).model_copy(update={"updated_at": self._clock()})
                assignments = ", ".join(f"{col} = ?" for col in columns)
                values = [render(updated) for render in columns.values()]
                await db.execute(
                    f"UPDATE personas SET {assignments}, updated_at = ? WHERE persona_id = ?",
                    (*values, updated.updated_at.timestamp(), persona_id),
                )
                return updated

        return await storage_call_with_retry(_apply)

    async def update_security_settings(self, persona_id: str, owner_user_id: str,
                                       patch: dict[str, Any]) -> SecuritySettings:
        def build(p: Persona) -> Persona:
            settings = _validated(SecuritySettings, _merge(p.security_settings, patch))
            return p.model_copy(update={"security_settings": settings})

        persona = await self._update_settings(
            persona_id, owner_user_id, build,
            {"security_json": lambda p: p.security_settings.model_dump_json()},
        )
        return persona.security_settings

    async def update_metadata_settings(self, persona_id: str, owner_user_id: str,
                                       patch: dict[str, Any]) -> MetadataSettings:
        booleans = {k: v for k, v in patch.items() if isinstance(v, bool)}

        def build(p: Persona) -> Persona:
            settings = _validated(MetadataSettings, _merge(p.metadata_settings, booleans))
            return p.model_copy(update={"metadata_settings": settings})

        persona = await self._update_settings(
            persona_id, owner_user_id, build,
            {"metadata_json": lambda p: p.metadata_settings.model_dump_json()},
        )
        return persona.metadata_settings

    async def update_mixing_parameters(self, persona_id: str, owner_user_id: str,
                                       patch: dict[str, Any]) -> MixingParameters:
        patch = dict(patch)
        if isinstance(patch.get("proxy_hops"), int):
            patch["proxy_hops"] = min(max(MIN_PROXY_HOPS, patch["proxy_hops"]), MAX_PROXY_HOPS)

        def build(p: Persona) -> Persona:
            params = _validated(MixingParameters, _merge(p.crypto.mixing_parameters, patch))
            crypto = p.crypto.model_copy(update={"mixing_parameters": params})
            return p.model_copy(update={"crypto": crypto})

        persona = await self._update_settings(
            persona_id, owner_user_id, build,
            {"mixing_json": lambda p: p.crypto.mixing_parameters.model_dump_json()},
        )
        return persona.crypto.mixing_parameters

    # ── Lookups ──────────────────────────────────────────────────────────────

    async def get_owned_persona(self, persona_id: str, owner_user_id: str) -> Persona:
        async def _get() -> Persona:
            async with self._db.connect() as db:
                return await self._owned(db, persona_id, owner_user_id)

        return await storage_call_with_retry(_get)

    async def get_persona(self, persona_id: str) -> Persona:
        """Internal record lookup for core services. Never hand the result to a client."""
        async def _get() -> Persona | None:
            async with self._db.connect() as db:
                return await self._fetch(db, persona_id)

        persona = await storage_call_with_retry(_get)
        if persona is None:
            raise NotFound("Persona not found")
        return persona

    async def resolve_persona_public(self, persona_id: str) -> PublicPersonaView:
        """The only lookup allowed from anonymous or unauthenticated contexts."""
        return to_public_view(await self.get_persona(persona_id))

    async def owner_is_verified(self, persona_id: str) -> bool:
        persona = await self.get_persona(persona_id)
        status = await self._directory.get_verification_status(persona.owner_user_id)
        return status is VerificationStatus.VERIFIED
