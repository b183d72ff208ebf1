"""Tests for persona lifecycle, ownership and quota."""
import asyncio
import json

import pytest

from persona_veil.errors import AuthenticationError, NotAuthorized, NotFound, NotVerified, QuotaExceeded, ValidationError
from persona_veil.models import PersonaUpdate, VerificationStatus

from conftest import OTHER_OWNER, OWNER

pytestmark = pytest.mark.asyncio


async def test_create_persona_returns_public_view_and_private_identity(personas, sessions):
    created = await personas.create_persona(OWNER)
    assert created.persona.is_active
    assert len(created.persona.persona_id) == 64
    assert "PRIVATE KEY" in created.private_identity.private_key
    assert sessions.verify_anonymous_token(created.session_token) == created.persona.persona_id


async def test_public_output_never_contains_owner_or_salt(personas):
    created = await personas.create_persona(OWNER)
    dumped = json.dumps(created.persona.model_dump(mode="json"))
    assert OWNER not in dumped
    assert created.private_identity.salt not in dumped
    assert "owner_user_id" not in dumped
    assert "salt" not in dumped
    for view in await personas.get_personas_for_owner(OWNER):
        assert "owner_user_id" not in view.model_dump()


async def test_private_key_is_not_stored(personas, database):
    created = await personas.create_persona(OWNER)
    async with database.connect() as db:
        async with db.execute("SELECT * FROM personas") as cursor:
            rows = await cursor.fetchall()
    flat = json.dumps([list(r) for r in rows])
    assert "PRIVATE KEY" not in flat
    assert created.private_identity.private_key not in flat


async def test_unverified_owner_rejected(personas, directory):
    await directory.upsert("pending-user", VerificationStatus.PENDING)
    with pytest.raises(NotVerified):
        await personas.create_persona("pending-user")
    with pytest.raises(NotVerified):
        await personas.create_persona("unknown-user")


async def test_quota_scenario(personas):
    for _ in range(3):
        await personas.create_persona(OWNER)
    with pytest.raises(QuotaExceeded):
        await personas.create_persona(OWNER)
    # other owners are unaffected
    await personas.create_persona(OTHER_OWNER)


async def test_quota_holds_under_concurrent_creation(personas):
    results = await asyncio.gather(
        *(personas.create_persona(OWNER) for _ in range(6)), return_exceptions=True
    )
    created = [r for r in results if not isinstance(r, BaseException)]
    refused = [r for r in results if isinstance(r, QuotaExceeded)]
    assert len(created) == 3
    assert len(refused) == 3
    assert len(await personas.get_personas_for_owner(OWNER)) == 3


async def test_created_personas_are_unique(personas):
    a = await personas.create_persona(OWNER)
    b = await personas.create_persona(OWNER)
    assert a.persona.persona_id != b.persona.persona_id
    assert a.persona.stealth_address != b.persona.stealth_address
    pa = await personas.get_persona(a.persona.persona_id)
    pb = await personas.get_persona(b.persona.persona_id)
    assert pa.crypto.public_key_hash != pb.crypto.public_key_hash


async def test_switch_always_changes_stealth_address(personas, sessions):
    created = await personas.create_persona(OWNER)
    pid = created.persona.persona_id
    first = await personas.switch_persona(pid, OWNER)
    second = await personas.switch_persona(pid, OWNER)
    assert first.persona.stealth_address != created.persona.stealth_address
    assert second.persona.stealth_address != first.persona.stealth_address
    assert sessions.verify_anonymous_token(second.session_token) == pid


async def test_ownership_mismatch_is_not_authorized(personas):
    created = await personas.create_persona(OWNER)
    pid = created.persona.persona_id
    with pytest.raises(NotAuthorized):
        await personas.switch_persona(pid, OTHER_OWNER)
    with pytest.raises(NotAuthorized):
        await personas.delete_persona(pid, OTHER_OWNER)
    with pytest.raises(NotFound):
        await personas.delete_persona("missing", OWNER)


async def test_update_persona(personas):
    created = await personas.create_persona(OWNER)
    pid = created.persona.persona_id
    updated = await personas.update_persona(pid, OWNER, PersonaUpdate(display_name="  Night Owl "))
    assert updated.display_name == "Night Owl"
    with pytest.raises(ValidationError):
        await personas.update_persona(pid, OWNER, PersonaUpdate(display_name="   "))


async def test_reactivation_is_quota_checked(personas, clock):
    first = await personas.create_persona(OWNER)
    pid = first.persona.persona_id
    await personas.update_persona(pid, OWNER, PersonaUpdate(is_active=False))
    for _ in range(3):
        await personas.create_persona(OWNER)
    with pytest.raises(QuotaExceeded):
        await personas.update_persona(pid, OWNER, PersonaUpdate(is_active=True))


async def test_deactivation_revokes_tokens(personas, sessions, clock):
    created = await personas.create_persona(OWNER)
    clock.advance(seconds=1)
    await personas.update_persona(created.persona.persona_id, OWNER, PersonaUpdate(is_active=False))
    with pytest.raises(AuthenticationError):
        sessions.decode_token(created.session_token)


async def test_inactive_persona_cannot_switch(personas):
    created = await personas.create_persona(OWNER)
    pid = created.persona.persona_id
    await personas.update_persona(pid, OWNER, PersonaUpdate(is_active=False))
    with pytest.raises(ValidationError):
        await personas.switch_persona(pid, OWNER)


async def test_delete_persona_revokes_tokens_and_frees_quota(personas, sessions, clock):
    created = [await personas.create_persona(OWNER) for _ in range(3)]
    clock.advance(seconds=1)
    await personas.delete_persona(created[0].persona.persona_id, OWNER)
    with pytest.raises(AuthenticationError):
        sessions.decode_token(created[0].session_token)
    with pytest.raises(NotFound):
        await personas.resolve_persona_public(created[0].persona.persona_id)
    await personas.create_persona(OWNER)


async def test_settings_updates(personas):
    pid = (await personas.create_persona(OWNER)).persona.persona_id
    security = await personas.update_security_settings(
        pid, OWNER, {"auto_switch_timeout": {"timeout_minutes": 5}, "unknown": True}
    )
    assert security.auto_switch_timeout.timeout_minutes == 5
    assert security.auto_switch_timeout.enabled is True

    metadata = await personas.update_metadata_settings(
        pid, OWNER, {"obfuscate_timestamps": False, "strip_exif_data": "no"}
    )
    assert metadata.obfuscate_timestamps is False
    assert metadata.strip_exif_data is True

    mixing = await personas.update_mixing_parameters(pid, OWNER, {"proxy_hops": 9})
    assert mixing.proxy_hops == 5
    mixing = await personas.update_mixing_parameters(pid, OWNER, {"proxy_hops": 0})
    assert mixing.proxy_hops == 1
    with pytest.raises(ValidationError):
        await personas.update_mixing_parameters(pid, OWNER, {"random_delay": {"min_ms": 900}})

    stored = await personas.get_persona(pid)
    assert stored.security_settings.auto_switch_timeout.timeout_minutes == 5
    assert stored.metadata_settings.obfuscate_timestamps is False


async def test_owner_is_verified_tracks_directory(personas, directory):
    pid = (await personas.create_persona(OWNER)).persona.persona_id
    assert await personas.owner_is_verified(pid)
    await directory.upsert(OWNER, VerificationStatus.EXPIRED)
    assert not await personas.owner_is_verified(pid)
