"""Shared fixtures: isolated settings, a temp database and a controllable clock."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from persona_veil.auth.professional import SQLiteUserDirectory
from persona_veil.auth.session import SessionIsolationLayer
from persona_veil.config import Settings
from persona_veil.content.integrity import ContentIntegrityService
from persona_veil.content.posts import AnonymousContentStore
from persona_veil.content.reports import ReportStore
from persona_veil.identity.generator import PersonaIdentityGenerator
from persona_veil.identity.stealth import StealthAddressEngine
from persona_veil.media.sanitizer import MetadataSanitizer
from persona_veil.models import VerificationStatus
from persona_veil.store.db import Database, init_db
from persona_veil.store.personas import PersonaStore

OWNER = "user-1"
OTHER_OWNER = "user-2"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        anonymous_jwt_secret="a" * 40,
        anonymous_session_secret="s" * 40,
        professional_jwt_secret="p" * 40,
        db_path=str(tmp_path / "test.db"),
        upload_dir=tmp_path / "uploads",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def database(settings):
    await init_db(settings.db_path)
    return Database(settings.db_path, timeout=settings.storage_timeout_seconds)


@pytest_asyncio.fixture
async def directory(database):
    d = SQLiteUserDirectory(database)
    await d.upsert(OWNER, VerificationStatus.VERIFIED)
    await d.upsert(OTHER_OWNER, VerificationStatus.VERIFIED)
    return d


@pytest.fixture
def sessions(settings, clock):
    return SessionIsolationLayer(
        settings.anonymous_jwt_secret,
        settings.anonymous_session_secret,
        ttl_hours=settings.anonymous_token_ttl_hours,
        clock=clock,
    )


@pytest.fixture
def personas(database, directory, sessions, settings, clock):
    stealth = StealthAddressEngine(settings.anonymity_mix_factor, clock=clock)
    generator = PersonaIdentityGenerator(stealth, key_size=settings.rsa_key_size)
    return PersonaStore(
        database, directory, generator, stealth, sessions,
        max_personas_per_user=settings.max_personas_per_user,
        clock=clock,
    )


@pytest.fixture
def sanitizer(settings):
    return MetadataSanitizer(settings.upload_dir, settings.media_url_prefix,
                             max_bytes=settings.max_upload_bytes)


@pytest.fixture
def content(database, personas, sanitizer, clock):
    return AnonymousContentStore(
        database, personas, ContentIntegrityService(), sanitizer,
        ReportStore(database, clock=clock), clock=clock,
    )
