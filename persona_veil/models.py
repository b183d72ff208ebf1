"""Value types shared across the core.

Domain records are frozen pydantic models: operations take a record and
return a new one (`model_copy(update=...)`) instead of mutating in place.
Client-facing shapes are separate models so that owner ids and salts cannot
leak through serialization by accident.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_POST_LENGTH = 5000
MAX_COMMENT_LENGTH = 1000
MAX_REPORT_DESCRIPTION = 1000


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    REJECTED = "rejected"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Persona settings ─────────────────────────────────────────────────────────

class RandomDelay(_Frozen):
    min_ms: int = Field(default=50, ge=0)
    max_ms: int = Field(default=500, ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "RandomDelay":
        if self.min_ms > self.max_ms:
            raise ValueError("random_delay.min_ms must not exceed max_ms")
        return self


class MixingParameters(_Frozen):
    timing_noise: bool = True
    random_delay: RandomDelay = RandomDelay()
    multi_path_routing: bool = True
    proxy_hops: int = Field(default=3, ge=1, le=5)


class FingerprintingProtection(_Frozen):
    randomize_headers: bool = True
    mimic_common_browsers: bool = True


class MetadataSettings(_Frozen):
    strip_exif_data: bool = True
    obfuscate_timestamps: bool = True
    route_through_proxy: bool = True
    randomize_file_metadata: bool = True
    prevent_browser_fingerprinting: bool = True
    add_metadata_noise: bool = True


class AutoSwitchTimeout(_Frozen):
    enabled: bool = True
    timeout_minutes: int = Field(default=30, ge=1)


class SecuritySettings(_Frozen):
    auto_switch_timeout: AutoSwitchTimeout = AutoSwitchTimeout()
    purge_session_on_logout: bool = True
    notify_suspicious_activity: bool = True


# ── Persona ──────────────────────────────────────────────────────────────────

class CryptoMaterial(_Frozen):
    public_key_hash: str
    stealth_address: str
    salt: str = Field(repr=False)
    mixing_parameters: MixingParameters = MixingParameters()
    fingerprinting_protection: FingerprintingProtection = FingerprintingProtection()


class Persona(_Frozen):
    """Internal record. Never return this from an endpoint; use to_public_view."""

    persona_id: str
    owner_user_id: str = Field(repr=False)
    display_name: str
    avatar_url: str = ""
    crypto: CryptoMaterial
    metadata_settings: MetadataSettings = MetadataSettings()
    security_settings: SecuritySettings = SecuritySettings()
    is_active: bool = True
    default_content_lifespan_hours: int = Field(default=24, ge=0)
    created_at: datetime
    updated_at: datetime


class PublicPersonaView(_Frozen):
    persona_id: str
    display_name: str
    avatar_url: str
    stealth_address: str
    is_active: bool
    created_at: datetime


class PersonaSummary(_Frozen):
    """Author decoration attached to posts and comments."""

    persona_id: str
    display_name: str
    avatar_url: str


class PrivateIdentity(_Frozen):
    """Handed to the client once at creation. Never stored server-side."""

    private_key: str = Field(repr=False)
    salt: str = Field(repr=False)


class GeneratedIdentity(_Frozen):
    public_key_hash: str
    stealth_address: str
    salt: str = Field(repr=False)
    display_name: str
    private_identity: PrivateIdentity


class PersonaUpdate(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=50)
    avatar_url: str | None = Field(default=None, max_length=2048)
    is_active: bool | None = None


def to_public_view(persona: Persona) -> PublicPersonaView:
    return PublicPersonaView(
        persona_id=persona.persona_id,
        display_name=persona.display_name,
        avatar_url=persona.avatar_url,
        stealth_address=persona.crypto.stealth_address,
        is_active=persona.is_active,
        created_at=persona.created_at,
    )


def to_summary(persona: Persona | PublicPersonaView) -> PersonaSummary:
    return PersonaSummary(
        persona_id=persona.persona_id,
        display_name=persona.display_name,
        avatar_url=persona.avatar_url,
    )


# ── Traffic planning ─────────────────────────────────────────────────────────

class RouteHop(_Frozen):
    node_id: str
    ephemeral_key: str = Field(repr=False)
    ttl: int


class DelayPlan(_Frozen):
    min_delay_ms: int
    max_delay_ms: int
    delay_ms: int


# ── Anonymous session ────────────────────────────────────────────────────────

class AnonymousSessionToken(_Frozen):
    """Decoded form of an anonymous-domain token."""

    persona_id: str
    issued_at: datetime
    expires_at: datetime
    session_fingerprint_salt: str = Field(repr=False)
    token_id: str


class SessionContext(_Frozen):
    """What an anonymous request is allowed to know about its caller."""

    persona_id: str
    token_id: str
    fingerprint: str
    suspicious: bool = False


# ── Posts ────────────────────────────────────────────────────────────────────

class PostType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    MIXED = "mixed"


class Integrity(_Frozen):
    content_hash: str
    signature: str | None = None
    public_key_pem: str | None = None


class Moderation(_Frozen):
    is_reported: bool = False
    report_count: int = 0
    is_flagged: bool = False
    is_removed: bool = False


class Comment(_Frozen):
    comment_id: int
    persona_id: str
    content: str
    created_at: datetime
    disappears_at: datetime | None = None
    persona: PersonaSummary | None = None


class AnonymousPost(_Frozen):
    """Full post record, including fields only moderators may see."""

    post_id: str
    persona_id: str
    content: str | None
    media_urls: tuple[str, ...] = ()
    post_type: PostType
    created_at: datetime
    disappears_at: datetime | None = None
    is_hidden: bool = False
    likes: frozenset[str] = frozenset()
    comments: tuple[Comment, ...] = ()
    views: int = 0
    integrity: Integrity
    integrity_failed: bool = False
    moderation: Moderation = Moderation()
    author_deleted: bool = False


class Engagement(_Frozen):
    likes: int
    comments: tuple[Comment, ...] = ()
    views: int = 0


class PublicPost(_Frozen):
    """Reader-facing post: no integrity, no moderation state."""

    post_id: str
    persona: PersonaSummary | None
    content: str | None
    media_urls: tuple[str, ...]
    post_type: PostType
    created_at: datetime
    disappears_at: datetime | None
    engagement: Engagement


class FeedPage(_Frozen):
    posts: tuple[PublicPost, ...]
    total: int
    page: int
    pages: int


class ToggleAction(str, Enum):
    LIKED = "liked"
    UNLIKED = "unliked"


class ToggleResult(_Frozen):
    action: ToggleAction
    likes: int


class SanitizedMedia(_Frozen):
    path: str
    media_url: str
    media_type: Literal["image", "video", "other"]
    metadata_stripping_skipped: bool = False


# ── Reports ──────────────────────────────────────────────────────────────────

ReportType = Literal[
    "harassment", "hate_speech", "misinformation",
    "inappropriate_content", "impersonation", "other",
]
ContentType = Literal["post", "comment", "profile", "message"]


class _ReportBase(_Frozen):
    report_type: ReportType
    content_type: ContentType
    content_id: str
    description: str = Field(min_length=1, max_length=MAX_REPORT_DESCRIPTION)
    status: Literal["pending", "under_review", "resolved", "dismissed"] = "pending"


class ProfessionalReport(_ReportBase):
    kind: Literal["professional"] = "professional"
    reporter_user_id: str
    reported_user_id: str


class AnonymousReport(_ReportBase):
    kind: Literal["anonymous"] = "anonymous"
    reporter_persona_id: str
    reported_content_hash: str


Report = Annotated[Union[ProfessionalReport, AnonymousReport], Field(discriminator="kind")]
