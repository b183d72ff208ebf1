"""FastAPI server exposing anonymous personas, posts and moderation."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from persona_veil.api.deps import (
    AnonymousCaller,
    Services,
    get_services,
    require_anonymous,
    require_moderator,
    require_professional,
)
from persona_veil.auth.professional import ProfessionalPrincipal, SQLiteUserDirectory
from persona_veil.auth.session import SessionIsolationLayer
from persona_veil.config import Settings
from persona_veil.content.integrity import ContentIntegrityService
from persona_veil.content.posts import AnonymousContentStore, FeedFilter
from persona_veil.content.reports import ReportStore
from persona_veil.errors import (
    AuthenticationError,
    CryptoError,
    IntegrityFailure,
    NotAuthorized,
    NotFound,
    NotVerified,
    PersonaVeilError,
    QuotaExceeded,
    RoutingDisabled,
    StorageError,
    ValidationError,
)
from persona_veil.identity.generator import PersonaIdentityGenerator
from persona_veil.identity.stealth import StealthAddressEngine
from persona_veil.media.mixing import TrafficMixingPlanner
from persona_veil.media.sanitizer import IMAGE_FORMATS, VIDEO_EXTENSIONS, MetadataSanitizer, safe_extension
from persona_veil.models import (
    MAX_COMMENT_LENGTH,
    MAX_POST_LENGTH,
    MAX_REPORT_DESCRIPTION,
    ContentType,
    PersonaUpdate,
    ProfessionalReport,
    ReportType,
)
from persona_veil.store.db import Database, init_db
from persona_veil.store.personas import PersonaStore

_log = logging.getLogger(__name__)

# ── Error mapping ────────────────────────────────────────────────────────────
# NotFound and NotAuthorized share a status and message so callers cannot tell
# a missing persona from someone else's.

_STATUS: dict[type[PersonaVeilError], int] = {
    ValidationError: 400,
    RoutingDisabled: 400,
    QuotaExceeded: 400,
    AuthenticationError: 401,
    NotVerified: 403,
    NotFound: 404,
    NotAuthorized: 404,
    IntegrityFailure: 409,
    CryptoError: 500,
    StorageError: 500,
}
_GENERIC = (CryptoError, StorageError, NotFound, NotAuthorized)


def _status_for(exc: PersonaVeilError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS:
            return _STATUS[cls]
    return 500


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def _persona_veil_error(request: Request, exc: PersonaVeilError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        _log.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    if isinstance(exc, _GENERIC) or status_code >= 500:
        return _error(status_code, exc.public_message)
    return _error(status_code, str(exc))


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return _error(400, message)


# ── Request bodies ───────────────────────────────────────────────────────────

class PrivacySettings(BaseModel):
    is_hidden: bool = False


class CreatePostRequest(BaseModel):
    content: str | None = Field(default=None, max_length=MAX_POST_LENGTH)
    media_urls: list[str] = Field(default_factory=list)
    lifespan_hours: int | None = Field(default=None, ge=0)
    privacy_settings: PrivacySettings = PrivacySettings()
    private_key_pem: str | None = Field(default=None, repr=False)
    signature: str | None = None
    public_key_pem: str | None = None


class CommentRequest(BaseModel):
    content: str = Field(max_length=MAX_COMMENT_LENGTH)
    lifespan_hours: int = Field(default=0, ge=0)


class ReportRequest(BaseModel):
    report_type: ReportType
    description: str = Field(min_length=1, max_length=MAX_REPORT_DESCRIPTION)
    content_type: ContentType = "post"


class ProfessionalReportRequest(BaseModel):
    reported_user_id: str
    report_type: ReportType
    content_type: ContentType
    content_id: str
    description: str = Field(min_length=1, max_length=MAX_REPORT_DESCRIPTION)


class LogoutRequest(BaseModel):
    purge: bool | None = None


# ── Uploaded media ───────────────────────────────────────────────────────────

_INLINE_EXTENSIONS = frozenset(IMAGE_FORMATS) | VIDEO_EXTENSIONS


class MediaFiles(StaticFiles):
    """Serves uploads. Only images and video render inline; anything else is a download."""

    def file_response(self, full_path, stat_result, scope, status_code: int = 200):
        response = super().file_response(full_path, stat_result, scope, status_code)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if safe_extension(str(full_path)) not in _INLINE_EXTENSIONS:
            response.headers["Content-Type"] = "application/octet-stream"
            response.headers["Content-Disposition"] = "attachment"
        return response


# ── Endpoints ────────────────────────────────────────────────────────────────

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/personas", status_code=201)
async def create_persona(
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    """Mint a persona for a verified user. The private key is returned once and never stored."""
    created = await services.personas.create_persona(principal.user_id)
    return {
        "persona": created.persona.model_dump(mode="json"),
        "private_identity": created.private_identity.model_dump(mode="json"),
        "session_token": created.session_token,
    }


@router.get("/personas/my")
async def list_my_personas(
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    personas = await services.personas.get_personas_for_owner(principal.user_id)
    return [p.model_dump(mode="json") for p in personas]


@router.get("/personas/{persona_id}")
async def get_persona(persona_id: str, services: Services = Depends(get_services)):
    """Public lookup. Only the public view ever leaves this endpoint."""
    persona = await services.personas.resolve_persona_public(persona_id)
    return persona.model_dump(mode="json")


@router.put("/personas/{persona_id}")
async def update_persona(
    persona_id: str,
    req: PersonaUpdate,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    persona = await services.personas.update_persona(persona_id, principal.user_id, req)
    return persona.model_dump(mode="json")


@router.delete("/personas/{persona_id}")
async def delete_persona(
    persona_id: str,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    await services.personas.delete_persona(persona_id, principal.user_id)
    return {"deleted": persona_id}


@router.post("/personas/{persona_id}/switch")
async def switch_persona(
    persona_id: str,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    switched = await services.personas.switch_persona(persona_id, principal.user_id)
    return {
        "persona": switched.persona.model_dump(mode="json"),
        "session_token": switched.session_token,
    }


@router.get("/personas/{persona_id}/routing-path")
async def get_routing_path(
    persona_id: str,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    persona = await services.personas.get_owned_persona(persona_id, principal.user_id)
    hops = services.planner.plan_route(persona)
    return {
        "routing_path": [h.model_dump() for h in hops],
        "stealth_address": persona.crypto.stealth_address,
    }


@router.get("/personas/{persona_id}/delay")
async def get_delay(
    persona_id: str,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    persona = await services.personas.get_owned_persona(persona_id, principal.user_id)
    return services.planner.delay_plan(persona).model_dump()


@router.get("/personas/{persona_id}/headers")
async def get_randomized_headers(
    persona_id: str,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    persona = await services.personas.get_owned_persona(persona_id, principal.user_id)
    return {"headers": services.planner.randomized_headers(persona)}


@router.put("/personas/{persona_id}/security-settings")
async def update_security_settings(
    persona_id: str,
    patch: dict[str, Any],
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    settings = await services.personas.update_security_settings(persona_id, principal.user_id, patch)
    return settings.model_dump()


@router.put("/personas/{persona_id}/metadata-settings")
async def update_metadata_settings(
    persona_id: str,
    patch: dict[str, Any],
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    settings = await services.personas.update_metadata_settings(persona_id, principal.user_id, patch)
    return settings.model_dump()


@router.put("/personas/{persona_id}/mixing-parameters")
async def update_mixing_parameters(
    persona_id: str,
    patch: dict[str, Any],
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    params = await services.personas.update_mixing_parameters(persona_id, principal.user_id, patch)
    return params.model_dump()


@router.post("/sessions/logout")
async def logout(
    req: LogoutRequest | None = None,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    purge = caller.security_settings.purge_session_on_logout
    if req is not None and req.purge is not None:
        purge = req.purge
    services.sessions.logout(caller.session, purge=purge)
    return {"logged_out": True, "purged": purge}


@router.post("/upload", status_code=201)
async def upload(
    file: UploadFile = File(...),
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    """Sanitize an upload. The returned media_url is what posts may reference."""
    data = await file.read(services.settings.max_upload_bytes + 1)
    media = await services.sanitizer.sanitize_async(
        file.filename or "", data, strip=caller.metadata_settings.strip_exif_data
    )
    return media.model_dump(exclude={"path"})


@router.post("/posts", status_code=201)
async def create_post(
    req: CreatePostRequest,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    post = await services.content.create_post(
        caller.persona_id,
        req.content,
        req.media_urls,
        req.lifespan_hours,
        is_hidden=req.privacy_settings.is_hidden,
        private_key_pem=req.private_key_pem,
        signature=req.signature,
        public_key_pem=req.public_key_pem,
    )
    return post.model_dump(mode="json")


@router.get("/feed")
async def feed(
    page: int = 1,
    limit: int = 10,
    persona_id: str | None = None,
    services: Services = Depends(get_services),
):
    result = await services.content.list_feed(FeedFilter(page=page, limit=limit, persona_id=persona_id))
    return result.model_dump(mode="json")


@router.get("/posts/{post_id}")
async def get_post(post_id: str, services: Services = Depends(get_services)):
    post = await services.content.get_post(post_id)
    return post.model_dump(mode="json")


@router.post("/posts/{post_id}/like")
async def like_post(
    post_id: str,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    result = await services.content.toggle_like(post_id, caller.persona_id)
    return result.model_dump(mode="json")


@router.post("/posts/{post_id}/comments", status_code=201)
async def add_comment(
    post_id: str,
    req: CommentRequest,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    comment = await services.content.add_comment(post_id, caller.persona_id, req.content, req.lifespan_hours)
    return comment.model_dump(mode="json")


@router.delete("/posts/{post_id}")
async def delete_post(
    post_id: str,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    await services.content.delete_post(post_id, caller.persona_id)
    return {"deleted": post_id}


@router.post("/posts/{post_id}/report", status_code=201)
async def report_post(
    post_id: str,
    req: ReportRequest,
    caller: AnonymousCaller = Depends(require_anonymous),
    services: Services = Depends(get_services),
):
    report = await services.content.report_post(
        post_id, caller.persona_id, req.report_type, req.description, req.content_type
    )
    return report.model_dump(mode="json", exclude={"reporter_persona_id", "reported_content_hash"})


@router.post("/reports", status_code=201)
async def report_user(
    req: ProfessionalReportRequest,
    principal: ProfessionalPrincipal = Depends(require_professional),
    services: Services = Depends(get_services),
):
    report = ProfessionalReport(reporter_user_id=principal.user_id, **req.model_dump())
    report_id = await services.reports.add(report)
    return {"report_id": report_id, **report.model_dump(mode="json")}


@router.get("/moderation/reports")
async def list_reports(
    kind: str | None = None,
    limit: int = 50,
    _: ProfessionalPrincipal = Depends(require_moderator),
    services: Services = Depends(get_services),
):
    reports = await services.reports.list_reports(kind=kind, limit=min(max(1, limit), 200))
    return [r.model_dump(mode="json") for r in reports]


@router.get("/moderation/posts/{post_id}")
async def moderation_get_post(
    post_id: str,
    _: ProfessionalPrincipal = Depends(require_moderator),
    services: Services = Depends(get_services),
):
    post = await services.content.get_post_for_moderation(post_id)
    return post.model_dump(mode="json")


@router.post("/moderation/posts/{post_id}/remove")
async def moderation_remove_post(
    post_id: str,
    _: ProfessionalPrincipal = Depends(require_moderator),
    services: Services = Depends(get_services),
):
    await services.content.remove_post(post_id)
    return {"removed": post_id}


@router.post("/moderation/posts/{post_id}/verify")
async def moderation_verify_post(
    post_id: str,
    _: ProfessionalPrincipal = Depends(require_moderator),
    services: Services = Depends(get_services),
):
    post = await services.content.verify_post(post_id)
    return {"post_id": post.post_id, "intact": True, "content_hash": post.integrity.content_hash}


# ── App factory ──────────────────────────────────────────────────────────────

def build_services(settings: Settings) -> Services:
    database = Database(settings.db_path, timeout=settings.storage_timeout_seconds)
    directory = SQLiteUserDirectory(database)
    sessions = SessionIsolationLayer(
        settings.anonymous_jwt_secret,
        settings.anonymous_session_secret,
        ttl_hours=settings.anonymous_token_ttl_hours,
    )
    stealth = StealthAddressEngine(settings.anonymity_mix_factor)
    generator = PersonaIdentityGenerator(
        stealth, key_size=settings.rsa_key_size, timeout_seconds=settings.crypto_timeout_seconds
    )
    personas = PersonaStore(
        database, directory, generator, stealth, sessions,
        max_personas_per_user=settings.max_personas_per_user,
    )
    sanitizer = MetadataSanitizer(
        settings.upload_dir,
        settings.media_url_prefix,
        max_bytes=settings.max_upload_bytes,
        timeout_seconds=settings.crypto_timeout_seconds,
    )
    reports = ReportStore(database)
    content = AnonymousContentStore(
        database, personas, ContentIntegrityService(), sanitizer, reports,
        crypto_timeout_seconds=settings.crypto_timeout_seconds,
    )
    return Services(
        settings=settings,
        database=database,
        directory=directory,
        sessions=sessions,
        personas=personas,
        content=content,
        reports=reports,
        sanitizer=sanitizer,
        planner=TrafficMixingPlanner(),
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the application. With no arguments, settings come from the environment."""
    if services is None:
        services = build_services(settings if settings is not None else Settings.from_env())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_db(settings.db_path)
        _log.info("database ready db=%s", settings.db_path)
        yield

    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    app = FastAPI(title="persona-veil API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        expose_headers=["x-anonymous-session-notice"],
    )
    app.add_exception_handler(PersonaVeilError, _persona_veil_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.include_router(router)
    app.mount(settings.media_url_prefix, MediaFiles(directory=settings.upload_dir), name="uploads")
    return app
