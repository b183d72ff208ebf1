"""Request-scoped dependencies: service lookup and the two auth domains.

`x-anonymous-mode: true` routes a request through anonymous-token
verification; anything else goes through professional-token verification.
An endpoint only accepts the domain it was written for, so a token from one
domain can never authorize a call in the other.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from fastapi import Depends, Request, Response, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from persona_veil.auth.professional import ProfessionalPrincipal, UserDirectory, verify_professional_token
from persona_veil.auth.session import SessionIsolationLayer
from persona_veil.config import Settings
from persona_veil.content.posts import AnonymousContentStore
from persona_veil.content.reports import ReportStore
from persona_veil.errors import AuthenticationError, NotAuthorized, NotFound
from persona_veil.media.mixing import TrafficMixingPlanner
from persona_veil.media.sanitizer import MetadataSanitizer
from persona_veil.models import AnonymousSessionToken, MetadataSettings, SecuritySettings, SessionContext
from persona_veil.store.db import Database
from persona_veil.store.personas import PersonaStore

ANONYMOUS_MODE_HEADER = "x-anonymous-mode"
SESSION_NOTICE_HEADER = "x-anonymous-session-notice"

_bearer = HTTPBearer(auto_error=False)


@dataclass
class Services:
    settings: Settings
    database: Database
    directory: UserDirectory
    sessions: SessionIsolationLayer
    personas: PersonaStore
    content: AnonymousContentStore
    reports: ReportStore
    sanitizer: MetadataSanitizer
    planner: TrafficMixingPlanner


@dataclass(frozen=True)
class AnonymousCaller:
    """Everything an anonymous endpoint gets to know. There is no owner id here."""

    context: SessionContext
    session: AnonymousSessionToken
    security_settings: SecuritySettings
    metadata_settings: MetadataSettings

    @property
    def persona_id(self) -> str:
        return self.context.persona_id


def get_services(request: Request) -> Services:
    return request.app.state.services


def is_anonymous_mode(request: Request) -> bool:
    return request.headers.get(ANONYMOUS_MODE_HEADER, "").strip().lower() == "true"


def _token(credentials: HTTPAuthorizationCredentials | None) -> str:
    return credentials.credentials if credentials is not None else ""


async def require_professional(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    services: Services = Depends(get_services),
) -> ProfessionalPrincipal:
    if is_anonymous_mode(request):
        raise AuthenticationError("This endpoint is not available in anonymous mode")
    return verify_professional_token(_token(credentials), services.settings.professional_jwt_secret)


async def require_moderator(
    principal: ProfessionalPrincipal = Depends(require_professional),
) -> ProfessionalPrincipal:
    if not principal.is_moderator:
        raise NotAuthorized("Moderator role required")
    return principal


async def require_anonymous(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    services: Services = Depends(get_services),
) -> AnonymousCaller:
    if not is_anonymous_mode(request):
        raise AuthenticationError("Anonymous mode required")
    session = services.sessions.decode_token(_token(credentials))

    try:
        persona = await services.personas.get_persona(session.persona_id)
    except NotFound:
        raise AuthenticationError("Anonymous session is no longer valid") from None
    if not persona.is_active or not await services.personas.owner_is_verified(persona.persona_id):
        raise AuthenticationError("Anonymous session is no longer valid")

    security = persona.security_settings
    timeout = None
    if security.auto_switch_timeout.enabled:
        timeout = timedelta(minutes=security.auto_switch_timeout.timeout_minutes)
    context = services.sessions.isolate_session(
        session,
        request.headers.get("user-agent"),
        inactivity_timeout=timeout,
        notify_suspicious=security.notify_suspicious_activity,
    )
    if context.suspicious and security.notify_suspicious_activity:
        response.headers[SESSION_NOTICE_HEADER] = "suspicious-activity"
    return AnonymousCaller(
        context=context,
        session=session,
        security_settings=security,
        metadata_settings=persona.metadata_settings,
    )
