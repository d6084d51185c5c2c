from __future__ import annotations

import ipaddress
import logging
from typing import Any

import jwt
from starlette.requests import HTTPConnection

from skillmesh.core.config import Settings, get_settings
from skillmesh.core.errors import TenantNotIdentifiedError
from skillmesh.domain.tenancy import (
    HINT_SOURCE_HEADER,
    HINT_SOURCE_SESSION,
    HINT_SOURCE_SUBDOMAIN,
    LOOKUP_ID,
    LOOKUP_SLUG,
    SLUG_PATTERN,
    RequestContext,
    TenantHint,
)


logger = logging.getLogger(__name__)


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # Bracketed IPv6 literal, optionally followed by :port.
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def subdomain_from_host(host: str | None, *, min_labels: int) -> str | None:
    """Return the first host label when it can serve as a tenant slug.

    IP literals and hosts with fewer than ``min_labels`` labels (``localhost``,
    the apex domain) never produce a hint.
    """
    if not host:
        return None
    normalized = _strip_port(host.strip()).rstrip(".").lower()
    if not normalized:
        return None
    try:
        ipaddress.ip_address(normalized)
        return None
    except ValueError:
        pass
    labels = normalized.split(".")
    if len(labels) < max(2, min_labels):
        return None
    label = labels[0]
    if not SLUG_PATTERN.match(label):
        return None
    return label


def extract_tenant_hint(ctx: RequestContext, settings: Settings | None = None) -> TenantHint:
    # Most trustworthy source wins: session claim, then header, then subdomain.
    settings = settings or get_settings()
    claims = ctx.session_claims or {}
    claim_value = claims.get(settings.session_tenant_claim)
    if isinstance(claim_value, str) and claim_value.strip():
        hint = TenantHint(source=HINT_SOURCE_SESSION, value=claim_value.strip(), lookup=LOOKUP_ID)
        header_value = ctx.header(settings.tenant_header_name)
        if header_value and header_value.strip() != hint.value:
            logger.warning(
                "tenant_hint_conflict session_tenant=%s header_tenant=%s",
                hint.value,
                header_value.strip(),
            )
        return hint

    header_value = ctx.header(settings.tenant_header_name)
    if header_value and header_value.strip():
        return TenantHint(source=HINT_SOURCE_HEADER, value=header_value.strip(), lookup=LOOKUP_ID)

    slug = subdomain_from_host(ctx.host, min_labels=settings.subdomain_min_labels)
    if slug:
        return TenantHint(source=HINT_SOURCE_SUBDOMAIN, value=slug, lookup=LOOKUP_SLUG)

    raise TenantNotIdentifiedError("No tenant hint in session, header, or host")


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise TenantNotIdentifiedError("Session token header is not a bearer token")
    return parts[1]


def decode_session_claims(token: str, settings: Settings | None = None) -> dict[str, Any]:
    # Only verified claims count as a session hint; a bad token is rejected, never downgraded.
    settings = settings or get_settings()
    try:
        return jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=list(settings.session_jwt_algorithms),
            audience=settings.session_jwt_audience,
            options={"verify_aud": settings.session_jwt_audience is not None},
        )
    except jwt.PyJWTError as exc:
        raise TenantNotIdentifiedError("Invalid session token") from exc


def request_context_from_request(request: HTTPConnection, settings: Settings | None = None) -> RequestContext:
    settings = settings or get_settings()
    token = _parse_bearer_token(request.headers.get(settings.session_token_header))
    claims = decode_session_claims(token, settings) if token else None
    host = request.headers.get("host") or request.url.hostname
    return RequestContext(host=host, headers=dict(request.headers), session_claims=claims)
