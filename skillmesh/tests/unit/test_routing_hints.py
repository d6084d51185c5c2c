from __future__ import annotations

import jwt
import pytest

from skillmesh.core.config import get_settings
from skillmesh.core.errors import TenantNotIdentifiedError
from skillmesh.domain.tenancy import RequestContext
from skillmesh.services.routing.hints import decode_session_claims, extract_tenant_hint, subdomain_from_host


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("acme.skillmesh.io", "acme"),
        ("Acme.SkillMesh.io", "acme"),
        ("acme.skillmesh.io:8443", "acme"),
        ("acme.skillmesh.io.", "acme"),
        ("skillmesh.io", None),
        ("localhost", None),
        ("localhost:8000", None),
        ("10.0.0.7", None),
        ("[::1]:8000", None),
        ("acme_corp.skillmesh.io", None),
        ("", None),
        (None, None),
    ],
)
def test_subdomain_from_host(host: str | None, expected: str | None) -> None:
    assert subdomain_from_host(host, min_labels=3) == expected


def test_session_claim_beats_header_and_subdomain() -> None:
    ctx = RequestContext(
        host="globex.skillmesh.io",
        headers={"X-Tenant-Id": "initech"},
        session_claims={"tenant_id": "acme"},
    )
    hint = extract_tenant_hint(ctx, get_settings())
    assert (hint.source, hint.value, hint.lookup) == ("session", "acme", "id")


def test_header_beats_subdomain() -> None:
    ctx = RequestContext(host="globex.skillmesh.io", headers={"x-tenant-id": " initech "})
    hint = extract_tenant_hint(ctx, get_settings())
    assert (hint.source, hint.value, hint.lookup) == ("header", "initech", "id")


def test_subdomain_resolves_by_slug() -> None:
    hint = extract_tenant_hint(RequestContext(host="globex.skillmesh.io"), get_settings())
    assert (hint.source, hint.value, hint.lookup) == ("subdomain", "globex", "slug")
    assert hint.cache_key == "slug:globex"


def test_missing_hint_is_rejected() -> None:
    with pytest.raises(TenantNotIdentifiedError):
        extract_tenant_hint(RequestContext(host="localhost:8000", headers={"X-Tenant-Id": "  "}), get_settings())


def test_session_token_claims_are_verified() -> None:
    settings = get_settings()
    token = jwt.encode({"tenant_id": "acme"}, settings.session_jwt_secret, algorithm="HS256")
    assert decode_session_claims(token, settings)["tenant_id"] == "acme"

    forged = jwt.encode({"tenant_id": "acme"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(TenantNotIdentifiedError):
        decode_session_claims(forged, settings)
