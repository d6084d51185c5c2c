from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmesh.domain.models import OperatorKey


ROLE_VIEWER = "viewer"
ROLE_OPERATOR = "operator"
ROLE_ORDER: dict[str, int] = {
    ROLE_VIEWER: 1,
    ROLE_OPERATOR: 2,
}
KEY_PREFIX = "smok"


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{KEY_PREFIX}_{resolved_id}_{secret}"
    key_prefix = raw_key[:16]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


async def create_operator_key(
    session: AsyncSession,
    *,
    role: str,
    name: str | None = None,
) -> tuple[OperatorKey, str]:
    """Persist a new operator key and return it with the one-time plaintext."""
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    row = OperatorKey(
        id=key_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
        role=normalize_role(role),
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    await session.commit()
    return row, raw_key


async def find_active_key(session: AsyncSession, raw_key: str) -> OperatorKey | None:
    result = await session.execute(
        select(OperatorKey).where(
            OperatorKey.key_hash == hash_api_key(raw_key),
            OperatorKey.revoked_at.is_(None),
        )
    )
    return result.scalar_one_or_none()
