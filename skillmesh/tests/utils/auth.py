from __future__ import annotations

from datetime import datetime, timezone

from skillmesh.persistence.db import SessionLocal
from skillmesh.services.auth.operator_keys import create_operator_key


async def create_test_operator_key(
    *,
    role: str,
    name: str = "test-key",
    revoked: bool = False,
) -> tuple[str, dict[str, str], str]:
    # Provision an operator key for integration tests.
    async with SessionLocal() as session:
        row, raw_key = await create_operator_key(session, role=role, name=name)
        if revoked:
            row.revoked_at = datetime.now(timezone.utc)
            await session.commit()
    return raw_key, {"Authorization": f"Bearer {raw_key}"}, row.id
