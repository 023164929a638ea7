"""Retention policy repository."""

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from logward.db.models import RetentionPolicy

logger = logging.getLogger(__name__)


class RetentionPolicyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_policy(self, tenant_id: str) -> RetentionPolicy | None:
        result = await self.session.execute(
            select(RetentionPolicy).where(RetentionPolicy.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def list_policies(self, enabled: bool | None = None) -> Sequence[RetentionPolicy]:
        stmt = select(RetentionPolicy)
        if enabled is not None:
            stmt = stmt.where(RetentionPolicy.enabled == enabled)
        result = await self.session.execute(stmt.order_by(RetentionPolicy.tenant_id))
        return result.scalars().all()

    async def upsert_policy(self, tenant_id: str, **values) -> RetentionPolicy:
        policy = await self.get_policy(tenant_id)
        if policy is None:
            policy = RetentionPolicy(tenant_id=tenant_id, **values)
            self.session.add(policy)
        else:
            for key, value in values.items():
                setattr(policy, key, value)
        await self.session.flush()
        return policy

    async def delete_policy(self, tenant_id: str) -> bool:
        policy = await self.get_policy(tenant_id)
        if not policy:
            return False
        await self.session.delete(policy)
        await self.session.flush()
        return True

    async def record_cleanup(self, policy: RetentionPolicy, when: datetime, count: int) -> None:
        policy.last_cleanup_at = when
        policy.last_cleanup_count = count
        await self.session.flush()
