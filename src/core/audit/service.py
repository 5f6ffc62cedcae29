from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        entity_type: str,
        entity_id: int,
        actor_id: int | None = None,
        account_id: int | None = None,
        agency_id: int | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry. Flushed, not committed: the caller owns the transaction."""
        audit_log = AuditLog(
            actor_id=actor_id,
            account_id=account_id,
            agency_id=agency_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=to_jsonable_python(old_values) if old_values is not None else None,
            new_values=to_jsonable_python(new_values) if new_values is not None else None,
            comment=comment,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log

    async def list_for_entity(
        self,
        entity_type: str,
        entity_id: int,
        *,
        account_id: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """Entries for one entity, oldest first."""
        query = select(AuditLog).where(
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id,
        )
        if account_id is not None:
            query = query.where(AuditLog.account_id == account_id)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        query = query.offset((page - 1) * limit).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total
