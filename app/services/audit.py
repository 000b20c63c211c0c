"""
Audit Recorder

Appends immutable "who did what to which entity" entries. The entry is added
to the caller's session and flushed immediately, so a failing audit write
aborts the enclosing transaction together with the business mutation.
"""

import enum
import uuid
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import AuditAction, AuditLog, EntityType

logger = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class AuditRecorder:
    """Writes AuditLog rows inside the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        actor_id: uuid.UUID,
        action: Union[AuditAction, str],
        entity_type: Union[EntityType, str],
        entity_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id,
            action=_jsonable(action),
            entity_type=_jsonable(entity_type),
            entity_id=entity_id,
            meta=_jsonable(metadata or {}),
        )
        self.session.add(entry)
        await self.session.flush()

        logger.debug(
            "Audit entry recorded",
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=str(entity_id) if entity_id else None,
        )
        return entry
