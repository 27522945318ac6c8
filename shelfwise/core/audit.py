"""
Audit trail for lending state transitions.

Entries are written in their own session after the primary unit of work has
committed. A failing audit write is logged and metered, never raised, so it
can never roll back a loan, a return or a payment.
"""
import enum
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shelfwise.config import FeatureFlags
from shelfwise.database.models import AuditLog
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class AuditAction(str, enum.Enum):
    BORROW_REQUEST_CREATED = "BORROW_REQUEST_CREATED"
    BORROW_REQUEST_APPROVED = "BORROW_REQUEST_APPROVED"
    BORROW_REQUEST_REJECTED = "BORROW_REQUEST_REJECTED"
    RETURN_REQUEST_CREATED = "RETURN_REQUEST_CREATED"
    RETURN_REQUEST_APPROVED = "RETURN_REQUEST_APPROVED"
    RETURN_REQUEST_REJECTED = "RETURN_REQUEST_REJECTED"
    INVENTORY_VIOLATION = "INVENTORY_VIOLATION"
    FINE_CALCULATED = "FINE_CALCULATED"
    FINE_PAID = "FINE_PAID"
    FINE_WAIVED = "FINE_WAIVED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    USER_RESTRICTED = "USER_RESTRICTED"
    USER_UNRESTRICTED = "USER_UNRESTRICTED"


class ActorType(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class AuditTrail:
    """Write-only audit sink."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        flags: FeatureFlags,
    ):
        self.session_factory = session_factory
        self.flags = flags

    async def record(
        self,
        action: AuditAction,
        actor_type: ActorType,
        entity_type: str,
        entity_id: Any = None,
        actor_id: Optional[uuid.UUID] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "INFO",
    ) -> bool:
        """
        Append an audit entry.

        Args:
            action: What happened
            actor_type: USER, ADMIN or SYSTEM
            entity_type: Kind of entity affected (e.g. "borrow_request")
            entity_id: Identifier of the entity
            actor_id: Who did it, when known
            details: Extra JSON-serializable context
            severity: INFO, WARNING or HIGH

        Returns:
            bool: True if the entry was written
        """
        if not self.flags.audit_logging_enabled:
            return False

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(
                        AuditLog(
                            action=action.value,
                            actor_type=actor_type.value,
                            actor_id=actor_id,
                            entity_type=entity_type,
                            entity_id=str(entity_id) if entity_id is not None else None,
                            severity=severity,
                            details=details,
                        )
                    )
            return True
        except Exception as e:
            logger.error(
                "audit_write_failed",
                action=action.value,
                entity_id=str(entity_id),
                error=str(e),
            )
            metrics.record_dependency_failure("audit")
            return False
