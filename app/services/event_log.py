"""
Event Log
Append-only store of admitted webhook idempotency keys
"""

from typing import Dict, Optional, Protocol
from datetime import datetime, timezone
import hashlib
import json
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.dialects.postgresql import insert as pg_insert

from app.exceptions import InfrastructureError
from app.models.processed_event import ProcessedEvent

logger = structlog.get_logger(__name__)


def generate_idempotency_key(event_type: str, payment_id: str, payload: dict) -> str:
    """
    Generate a deterministic idempotency key for deliveries that carry none.

    Format: {event_type}:{payment_id}:{content_hash[:16]}

    Args:
        event_type: Webhook event type (e.g., 'payment_completed')
        payment_id: Payment id the event refers to
        payload: Event payload to hash

    Returns:
        Idempotency key string
    """
    # Create consistent JSON representation for hashing
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    content_hash = hashlib.sha256(payload_json.encode()).hexdigest()

    return f"{event_type}:{payment_id}:{content_hash[:16]}"


class EventLog(Protocol):
    async def contains(self, idempotency_key: str) -> bool: ...

    async def insert_if_absent(self, idempotency_key: str, metadata: dict) -> bool: ...


class SqlEventLog:
    """
    PostgreSQL-backed event log.

    Uses INSERT ... ON CONFLICT DO NOTHING so that two concurrent deliveries
    of the same event can never both be admitted.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy async_sessionmaker (each call runs in its own transaction)
        """
        self.session_factory = session_factory
        self.logger = logger.bind(service="event_log")

    async def contains(self, idempotency_key: str) -> bool:
        """
        Check if an idempotency key was already admitted.

        Raises:
            InfrastructureError: database unreachable
        """
        session: AsyncSession = self.session_factory()
        try:
            result = await session.execute(
                select(ProcessedEvent.id).where(ProcessedEvent.idempotency_key == idempotency_key)
            )
            return result.first() is not None
        except SQLAlchemyError as e:
            self.logger.error("event_log_lookup_failed", key=idempotency_key, error=str(e))
            raise InfrastructureError(f"Event log lookup failed: {e}") from e
        finally:
            await session.close()

    async def insert_if_absent(self, idempotency_key: str, metadata: dict) -> bool:
        """
        Admit an event.

        Args:
            idempotency_key: Unique delivery key
            metadata: event_type, payment_id and raw payload

        Returns:
            True if the row was inserted, False if the key already existed

        Raises:
            InfrastructureError: database unreachable
        """
        session: AsyncSession = self.session_factory()
        try:
            stmt = pg_insert(ProcessedEvent).values(
                idempotency_key=idempotency_key,
                event_type=metadata.get("event_type", "unknown"),
                payment_id=metadata.get("payment_id"),
                payload=metadata.get("payload"),
                received_at=datetime.now(timezone.utc)
            ).on_conflict_do_nothing(index_elements=['idempotency_key'])

            result_proxy = await session.execute(stmt)
            await session.commit()

            # rowcount = 0 means the key conflicted
            inserted = result_proxy.rowcount > 0

            if inserted:
                self.logger.info("event_admitted", key=idempotency_key)
            else:
                self.logger.info("event_already_admitted", key=idempotency_key)

            return inserted

        except SQLAlchemyError as e:
            self.logger.error("event_log_insert_failed", key=idempotency_key, error=str(e))
            await session.rollback()
            raise InfrastructureError(f"Event log insert failed: {e}") from e
        finally:
            await session.close()


class InMemoryEventLog:
    """Event log for development without PostgreSQL and for tests"""

    def __init__(self):
        self.rows: Dict[str, dict] = {}

    async def contains(self, idempotency_key: str) -> bool:
        return idempotency_key in self.rows

    async def insert_if_absent(self, idempotency_key: str, metadata: dict) -> bool:
        # No await between check and write: atomic on a single event loop
        if idempotency_key in self.rows:
            return False
        self.rows[idempotency_key] = {
            **metadata,
            "received_at": datetime.now(timezone.utc),
        }
        return True

    def get(self, idempotency_key: str) -> Optional[dict]:
        return self.rows.get(idempotency_key)
