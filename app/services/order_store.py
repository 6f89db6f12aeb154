"""
Order Store
Persistent record of orders and their payment / generation status fields
"""

from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple
from datetime import datetime, timezone
import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import InfrastructureError, OrderNotFoundError, StaleOrderError
from app.models.order import Order, OrderRow

logger = structlog.get_logger(__name__)

StatusGuard = Optional[Iterable[Optional[str]]]


class OrderStore(Protocol):
    async def get(self, order_id: str) -> Order: ...

    async def update(self, order_id: str, *, expected_status: StatusGuard = None, **fields) -> Order: ...

    async def list_by_status(
        self,
        statuses: Iterable[str],
        payment_status: Optional[str] = None
    ) -> List[Order]: ...


def _normalize(fields: dict) -> dict:
    """Store enum members as their plain values and stamp updated_at"""
    values = {
        key: getattr(value, "value", value)
        for key, value in fields.items()
    }
    # Server-assigned, last write wins
    values["updated_at"] = datetime.now(timezone.utc)
    return values


def _guard_values(expected_status: StatusGuard) -> Optional[Set[Optional[str]]]:
    if expected_status is None:
        return None
    return {getattr(status, "value", status) for status in expected_status}


class SqlOrderStore:
    """
    PostgreSQL-backed order store.

    Each call runs in its own short transaction; there are no cross-record
    transactions.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self.logger = logger.bind(service="order_store")

    async def get(self, order_id: str) -> Order:
        """
        Load an order.

        Raises:
            OrderNotFoundError: no row with this order id
            InfrastructureError: database unreachable
        """
        session: AsyncSession = self.session_factory()
        try:
            result = await session.execute(select(OrderRow).where(OrderRow.order_id == order_id))
            row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error("order_fetch_failed", order_id=order_id, error=str(e))
            raise InfrastructureError(f"Failed to fetch order: {e}") from e
        finally:
            await session.close()

        if row is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(row)

    async def update(self, order_id: str, *, expected_status: StatusGuard = None, **fields) -> Order:
        """
        Apply a partial update and return the updated order.

        Args:
            order_id: Order to update
            expected_status: When given, the update only applies while the
                current status is one of these (None matches an unset status)

        Raises:
            OrderNotFoundError: no row with this order id
            StaleOrderError: the current status is not one of expected_status
            InfrastructureError: database unreachable
        """
        values = _normalize(fields)
        guard = _guard_values(expected_status)

        query = update(OrderRow).where(OrderRow.order_id == order_id)
        if guard is not None:
            condition = OrderRow.status.in_([status for status in guard if status is not None])
            if None in guard:
                condition = or_(condition, OrderRow.status.is_(None))
            query = query.where(condition)

        session: AsyncSession = self.session_factory()
        try:
            result = await session.execute(query.values(**values).returning(OrderRow))
            row = result.scalar_one_or_none()
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            self.logger.error("order_update_failed", order_id=order_id, fields=list(fields), error=str(e))
            raise InfrastructureError(f"Failed to update order: {e}") from e
        finally:
            await session.close()

        if row is None:
            if guard is None:
                raise OrderNotFoundError(order_id)
            # Either missing or guarded out; get() raises for the former
            current = await self.get(order_id)
            self.logger.warning("order_update_skipped", order_id=order_id, status=current.status, fields=sorted(fields))
            raise StaleOrderError(order_id, current.status)

        self.logger.info("order_updated", order_id=order_id, fields=sorted(fields))
        return Order.model_validate(row)

    async def list_by_status(
        self,
        statuses: Iterable[str],
        payment_status: Optional[str] = None
    ) -> List[Order]:
        """List orders whose generation status is in `statuses`, oldest first"""
        status_values = [getattr(s, "value", s) for s in statuses]
        query = select(OrderRow).where(OrderRow.status.in_(status_values))
        if payment_status is not None:
            query = query.where(OrderRow.payment_status == getattr(payment_status, "value", payment_status))
        query = query.order_by(OrderRow.updated_at.asc())

        session: AsyncSession = self.session_factory()
        try:
            result = await session.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            self.logger.error("order_list_failed", statuses=status_values, error=str(e))
            raise InfrastructureError(f"Failed to list orders: {e}") from e
        finally:
            await session.close()

        return [Order.model_validate(row) for row in rows]


class InMemoryOrderStore:
    """
    Order store for development without PostgreSQL and for tests.

    Keeps a write history so callers can inspect the exact sequence of
    updates applied to an order.
    """

    def __init__(self, orders: Optional[Iterable[Order]] = None):
        self.orders: Dict[str, Order] = {}
        self.history: List[Tuple[str, dict]] = []
        for order in orders or []:
            self.add(order)

    def add(self, order: Order) -> Order:
        now = datetime.now(timezone.utc)
        order = order.model_copy(update={
            "created_at": order.created_at or now,
            "updated_at": order.updated_at or now,
        })
        self.orders[order.order_id] = order
        return order

    async def get(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def update(self, order_id: str, *, expected_status: StatusGuard = None, **fields) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        guard = _guard_values(expected_status)
        if guard is not None and order.status not in guard:
            raise StaleOrderError(order_id, order.status)
        values = _normalize(fields)
        updated = order.model_copy(update=values)
        self.orders[order_id] = updated
        self.history.append((order_id, dict(fields)))
        return updated

    async def list_by_status(
        self,
        statuses: Iterable[str],
        payment_status: Optional[str] = None
    ) -> List[Order]:
        status_values = {getattr(s, "value", s) for s in statuses}
        matches = [
            order for order in self.orders.values()
            if order.status in status_values
            and (payment_status is None or order.payment_status == payment_status)
        ]
        return sorted(matches, key=lambda o: o.updated_at)

    def updates_for(self, order_id: str) -> List[dict]:
        return [fields for oid, fields in self.history if oid == order_id]
