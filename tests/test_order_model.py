"""Tests for the order status state machine and the in-memory order store."""

import pytest

from app.exceptions import OrderNotFoundError, StaleOrderError
from app.models.order import Order, OrderStatus, PaymentStatus, can_transition, statuses_entering


class TestCanTransition:
    @pytest.mark.parametrize("current,new", [
        ("pending_generation", "queued"),
        ("queued", "processing"),
        ("processing", "completed"),
        ("processing", "failed"),
        ("failed", "queued"),
        ("processing", "queued"),
        (None, "pending_generation"),
        ("queued", "queued"),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new) is True

    @pytest.mark.parametrize("current,new", [
        ("completed", "queued"),
        ("completed", "failed"),
        ("pending_generation", "completed"),
        ("queued", "completed"),
        ("failed", "processing"),
    ])
    def test_forbidden(self, current, new):
        assert can_transition(current, new) is False

    def test_statuses_entering_queued(self):
        assert statuses_entering(OrderStatus.QUEUED) == {
            None, "pending_generation", "queued", "processing", "failed"
        }

    def test_statuses_entering_processing(self):
        assert statuses_entering(OrderStatus.PROCESSING) == {None, "queued", "processing"}


class TestOrder:
    def test_defaults(self):
        order = Order(order_id="O1")

        assert order.payment_status == PaymentStatus.NONE
        assert order.payment_status == "none"
        assert order.status is None

    def test_enum_values_are_plain_strings(self):
        order = Order(order_id="O1", status=OrderStatus.QUEUED)
        assert order.status in {"queued"}


@pytest.mark.anyio
class TestInMemoryOrderStore:
    async def test_update_records_history(self, order_store, make_order):
        order_store.add(make_order("O1"))

        updated = await order_store.update("O1", status=OrderStatus.QUEUED)

        assert updated.status == "queued"
        assert updated.updated_at is not None
        assert order_store.updates_for("O1") == [{"status": OrderStatus.QUEUED}]

    async def test_unknown_order(self, order_store):
        with pytest.raises(OrderNotFoundError):
            await order_store.update("missing", status=OrderStatus.QUEUED)

    async def test_list_by_status(self, order_store, make_order):
        order_store.add(make_order("O1", status=OrderStatus.QUEUED))
        order_store.add(make_order("O2", status=OrderStatus.COMPLETED))
        order_store.add(make_order("O3", payment_status=PaymentStatus.PAYMENT_STARTED, status=OrderStatus.QUEUED))

        orders = await order_store.list_by_status(
            [OrderStatus.PENDING_GENERATION, OrderStatus.QUEUED],
            payment_status=PaymentStatus.PAYMENT_COMPLETED
        )

        assert [o.order_id for o in orders] == ["O1"]

    async def test_guarded_update_applies_in_expected_status(self, order_store, make_order):
        order_store.add(make_order("O1", status=OrderStatus.PROCESSING))

        updated = await order_store.update("O1", expected_status=[OrderStatus.PROCESSING], status=OrderStatus.COMPLETED)

        assert updated.status == "completed"

    async def test_guarded_update_rejects_other_status(self, order_store, make_order):
        order_store.add(make_order("O1", status=OrderStatus.FAILED, error="Payment bounced"))

        with pytest.raises(StaleOrderError) as exc_info:
            await order_store.update("O1", expected_status=[OrderStatus.PROCESSING], status=OrderStatus.COMPLETED)

        assert exc_info.value.status == "failed"
        assert order_store.updates_for("O1") == []
        assert (await order_store.get("O1")).error == "Payment bounced"
