"""Order fulfillment: order commands, the saga step commands and their
inverses, the ``order_summary`` projection and the fulfillment planner.

Fulfillment of one order touches three aggregates:

================  ==============  ===========================
aggregate id      type            events
================  ==============  ===========================
``<order>``       Order           OrderCreated, OrderShipped, ShipmentCancelled
``inventory-<o>`` Inventory       InventoryReserved, InventoryReleased
``payment-<o>``   Payment         PaymentCharged, PaymentRefunded
================  ==============  ===========================
"""

from __future__ import annotations

from typing import Any

from eventcore.core.enums import ErrorCode
from eventcore.core.errors import EngineError, NotFound, StreamNotFound
from eventcore.cqrs.queries import CachePolicy
from eventcore.domain.events import DomainEvent, NewEvent
from eventcore.domain.messages import Command, CommandMetadata, Query, QueryResult
from eventcore.domain.sagas import SagaPlan

ORDER_SUMMARY = "order_summary"
FULFILLMENT_SAGA = "order_fulfillment"

# Charges above this amount are declined.
PAYMENT_LIMIT = 10_000.0


class PaymentDeclined(EngineError):
    code = ErrorCode.HANDLER_ERROR


def order_total(items: list[dict[str, Any]]) -> float:
    return round(
        sum(float(i.get("price", 0)) * int(i.get("quantity", 1)) for i in items), 2,
    )


def _event(command: Command, event_type: str, data: dict[str, Any]) -> NewEvent:
    return NewEvent(
        type=event_type,
        data=data,
        correlation_id=command.metadata.correlation_id,
        causation_id=command.id,
        user_id=command.metadata.user_id,
    )


async def _append(
    store: Any, command: Command, aggregate_type: str, event_type: str,
    data: dict[str, Any], *, new_stream: bool = False,
) -> list[DomainEvent]:
    expected = command.metadata.expected_version
    if expected is None and new_stream:
        expected = 0
    return await store.append_events(
        command.aggregate_id,
        aggregate_type,
        [_event(command, event_type, data)],
        expected_version=expected,
    )


async def _require(store: Any, aggregate_id: str, what: str) -> None:
    if await store.get_event_stream(aggregate_id) is None:
        raise StreamNotFound(f"{what} {aggregate_id} does not exist")


# ---------------------------------------------------------------------------
# Order commands
# ---------------------------------------------------------------------------

def validate_create_order(command: Command) -> bool:
    items = command.data.get("items")
    return bool(command.data.get("user_id")) and bool(items) and all(
        i.get("sku") and int(i.get("quantity", 1)) > 0 for i in items
    )


async def create_order(command: Command, store: Any) -> list[DomainEvent]:
    items = list(command.data["items"])
    return await _append(store, command, "Order", "OrderCreated", {
        "order_id": command.aggregate_id,
        "user_id": command.data["user_id"],
        "items": items,
        "total": command.data.get("total", order_total(items)),
    }, new_stream=True)


async def ship_order(command: Command, store: Any) -> list[DomainEvent]:
    await _require(store, command.aggregate_id, "Order")
    return await _append(store, command, "Order", "OrderShipped", {
        "order_id": command.aggregate_id,
        "carrier": command.data.get("carrier", "standard"),
    })


async def cancel_shipment(command: Command, store: Any) -> list[DomainEvent]:
    await _require(store, command.aggregate_id, "Order")
    return await _append(store, command, "Order", "ShipmentCancelled", {
        "order_id": command.aggregate_id,
    })


# ---------------------------------------------------------------------------
# Inventory / payment commands
# ---------------------------------------------------------------------------

async def reserve_inventory(command: Command, store: Any) -> list[DomainEvent]:
    return await _append(store, command, "Inventory", "InventoryReserved", {
        "order_id": command.data.get("order_id"),
        "items": list(command.data.get("items", [])),
    })


async def release_inventory(command: Command, store: Any) -> list[DomainEvent]:
    await _require(store, command.aggregate_id, "Reservation")
    return await _append(store, command, "Inventory", "InventoryReleased", {
        "order_id": command.data.get("order_id"),
    })


def validate_charge(command: Command) -> bool:
    return float(command.data.get("amount", 0)) > 0


async def charge_payment(command: Command, store: Any) -> list[DomainEvent]:
    amount = float(command.data["amount"])
    if amount > PAYMENT_LIMIT:
        raise PaymentDeclined(f"Payment of {amount:.2f} exceeds limit {PAYMENT_LIMIT:.2f}")
    return await _append(store, command, "Payment", "PaymentCharged", {
        "order_id": command.data.get("order_id"),
        "amount": amount,
    })


async def refund_payment(command: Command, store: Any) -> list[DomainEvent]:
    await _require(store, command.aggregate_id, "Payment")
    return await _append(store, command, "Payment", "PaymentRefunded", {
        "order_id": command.data.get("order_id"),
        "amount": float(command.data.get("amount", 0)),
    })


# ---------------------------------------------------------------------------
# Saga planning
# ---------------------------------------------------------------------------

def fulfillment_commands(
    order_id: str, items: list[dict[str, Any]], amount: float, correlation_id: str = "",
) -> tuple[list[Command], list[Command | None]]:
    """Forward steps and their inverses for fulfilling one order."""
    meta = CommandMetadata(correlation_id=correlation_id, source=FULFILLMENT_SAGA)
    reservation = f"inventory-{order_id}"
    payment = f"payment-{order_id}"
    steps = [
        Command("ReserveInventory", reservation, "Inventory",
                {"order_id": order_id, "items": items}, meta),
        Command("ChargePayment", payment, "Payment",
                {"order_id": order_id, "amount": amount}, meta),
        Command("ShipOrder", order_id, "Order", {"order_id": order_id}, meta),
    ]
    compensations: list[Command | None] = [
        Command("ReleaseInventory", reservation, "Inventory", {"order_id": order_id}, meta),
        Command("RefundPayment", payment, "Payment",
                {"order_id": order_id, "amount": amount}, meta),
        Command("CancelShipment", order_id, "Order", {"order_id": order_id}, meta),
    ]
    return steps, compensations


def plan_fulfillment(event: DomainEvent) -> SagaPlan | None:
    """Start fulfillment for every newly created order."""
    if event.type != "OrderCreated":
        return None
    steps, compensations = fulfillment_commands(
        event.aggregate_id,
        list(event.data.get("items", [])),
        float(event.data.get("total", 0)),
        event.metadata.correlation_id,
    )
    return SagaPlan(
        saga_type=FULFILLMENT_SAGA,
        steps=tuple(steps),
        compensations=tuple(compensations),
        context=(("order_id", event.aggregate_id), ("user_id", event.data.get("user_id"))),
    )


# ---------------------------------------------------------------------------
# order_summary folds
# ---------------------------------------------------------------------------

def _summary(data: dict[str, Any]) -> dict[str, Any]:
    data.setdefault("orders", {})
    data.setdefault("order_count", 0)
    data.setdefault("total_revenue", 0.0)
    return data


def fold_order_created(data: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
    data = _summary(data)
    total = float(event.data.get("total", 0))
    data["orders"][event.aggregate_id] = {
        "id": event.aggregate_id,
        "user_id": event.data.get("user_id"),
        "items": event.data.get("items", []),
        "total": total,
        "status": "created",
        "created_at": event.metadata.timestamp.isoformat(),
    }
    data["order_count"] += 1
    data["total_revenue"] = round(data["total_revenue"] + total, 2)
    return data


def _set_status(status: str) -> Any:
    def fold(data: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        order = _summary(data)["orders"].get(event.aggregate_id)
        if order is not None:
            order["status"] = status
            order["updated_at"] = event.metadata.timestamp.isoformat()
        return data
    fold.__name__ = f"fold_order_{status}"
    return fold


ORDER_SUMMARY_FOLDS = {
    "OrderCreated": fold_order_created,
    "OrderShipped": _set_status("shipped"),
    "ShipmentCancelled": _set_status("cancelled"),
}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_order_summary(query: Query, projections: Any) -> QueryResult:
    projection = projections.get_projection(ORDER_SUMMARY)
    data = _summary(projection.data)
    order_id = query.parameters.get("order_id")
    if order_id is not None:
        order = data["orders"].get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        result: Any = order
    else:
        by_status: dict[str, int] = {}
        for order in data["orders"].values():
            by_status[order["status"]] = by_status.get(order["status"], 0) + 1
        result = {
            "order_count": data["order_count"],
            "total_revenue": data["total_revenue"],
            "by_status": by_status,
        }
    return QueryResult.ok(
        result, version=projection.version, last_modified=projection.last_updated,
    )


async def register(engine: Any, *, auto_fulfill: bool = True) -> None:
    engine.register_command_handler(
        "CreateOrder", create_order, name="CreateOrderHandler", validate=validate_create_order,
    )
    engine.register_command_handler("ShipOrder", ship_order, name="ShipOrderHandler")
    engine.register_command_handler("CancelShipment", cancel_shipment, name="CancelShipmentHandler")
    engine.register_command_handler(
        "ReserveInventory", reserve_inventory, name="ReserveInventoryHandler",
    )
    engine.register_command_handler(
        "ReleaseInventory", release_inventory, name="ReleaseInventoryHandler",
    )
    engine.register_command_handler(
        "ChargePayment", charge_payment, name="ChargePaymentHandler", validate=validate_charge,
    )
    engine.register_command_handler("RefundPayment", refund_payment, name="RefundPaymentHandler")

    await engine.create_projection(
        ORDER_SUMMARY, "Order Summary", "summary",
        list(ORDER_SUMMARY_FOLDS), folds=ORDER_SUMMARY_FOLDS,
    )
    engine.register_query_handler(
        "GetOrderSummary",
        get_order_summary,
        name="GetOrderSummaryHandler",
        caching=CachePolicy(
            enabled=True,
            ttl=engine.settings.queries.cache_ttl,
            invalidation_pattern=ORDER_SUMMARY,
        ),
    )

    if auto_fulfill:
        engine.register_trigger("OrderCreated", plan_fulfillment)
