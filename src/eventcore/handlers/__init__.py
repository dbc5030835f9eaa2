"""Built-in catalog: user and order handlers, projections and queries."""

from __future__ import annotations

from typing import Any

from eventcore.handlers import orders, users


async def register_default_handlers(engine: Any, *, auto_fulfill: bool = True) -> None:
    """Register the user and order catalog on *engine*.

    With *auto_fulfill* every ``OrderCreated`` event starts an
    ``order_fulfillment`` saga.
    """
    await users.register(engine)
    await orders.register(engine, auto_fulfill=auto_fulfill)


__all__ = ["register_default_handlers"]
