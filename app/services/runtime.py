"""Background wiring: the event bus, its subscribers and the campaign dispatcher."""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.observability import log_event
from app.schemas.campaign import DeliveryReceiptIn
from app.schemas.customer import CustomerCreateIn, CustomerUpdateIn, OrderCreateIn
from app.services import customer_service
from app.services.campaign_dispatcher import CampaignDispatcher
from app.services.delivery_ledger import DeliveryOutcome, apply_outcome
from app.services.event_bus import (
    CAMPAIGN_SEND,
    CUSTOMER_CREATE,
    CUSTOMER_UPDATE,
    DELIVERY_RECEIPT,
    ORDER_CREATE,
    InProcessEventBus,
)

logger = logging.getLogger("crm.events")


@dataclass
class Runtime:
    bus: InProcessEventBus
    dispatcher: CampaignDispatcher

    async def start(self) -> None:
        await self.dispatcher.fail_interrupted_runs()
        await self.bus.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.bus.stop()

    async def join(self) -> None:
        """Wait for queued events and the campaign runs they started."""
        await self.bus.join()
        await self.dispatcher.join()


def build_runtime(session_factory: async_sessionmaker[AsyncSession]) -> Runtime:
    bus = InProcessEventBus()
    dispatcher = CampaignDispatcher(session_factory, bus)

    async def on_customer_create(payload: dict[str, Any]) -> None:
        async with session_factory() as db:
            await customer_service.create_customer(db, CustomerCreateIn.model_validate(payload))

    async def on_customer_update(payload: dict[str, Any]) -> None:
        changes = CustomerUpdateIn.model_validate(payload["data"]).model_dump(exclude_unset=True)
        async with session_factory() as db:
            await customer_service.update_customer(db, int(payload["id"]), changes)

    async def on_order_create(payload: dict[str, Any]) -> None:
        async with session_factory() as db:
            await customer_service.create_order(db, OrderCreateIn.model_validate(payload))

    async def on_delivery_receipt(payload: dict[str, Any]) -> None:
        receipt = DeliveryReceiptIn.model_validate(payload)
        outcome = DeliveryOutcome(
            log_id=receipt.log_id,
            status=receipt.status,
            delivered_at=receipt.delivered_at,
            failure_reason=receipt.failure_reason,
        )
        async with session_factory() as db:
            applied = await apply_outcome(db, outcome)
        if not applied:
            log_event(logger, "delivery_receipt_ignored", log_id=outcome.log_id, status=outcome.status)

    bus.subscribe(CUSTOMER_CREATE, on_customer_create)
    bus.subscribe(CUSTOMER_UPDATE, on_customer_update)
    bus.subscribe(ORDER_CREATE, on_order_create)
    bus.subscribe(DELIVERY_RECEIPT, on_delivery_receipt)
    bus.subscribe(CAMPAIGN_SEND, dispatcher.handle_send_event)
    return Runtime(bus=bus, dispatcher=dispatcher)
