"""Campaign send pipeline.

``request_send`` validates and claims a draft campaign (``draft -> sending``)
with a conditional UPDATE, then publishes ``campaign:send`` and returns. The
subscriber starts one detached task per campaign that resolves the live
audience, writes the pending delivery logs and transmits them in sequential
batches. The run ends in ``sent``, or in ``failed`` when anything outside a
single message's transmission goes wrong.
"""

import asyncio
import logging
import traceback
from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.errors import Conflict, NotFound
from app.core.observability import log_event
from app.models.base import utcnow
from app.models.campaign import Campaign, CommunicationLog
from app.models.segment import Segment
from app.models.user import User
from app.schemas.rules import rule_tree_from_json
from app.services.campaign_service import get_owned_campaign
from app.services.delivery_ledger import (
    DEFAULT_FAILURE_REASON,
    DeliveryOutcome,
    apply_outcomes_batch,
    mark_sending,
    reconcile_campaign_counters,
)
from app.services.event_bus import CAMPAIGN_SEND, EventBus
from app.services.messaging_provider import (
    MessageSendRequest,
    MessageSendResult,
    MessagingProvider,
    get_messaging_provider,
)
from app.services.rule_engine import load_audience, personalize_message

logger = logging.getLogger("crm.dispatch")

TERMINAL_OUTCOMES = {"delivered", "failed"}
INTERRUPTED_REASON = "Dispatch interrupted"


class DispatchError(RuntimeError):
    pass


def batched(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class CampaignDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        provider_factory: Callable[[], MessagingProvider] = get_messaging_provider,
    ):
        self._session_factory = session_factory
        self._bus = bus
        self._provider_factory = provider_factory
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    async def request_send(self, db: AsyncSession, campaign_id: int, requester: User) -> Campaign:
        campaign = await get_owned_campaign(db, campaign_id, requester)
        if campaign.status != "draft":
            raise Conflict("Campaign already sent" if campaign.status in {"sending", "sent"} else "Campaign is not in draft")

        segment = await db.get(Segment, campaign.segment_id)
        if segment is None:
            raise NotFound("Segment", campaign.segment_id)

        claimed = await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id, Campaign.status == "draft")
            .values(status="sending", sent_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            raise Conflict("Campaign already sent")
        await db.commit()
        await db.refresh(campaign)

        self._bus.publish(CAMPAIGN_SEND, {"campaign_id": campaign.id})
        log_event(logger, "campaign_send_requested", campaign_id=campaign.id, requester_id=requester.id)
        return campaign

    async def handle_send_event(self, payload: dict[str, Any]) -> None:
        campaign_id = int(payload["campaign_id"])
        if campaign_id in self._tasks:
            log_event(logger, "campaign_run_duplicate", level=logging.WARNING, campaign_id=campaign_id)
            return
        task = asyncio.create_task(self.run(campaign_id), name=f"campaign-dispatch:{campaign_id}")
        self._tasks[campaign_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(campaign_id, None))

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def fail_interrupted_runs(self) -> list[int]:
        """Fail campaigns left in ``sending`` by a previous process; no run survives a restart."""
        async with self._session_factory() as db:
            sending = (
                await db.execute(select(Campaign.id).where(Campaign.status == "sending").order_by(Campaign.id))
            ).scalars().all()
            stale = [campaign_id for campaign_id in sending if campaign_id not in self._tasks]
            for campaign_id in stale:
                await self._fail_campaign(db, campaign_id, INTERRUPTED_REASON)
        if stale:
            log_event(logger, "campaign_runs_interrupted", level=logging.WARNING, campaign_ids=stale)
        return stale

    async def run(self, campaign_id: int) -> None:
        try:
            async with self._session_factory() as db:
                try:
                    await self._run(db, campaign_id)
                except Exception as exc:
                    await db.rollback()
                    await self._mark_failed(db, campaign_id, exc)
        except asyncio.CancelledError:
            # The run session is closed by now, so its write lock is released.
            await asyncio.shield(self._mark_interrupted(campaign_id))
            raise

    async def _run(self, db: AsyncSession, campaign_id: int) -> None:
        campaign = await db.get(Campaign, campaign_id)
        if campaign is None:
            log_event(logger, "campaign_run_skipped", level=logging.WARNING, campaign_id=campaign_id, reason="missing")
            return
        if campaign.status != "sending":
            log_event(
                logger,
                "campaign_run_skipped",
                level=logging.WARNING,
                campaign_id=campaign_id,
                reason=f"status={campaign.status}",
            )
            return
        existing_logs = (
            await db.execute(select(func.count(CommunicationLog.id)).where(CommunicationLog.campaign_id == campaign_id))
        ).scalar_one()
        if existing_logs:
            log_event(
                logger,
                "campaign_run_skipped",
                level=logging.WARNING,
                campaign_id=campaign_id,
                reason="logs_exist",
            )
            return

        segment = await db.get(Segment, campaign.segment_id)
        if segment is None:
            raise DispatchError(f"Segment {campaign.segment_id} not found")

        audience = await load_audience(db, rule_tree_from_json(segment.rules))
        logs = [
            CommunicationLog(
                campaign_id=campaign.id,
                customer_id=customer.id,
                message=personalize_message(campaign.message, customer),
                status="pending",
            )
            for customer in audience
        ]
        db.add_all(logs)
        campaign.audience_size = len(audience)
        campaign.sent_count = 0
        campaign.failed_count = 0
        await db.commit()
        log_event(logger, "campaign_audience_resolved", campaign_id=campaign.id, audience_size=len(audience))

        provider = self._provider_factory()
        batches = batched(logs, settings.dispatch_batch_size)
        for index, batch in enumerate(batches):
            await self._send_batch(db, provider, batch)
            if index < len(batches) - 1 and settings.dispatch_batch_delay_seconds > 0:
                await asyncio.sleep(settings.dispatch_batch_delay_seconds)

        sent_count, failed_count = await reconcile_campaign_counters(db, campaign.id)
        await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id)
            .values(status="sent", completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        log_event(
            logger,
            "campaign_sent",
            campaign_id=campaign.id,
            audience_size=len(audience),
            sent_count=sent_count,
            failed_count=failed_count,
            batches=len(batches),
        )

    async def _send_batch(
        self,
        db: AsyncSession,
        provider: MessagingProvider,
        batch: Sequence[CommunicationLog],
    ) -> None:
        await mark_sending(db, [log.id for log in batch], sent_at=utcnow())
        results = await asyncio.gather(
            *(
                provider.send_message(
                    MessageSendRequest(log_id=log.id, customer_id=log.customer_id, content=log.message)
                )
                for log in batch
            ),
            return_exceptions=True,
        )

        outcomes: list[DeliveryOutcome] = []
        for log, result in zip(batch, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                log_event(
                    logger,
                    "message_send_failed",
                    level=logging.WARNING,
                    campaign_id=log.campaign_id,
                    log_id=log.id,
                    error=str(result),
                )
                outcomes.append(
                    DeliveryOutcome(
                        log_id=log.id,
                        status="failed",
                        failure_reason=str(result) or DEFAULT_FAILURE_REASON,
                    )
                )
                continue
            outcome = _outcome_from_result(log, result)
            if outcome is not None:
                outcomes.append(outcome)

        await apply_outcomes_batch(db, outcomes)

    async def _mark_failed(self, db: AsyncSession, campaign_id: int, exc: Exception) -> None:
        log_event(
            logger,
            "campaign_failed",
            level=logging.ERROR,
            campaign_id=campaign_id,
            error=str(exc),
            traceback=traceback.format_exc(limit=10),
        )
        await self._fail_campaign(db, campaign_id, str(exc) or exc.__class__.__name__)

    async def _mark_interrupted(self, campaign_id: int) -> None:
        log_event(logger, "campaign_interrupted", level=logging.WARNING, campaign_id=campaign_id)
        async with self._session_factory() as db:
            await self._fail_campaign(db, campaign_id, INTERRUPTED_REASON)

    async def _fail_campaign(self, db: AsyncSession, campaign_id: int, reason: str) -> None:
        # Counters still reflect whatever the ledger recorded before the failure.
        await reconcile_campaign_counters(db, campaign_id)
        await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == "sending")
            .values(status="failed", failure_reason=reason[:255], completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()


def _outcome_from_result(log: CommunicationLog, result: MessageSendResult) -> DeliveryOutcome | None:
    # Any other status means the vendor accepted the message and will report back through a receipt.
    if result.status not in TERMINAL_OUTCOMES:
        return None
    return DeliveryOutcome(
        log_id=log.id,
        status=result.status,
        delivered_at=utcnow() if result.status == "delivered" else None,
        failure_reason=result.failure_reason,
        provider_message_id=result.message_id,
    )
