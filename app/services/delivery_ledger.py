"""Per-message delivery records and the campaign counters derived from them.

A log only moves into ``delivered`` or ``failed`` from ``pending``/``sending``.
The move is a conditional UPDATE on the previous status, and each successful
move adds to the campaign counter with a ``count = count + n`` UPDATE, so
outcomes can be applied repeatedly and concurrently without double counting.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.observability import log_event
from app.models.base import as_utc, utcnow
from app.models.campaign import Campaign, CommunicationLog

logger = logging.getLogger("crm.dispatch")

OPEN_LOG_STATUSES = ("pending", "sending")
DEFAULT_FAILURE_REASON = "Failed to deliver message"


@dataclass(frozen=True)
class DeliveryOutcome:
    log_id: int
    status: str
    delivered_at: datetime | None = None
    failure_reason: str | None = None
    provider_message_id: str | None = None


@dataclass
class LedgerApplyResult:
    applied: int = 0
    ignored: int = 0
    unknown_log_ids: list[int] = field(default_factory=list)


def _dedupe(outcomes: Iterable[DeliveryOutcome]) -> list[DeliveryOutcome]:
    seen: set[int] = set()
    unique: list[DeliveryOutcome] = []
    for outcome in outcomes:
        if outcome.log_id in seen:
            continue
        seen.add(outcome.log_id)
        unique.append(outcome)
    return unique


def _transition_values(outcome: DeliveryOutcome) -> dict:
    if outcome.status == "delivered":
        values = {
            "status": "delivered",
            "delivered_at": as_utc(outcome.delivered_at) if outcome.delivered_at else utcnow(),
        }
    elif outcome.status == "failed":
        values = {
            "status": "failed",
            "failure_reason": (outcome.failure_reason or DEFAULT_FAILURE_REASON)[:255],
        }
    else:
        raise ValueError(f"Unsupported delivery outcome '{outcome.status}'")
    if outcome.provider_message_id:
        values["provider_message_id"] = outcome.provider_message_id
    return values


async def apply_outcomes_batch(db: AsyncSession, outcomes: Sequence[DeliveryOutcome]) -> LedgerApplyResult:
    result = LedgerApplyResult()
    unique = _dedupe(outcomes)
    if not unique:
        return result

    rows = (
        await db.execute(
            select(CommunicationLog.id, CommunicationLog.campaign_id).where(
                CommunicationLog.id.in_([outcome.log_id for outcome in unique])
            )
        )
    ).all()
    campaign_by_log = {row.id: row.campaign_id for row in rows}

    increments: dict[int, dict[str, int]] = defaultdict(lambda: {"delivered": 0, "failed": 0})
    for outcome in unique:
        campaign_id = campaign_by_log.get(outcome.log_id)
        if campaign_id is None:
            result.unknown_log_ids.append(outcome.log_id)
            continue

        updated = await db.execute(
            update(CommunicationLog)
            .where(
                CommunicationLog.id == outcome.log_id,
                CommunicationLog.status.in_(OPEN_LOG_STATUSES),
            )
            .values(**_transition_values(outcome))
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 1:
            increments[campaign_id][outcome.status] += 1
            result.applied += 1
        else:
            result.ignored += 1

    for campaign_id, counts in increments.items():
        await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                sent_count=Campaign.sent_count + counts["delivered"],
                failed_count=Campaign.failed_count + counts["failed"],
            )
            .execution_options(synchronize_session=False)
        )
    await db.commit()

    if result.unknown_log_ids:
        log_event(
            logger,
            "delivery_outcome_unknown_logs",
            level=logging.WARNING,
            log_ids=result.unknown_log_ids,
        )
    log_event(
        logger,
        "delivery_outcomes_applied",
        applied=result.applied,
        ignored=result.ignored,
        campaigns=sorted(increments),
    )
    return result


async def apply_outcome(db: AsyncSession, outcome: DeliveryOutcome) -> bool:
    """Apply a single outcome; False when it was a repeat, a late conflict or an unknown log."""
    result = await apply_outcomes_batch(db, [outcome])
    return result.applied == 1


async def mark_sending(db: AsyncSession, log_ids: Sequence[int], *, sent_at: datetime | None = None) -> int:
    if not log_ids:
        return 0
    updated = await db.execute(
        update(CommunicationLog)
        .where(
            CommunicationLog.id.in_(list(log_ids)),
            CommunicationLog.status == "pending",
        )
        .values(status="sending", sent_at=sent_at or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return updated.rowcount


async def reconcile_campaign_counters(db: AsyncSession, campaign_id: int) -> tuple[int, int]:
    """Recompute ``sent_count``/``failed_count`` from log statuses. The caller commits."""
    rows = (
        await db.execute(
            select(CommunicationLog.status, func.count(CommunicationLog.id))
            .where(CommunicationLog.campaign_id == campaign_id)
            .group_by(CommunicationLog.status)
        )
    ).all()
    counts = {status: int(total) for status, total in rows}
    sent_count = counts.get("delivered", 0)
    failed_count = counts.get("failed", 0)
    await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(sent_count=sent_count, failed_count=failed_count)
        .execution_options(synchronize_session=False)
    )
    return sent_count, failed_count


async def list_campaign_logs(
    db: AsyncSession,
    campaign_id: int,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CommunicationLog], int]:
    count_stmt = select(func.count(CommunicationLog.id)).where(CommunicationLog.campaign_id == campaign_id)
    stmt = select(CommunicationLog).where(CommunicationLog.campaign_id == campaign_id)
    if status:
        count_stmt = count_stmt.where(CommunicationLog.status == status)
        stmt = stmt.where(CommunicationLog.status == status)

    total = int((await db.execute(count_stmt)).scalar_one())
    rows = (
        await db.execute(stmt.order_by(CommunicationLog.id.asc()).offset(offset).limit(limit))
    ).scalars().all()
    return list(rows), total
