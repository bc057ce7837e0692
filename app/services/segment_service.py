import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Forbidden, NotFound
from app.core.observability import log_event
from app.models.segment import Segment
from app.models.user import User
from app.schemas.rules import RuleGroup, rule_tree_from_json
from app.services import ai_service
from app.services.rule_engine import count_audience

logger = logging.getLogger("crm.api")


async def preview_audience(db: AsyncSession, rules: RuleGroup) -> int:
    """Live audience count; nothing is stored."""
    return await count_audience(db, rules)


async def create_segment(db: AsyncSession, *, name: str, rules: RuleGroup, owner: User) -> Segment:
    audience_size = await count_audience(db, rules)
    segment = Segment(
        name=name,
        rules=rules.model_dump(mode="json"),
        created_by_id=owner.id,
        audience_size=audience_size,
    )
    db.add(segment)
    await db.commit()
    log_event(
        logger,
        "segment_created",
        segment_id=segment.id,
        owner_id=owner.id,
        audience_size=audience_size,
    )
    return segment


async def get_owned_segment(db: AsyncSession, segment_id: int, requester: User) -> Segment:
    segment = await db.get(Segment, segment_id)
    if segment is None:
        raise NotFound("Segment", segment_id)
    if segment.created_by_id != requester.id:
        raise Forbidden()
    return segment


async def list_segments(
    db: AsyncSession,
    owner: User,
    *,
    limit: int,
    offset: int,
) -> tuple[list[Segment], int]:
    total = int(
        (await db.execute(select(func.count(Segment.id)).where(Segment.created_by_id == owner.id))).scalar_one()
    )
    rows = (
        await db.execute(
            select(Segment)
            .where(Segment.created_by_id == owner.id)
            .order_by(Segment.created_at.desc(), Segment.id.desc())
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()
    return list(rows), total


async def live_audience_size(db: AsyncSession, segment: Segment) -> int:
    return await count_audience(db, rule_tree_from_json(segment.rules))


async def generate_from_text(
    db: AsyncSession,
    text: str,
    context: dict[str, Any] | None = None,
) -> tuple[ai_service.RuleGenerationResult, int]:
    result = await ai_service.generate_rules(text, context)
    return result, await count_audience(db, result.rules)
