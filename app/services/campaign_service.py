import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Forbidden, NotFound
from app.core.observability import log_event
from app.models.campaign import Campaign
from app.models.user import User
from app.schemas.campaign import CampaignCreateIn
from app.services.segment_service import get_owned_segment

logger = logging.getLogger("crm.api")


async def create_campaign(db: AsyncSession, payload: CampaignCreateIn, owner: User) -> Campaign:
    segment = await get_owned_segment(db, payload.segment_id, owner)
    campaign = Campaign(
        name=payload.name,
        segment_id=segment.id,
        message=payload.message,
        created_by_id=owner.id,
        status="draft",
        # Provisional; replaced by the live count when sending starts.
        audience_size=segment.audience_size,
    )
    db.add(campaign)
    await db.commit()
    log_event(logger, "campaign_created", campaign_id=campaign.id, segment_id=segment.id, owner_id=owner.id)
    return campaign


async def get_owned_campaign(db: AsyncSession, campaign_id: int, requester: User) -> Campaign:
    campaign = await db.get(Campaign, campaign_id, populate_existing=True)
    if campaign is None:
        raise NotFound("Campaign", campaign_id)
    if campaign.created_by_id != requester.id:
        raise Forbidden()
    return campaign


async def list_campaigns(
    db: AsyncSession,
    owner: User,
    *,
    status: str | None = None,
    limit: int,
    offset: int,
) -> tuple[list[Campaign], int]:
    count_stmt = select(func.count(Campaign.id)).where(Campaign.created_by_id == owner.id)
    stmt = select(Campaign).where(Campaign.created_by_id == owner.id)
    if status:
        count_stmt = count_stmt.where(Campaign.status == status)
        stmt = stmt.where(Campaign.status == status)

    total = int((await db.execute(count_stmt)).scalar_one())
    newest = func.coalesce(Campaign.sent_at, Campaign.created_at)
    rows = (
        await db.execute(stmt.order_by(newest.desc(), Campaign.id.desc()).offset(offset).limit(limit))
    ).scalars().all()
    return list(rows), total
