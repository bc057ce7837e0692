from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_docs import error_responses
from app.core.deps import get_current_user, get_db, get_runtime
from app.models.campaign import Campaign, CommunicationLog
from app.models.user import User
from app.schemas.campaign import (
    CampaignCreateIn,
    CampaignListOut,
    CampaignOut,
    CampaignSendOut,
    CampaignStatus,
    CampaignSummaryIn,
    CampaignSummaryOut,
    CommunicationLogListOut,
    CommunicationLogOut,
    DeliveryReceiptBatchIn,
    LogStatus,
    MessageSuggestionIn,
    MessageSuggestionOut,
)
from app.schemas.common import AcceptedOut, pagination
from app.services import ai_service, campaign_service
from app.services.delivery_ledger import list_campaign_logs as ledger_campaign_logs
from app.services.event_bus import DELIVERY_RECEIPT
from app.services.runtime import Runtime

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _campaign_out(campaign: Campaign) -> CampaignOut:
    return CampaignOut.model_validate(campaign)


def _log_out(log: CommunicationLog) -> CommunicationLogOut:
    return CommunicationLogOut.model_validate(log)


@router.post(
    "",
    response_model=CampaignOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create draft campaign",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def create_campaign(
    payload: CampaignCreateIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    campaign = await campaign_service.create_campaign(db, payload, actor)
    return _campaign_out(campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List own campaigns, newest first",
    responses=error_responses(401, 422, 500),
)
async def list_campaigns(
    campaign_status: CampaignStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    rows, total = await campaign_service.list_campaigns(
        db,
        actor,
        status=campaign_status,
        limit=limit,
        offset=offset,
    )
    items = [_campaign_out(row) for row in rows]
    return CampaignListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        status=campaign_status,
    )


@router.post(
    "/generate-message",
    response_model=MessageSuggestionOut,
    summary="Suggest campaign message variants",
    responses=error_responses(401, 422, 500),
)
async def generate_message(
    payload: MessageSuggestionIn,
    actor: User = Depends(get_current_user),
):
    result = await ai_service.suggest_messages(payload.objective, payload.segment_info)
    return MessageSuggestionOut(messages=result.messages, fallback_used=result.fallback_used)


@router.post(
    "/generate-summary",
    response_model=CampaignSummaryOut,
    summary="Summarise campaign delivery performance",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def generate_summary(
    payload: CampaignSummaryIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    campaign = await campaign_service.get_owned_campaign(db, payload.campaign_id, actor)
    logs, _ = await ledger_campaign_logs(db, campaign.id, limit=ai_service.SUMMARY_LOG_SAMPLE)
    result = await ai_service.summarize_campaign(campaign, logs)
    return CampaignSummaryOut(campaign_id=campaign.id, summary=result.summary, fallback_used=result.fallback_used)


@router.post(
    "/delivery-receipts",
    response_model=AcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Accept vendor delivery receipts",
    responses=error_responses(422, 500),
)
async def accept_delivery_receipts(
    payload: DeliveryReceiptBatchIn,
    runtime: Runtime = Depends(get_runtime),
):
    for receipt in payload.receipts:
        runtime.bus.publish(DELIVERY_RECEIPT, receipt.model_dump(mode="json"))
    return AcceptedOut(message=f"{len(payload.receipts)} delivery receipt(s) accepted")


@router.get(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Get campaign",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def get_campaign(
    campaign_id: int,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    campaign = await campaign_service.get_owned_campaign(db, campaign_id, actor)
    return _campaign_out(campaign)


@router.post(
    "/{campaign_id}/send",
    response_model=CampaignSendOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start sending a draft campaign",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
async def send_campaign(
    campaign_id: int,
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    actor: User = Depends(get_current_user),
):
    campaign = await runtime.dispatcher.request_send(db, campaign_id, actor)
    return CampaignSendOut(message="Campaign sending started", campaign=_campaign_out(campaign))


@router.get(
    "/{campaign_id}/logs",
    response_model=CommunicationLogListOut,
    summary="List delivery logs for a campaign",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def list_campaign_logs(
    campaign_id: int,
    log_status: LogStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    campaign = await campaign_service.get_owned_campaign(db, campaign_id, actor)
    rows, total = await ledger_campaign_logs(db, campaign.id, status=log_status, limit=limit, offset=offset)
    items = [_log_out(row) for row in rows]
    return CommunicationLogListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        status=log_status,
    )
