from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_docs import error_responses
from app.core.deps import get_current_user, get_db
from app.models.segment import Segment
from app.models.user import User
from app.schemas.common import pagination
from app.schemas.rules import rule_tree_from_json
from app.schemas.segment import (
    GenerateRulesIn,
    GenerateRulesOut,
    SegmentCreateIn,
    SegmentListOut,
    SegmentLivePreviewOut,
    SegmentOut,
    SegmentPreviewIn,
    SegmentPreviewOut,
)
from app.services import segment_service

router = APIRouter(prefix="/segments", tags=["segments"])


def _segment_out(segment: Segment) -> SegmentOut:
    return SegmentOut(
        id=segment.id,
        name=segment.name,
        rules=rule_tree_from_json(segment.rules),
        audience_size=segment.audience_size,
        created_by_id=segment.created_by_id,
        created_at=segment.created_at,
    )


@router.post(
    "",
    response_model=SegmentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create segment and freeze its audience size",
    responses=error_responses(401, 422, 500),
)
async def create_segment(
    payload: SegmentCreateIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = await segment_service.create_segment(db, name=payload.name, rules=payload.rules, owner=actor)
    return _segment_out(segment)


@router.get(
    "",
    response_model=SegmentListOut,
    summary="List own segments",
    responses=error_responses(401, 422, 500),
)
async def list_segments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    rows, total = await segment_service.list_segments(db, actor, limit=limit, offset=offset)
    items = [_segment_out(row) for row in rows]
    return SegmentListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "/preview",
    response_model=SegmentPreviewOut,
    summary="Count the live audience of a rule tree",
    responses=error_responses(401, 422, 500),
)
async def preview_segment(
    payload: SegmentPreviewIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    audience_size = await segment_service.preview_audience(db, payload.rules)
    return SegmentPreviewOut(audience_size=audience_size)


@router.post(
    "/generate-from-text",
    response_model=GenerateRulesOut,
    summary="Generate a rule tree from a description",
    responses=error_responses(401, 422, 500),
)
async def generate_segment_from_text(
    payload: GenerateRulesIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    result, audience_size = await segment_service.generate_from_text(db, payload.text, payload.context)
    return GenerateRulesOut(
        rules=result.rules,
        audience_size=audience_size,
        fallback_used=result.fallback_used,
    )


@router.get(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Get segment",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def get_segment(
    segment_id: int,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = await segment_service.get_owned_segment(db, segment_id, actor)
    return _segment_out(segment)


@router.post(
    "/{segment_id}/preview",
    response_model=SegmentLivePreviewOut,
    summary="Compare stored audience snapshot with the live count",
    responses=error_responses(401, 403, 404, 422, 500),
)
async def preview_saved_segment(
    segment_id: int,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = await segment_service.get_owned_segment(db, segment_id, actor)
    live = await segment_service.live_audience_size(db, segment)
    return SegmentLivePreviewOut(
        segment_id=segment.id,
        snapshot_audience_size=segment.audience_size,
        live_audience_size=live,
    )
