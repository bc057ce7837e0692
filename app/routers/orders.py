from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_docs import error_responses
from app.core.deps import get_current_user, get_db, get_runtime
from app.models.customer import Order
from app.models.user import User
from app.schemas.common import AcceptedOut, pagination
from app.schemas.customer import OrderCreateIn, OrderListOut, OrderOut
from app.services import customer_service
from app.services.event_bus import ORDER_CREATE
from app.services.runtime import Runtime

router = APIRouter(prefix="/orders", tags=["orders"])


def _order_out(order: Order) -> OrderOut:
    return OrderOut.model_validate(order)


@router.post(
    "",
    response_model=AcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue order creation",
    responses=error_responses(401, 404, 422, 500),
)
async def create_order(
    payload: OrderCreateIn,
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    actor: User = Depends(get_current_user),
):
    await customer_service.get_customer(db, payload.customer_id)
    runtime.bus.publish(ORDER_CREATE, payload.model_dump(mode="json"))
    return AcceptedOut(message="Order creation request accepted")


@router.post(
    "/direct",
    response_model=OrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create order synchronously",
    responses=error_responses(401, 404, 422, 500),
)
async def create_order_direct(
    payload: OrderCreateIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    order = await customer_service.create_order(db, payload)
    return _order_out(order)


@router.get(
    "",
    response_model=OrderListOut,
    summary="List orders",
    responses=error_responses(401, 422, 500),
)
async def list_orders(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    rows, total = await customer_service.list_orders(db, limit=limit, offset=offset)
    items = [_order_out(row) for row in rows]
    return OrderListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/customer/{customer_id}",
    response_model=OrderListOut,
    summary="List orders for a customer",
    responses=error_responses(401, 404, 422, 500),
)
async def list_customer_orders(
    customer_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    await customer_service.get_customer(db, customer_id)
    rows, total = await customer_service.list_orders(db, customer_id=customer_id, limit=limit, offset=offset)
    items = [_order_out(row) for row in rows]
    return OrderListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/{order_id}",
    response_model=OrderOut,
    summary="Get order",
    responses=error_responses(401, 404, 422, 500),
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    order = await customer_service.get_order(db, order_id)
    return _order_out(order)
