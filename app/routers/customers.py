from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_docs import error_responses
from app.core.deps import get_current_user, get_db, get_runtime
from app.models.customer import Customer
from app.models.user import User
from app.schemas.common import AcceptedOut, pagination
from app.schemas.customer import (
    CustomerCreateIn,
    CustomerListOut,
    CustomerOut,
    CustomerStatus,
    CustomerUpdateIn,
)
from app.services import customer_service
from app.services.event_bus import CUSTOMER_CREATE, CUSTOMER_UPDATE
from app.services.runtime import Runtime

router = APIRouter(prefix="/customers", tags=["customers"])


def _customer_out(customer: Customer) -> CustomerOut:
    return CustomerOut.model_validate(customer)


@router.post(
    "",
    response_model=AcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue customer creation",
    responses=error_responses(401, 409, 422, 500),
)
async def create_customer(
    payload: CustomerCreateIn,
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    actor: User = Depends(get_current_user),
):
    await customer_service.ensure_email_available(db, payload.email)
    runtime.bus.publish(CUSTOMER_CREATE, payload.model_dump(mode="json"))
    return AcceptedOut(message="Customer creation request accepted")


@router.post(
    "/direct",
    response_model=CustomerOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create customer synchronously",
    responses=error_responses(401, 409, 422, 500),
)
async def create_customer_direct(
    payload: CustomerCreateIn,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    customer = await customer_service.create_customer(db, payload)
    return _customer_out(customer)


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List customers",
    responses=error_responses(401, 422, 500),
)
async def list_customers(
    customer_status: CustomerStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    rows, total = await customer_service.list_customers(db, status=customer_status, limit=limit, offset=offset)
    items = [_customer_out(row) for row in rows]
    return CustomerListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Get customer",
    responses=error_responses(401, 404, 422, 500),
)
async def get_customer(
    customer_id: int,
    db: AsyncSession = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    customer = await customer_service.get_customer(db, customer_id)
    return _customer_out(customer)


@router.patch(
    "/{customer_id}",
    response_model=AcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue customer update",
    responses=error_responses(401, 404, 422, 500),
)
async def update_customer(
    customer_id: int,
    payload: CustomerUpdateIn,
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    actor: User = Depends(get_current_user),
):
    await customer_service.get_customer(db, customer_id)
    runtime.bus.publish(
        CUSTOMER_UPDATE,
        {"id": customer_id, "data": payload.model_dump(mode="json", exclude_unset=True)},
    )
    return AcceptedOut(message="Customer update request accepted")
