import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Conflict, NotFound
from app.core.observability import log_event
from app.models.base import as_utc, utcnow
from app.models.customer import Customer, Order
from app.schemas.customer import CustomerCreateIn, OrderCreateIn

logger = logging.getLogger("crm.api")

DUPLICATE_EMAIL_MESSAGE = "Customer with this email already exists"


async def ensure_email_available(db: AsyncSession, email: str) -> None:
    existing = (
        await db.execute(select(Customer.id).where(func.lower(Customer.email) == email.strip().lower()))
    ).scalar_one_or_none()
    if existing is not None:
        raise Conflict(DUPLICATE_EMAIL_MESSAGE)


async def create_customer(db: AsyncSession, payload: CustomerCreateIn) -> Customer:
    await ensure_email_available(db, payload.email)
    customer = Customer(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email.strip().lower(),
        phone=payload.phone,
        status=payload.status,
    )
    db.add(customer)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict(DUPLICATE_EMAIL_MESSAGE) from exc
    log_event(logger, "customer_created", customer_id=customer.id)
    return customer


async def get_customer(db: AsyncSession, customer_id: int) -> Customer:
    customer = await db.get(Customer, customer_id)
    if customer is None:
        raise NotFound("Customer", customer_id)
    return customer


async def update_customer(db: AsyncSession, customer_id: int, changes: dict[str, Any]) -> Customer:
    customer = await get_customer(db, customer_id)
    for field_name in ("first_name", "last_name", "phone", "status"):
        if field_name in changes:
            setattr(customer, field_name, changes[field_name])
    await db.commit()
    log_event(logger, "customer_updated", customer_id=customer.id, fields=sorted(changes))
    return customer


async def list_customers(
    db: AsyncSession,
    *,
    status: str | None = None,
    limit: int,
    offset: int,
) -> tuple[list[Customer], int]:
    count_stmt = select(func.count(Customer.id))
    stmt = select(Customer)
    if status:
        count_stmt = count_stmt.where(Customer.status == status)
        stmt = stmt.where(Customer.status == status)

    total = int((await db.execute(count_stmt)).scalar_one())
    rows = (
        await db.execute(stmt.order_by(Customer.created_at.desc(), Customer.id.desc()).offset(offset).limit(limit))
    ).scalars().all()
    return list(rows), total


async def create_order(db: AsyncSession, payload: OrderCreateIn) -> Order:
    await get_customer(db, payload.customer_id)
    order_date = as_utc(payload.order_date) if payload.order_date else utcnow()
    amount = Decimal(str(payload.amount))
    order = Order(
        customer_id=payload.customer_id,
        order_date=order_date,
        amount=amount,
        status=payload.status,
        items=payload.items,
    )
    db.add(order)
    await db.execute(
        update(Customer)
        .where(Customer.id == payload.customer_id)
        .values(total_spend=Customer.total_spend + amount, last_seen_at=order_date)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    log_event(logger, "order_created", order_id=order.id, customer_id=order.customer_id, amount=str(amount))
    return order


async def get_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


async def list_orders(
    db: AsyncSession,
    *,
    customer_id: int | None = None,
    limit: int,
    offset: int,
) -> tuple[list[Order], int]:
    count_stmt = select(func.count(Order.id))
    stmt = select(Order)
    if customer_id is not None:
        count_stmt = count_stmt.where(Order.customer_id == customer_id)
        stmt = stmt.where(Order.customer_id == customer_id)

    total = int((await db.execute(count_stmt)).scalar_one())
    rows = (
        await db.execute(stmt.order_by(Order.order_date.desc(), Order.id.desc()).offset(offset).limit(limit))
    ).scalars().all()
    return list(rows), total
