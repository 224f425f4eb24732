"""Order engine: creation, the status/payment state machine, edits and deletion.

Every public operation is one unit of work on the given session. It either
commits all of its effects (order rows, stock, customer counters) or rolls
the session back and re-raises, so callers never see half-applied state.
Reads end their transaction before returning and hand back detached
instances with their items loaded.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from math import ceil
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from orderflow import customers
from orderflow.catalog import get_product
from orderflow.config import settings
from orderflow.errors import (
    AllocationExhausted,
    Conflict,
    CustomerNotFound,
    InvalidDiscount,
    InvalidInput,
    InvalidTransition,
    NotFound,
    NotTracked,
    OrderLocked,
    OrderNotFound,
    ProductNotFound,
)
from orderflow.inventory import adjust_stock
from orderflow.logging import get_logger
from orderflow.models import (
    BIGINT_MAX,
    TERMINAL_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Tenant,
)
from orderflow.numbering import allocate_order_number
from orderflow.schemas import OrderCreate, OrderItemCreate, OrderQuery, OrderUpdate

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

EDITABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)

SORT_COLUMNS = {
    "order_number": Order.order_number,
    "total": Order.total,
    "created_at": Order.created_at,
}

_ORDER_NUMBER_CONSTRAINT_MARKERS = (
    "uq_order_tenant_number",
    "customer_order.order_number",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidInput(f"unknown order status {value!r}") from None


def _parse_payment_status(value: Any) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise InvalidInput(f"unknown payment status {value!r}") from None


def _validate_items(items: list[OrderItemCreate]) -> None:
    if not items:
        raise InvalidInput("an order needs at least one item")
    for index, item in enumerate(items):
        if not item.name or not item.name.strip():
            raise InvalidInput(f"item {index} has no name", item=index)
        if item.qty < 1:
            raise InvalidInput(f"item {index} quantity must be at least 1", item=index)
        if item.price < 0:
            raise InvalidInput(f"item {index} price must not be negative", item=index)
        if item.qty > BIGINT_MAX or item.price > BIGINT_MAX:
            raise InvalidInput(f"item {index} amount is out of range", item=index)


def compute_totals(
    items: list[OrderItemCreate], discount: int, tax: int
) -> tuple[list[int], int, int]:
    """Return ``(item_subtotals, subtotal, total)`` for a validated item list."""
    if discount < 0:
        raise InvalidDiscount("discount must not be negative")
    if tax < 0:
        raise InvalidInput("tax must not be negative")
    item_subtotals = [item.price * item.qty for item in items]
    subtotal = sum(item_subtotals)
    if max(item_subtotals, default=0) > BIGINT_MAX or subtotal + tax > BIGINT_MAX:
        raise InvalidInput(
            "order amount is out of range", subtotal=subtotal, tax=tax, limit=BIGINT_MAX
        )
    total = subtotal - discount + tax
    if total < 0:
        raise InvalidDiscount(
            f"discount {discount} exceeds order amount {subtotal + tax}",
            subtotal=subtotal,
            tax=tax,
            discount=discount,
        )
    return item_subtotals, subtotal, total


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return any(marker in message for marker in _ORDER_NUMBER_CONSTRAINT_MARKERS)


def _load_order(db: Session, tenant_id: int, order_id: int) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.id == order_id, Order.tenant_id == tenant_id)
        .options(selectinload(Order.items))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"order {order_id} not found", order_id=order_id)
    return order


def _release(db: Session, *loaded: Order) -> None:
    # detached instances keep their loaded state across the rollback
    for order in loaded:
        db.expunge(order)
    db.rollback()


def _read_order(db: Session, tenant_id: int, order_id: int) -> Order:
    """Load an order with its items and end the read transaction.

    On SQLite every transaction holds the write lock, so a read left open
    would block other writers until the session closes.
    """
    try:
        order = _load_order(db, tenant_id, order_id)
    except Exception:
        db.rollback()
        raise
    _release(db, order)
    return order


def get_order(db: Session, tenant_id: int, order_id: int) -> Order:
    return _read_order(db, tenant_id, order_id)


def _insert_order(
    db: Session,
    tenant_id: int,
    payload: OrderCreate,
    item_subtotals: list[int],
    subtotal: int,
    total: int,
    on_date: Optional[date],
    resync: bool,
) -> Order:
    if db.get(Tenant, tenant_id) is None:
        raise NotFound(f"tenant {tenant_id} not found", tenant_id=tenant_id)
    if payload.customer_id is not None:
        if customers.get_customer(db, tenant_id, payload.customer_id) is None:
            raise CustomerNotFound(
                f"customer {payload.customer_id} not found",
                customer_id=payload.customer_id,
            )
    for item in payload.items:
        if item.product_id is not None and get_product(db, tenant_id, item.product_id) is None:
            raise ProductNotFound(
                f"product {item.product_id} not found", product_id=item.product_id
            )

    order_number = allocate_order_number(db, tenant_id, on_date, resync=resync)
    now = _now()
    order = Order(
        tenant_id=tenant_id,
        order_number=order_number,
        customer_id=payload.customer_id,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        subtotal=subtotal,
        discount=payload.discount,
        tax=payload.tax,
        total=total,
        payment_method=payload.payment_method,
        status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        paid_amount=0,
        notes=payload.notes,
        metadata_json=payload.metadata or {},
        created_at=now,
        updated_at=now,
    )
    order.items = [
        OrderItem(
            tenant_id=tenant_id,
            product_id=item.product_id,
            name=item.name,
            price=item.price,
            qty=item.qty,
            subtotal=item_subtotal,
            notes=item.notes,
        )
        for item, item_subtotal in zip(payload.items, item_subtotals)
    ]
    db.add(order)
    db.flush()

    if payload.customer_id is not None:
        customers.increment_total_orders(db, payload.customer_id, 1)
    return order


def create_order(
    db: Session,
    tenant_id: int,
    payload: OrderCreate,
    *,
    on_date: Optional[date] = None,
) -> Order:
    """Create an order with its items and allocate its order number.

    A collision on the per-tenant order-number constraint rolls the attempt
    back and retries with a recounted sequence, up to
    ``settings.allocation_max_attempts`` times.
    """
    _validate_items(payload.items)
    item_subtotals, subtotal, total = compute_totals(payload.items, payload.discount, payload.tax)

    attempts = settings.allocation_max_attempts
    for attempt in range(attempts):
        try:
            order = _insert_order(
                db,
                tenant_id,
                payload,
                item_subtotals,
                subtotal,
                total,
                on_date,
                resync=attempt > 0,
            )
            order_id, order_number = order.id, order.order_number
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if not _is_order_number_conflict(exc):
                raise Conflict("order could not be stored", reason=str(exc.orig)) from exc
            logger.warning(
                "order number collision, retrying",
                tenant_id=tenant_id,
                attempt=attempt + 1,
                max_attempts=attempts,
            )
            continue
        except Exception:
            db.rollback()
            raise
        logger.info(
            "order created",
            tenant_id=tenant_id,
            order_id=order_id,
            order_number=order_number,
            total=total,
            customer_id=payload.customer_id,
        )
        return _read_order(db, tenant_id, order_id)

    logger.error("order number allocation exhausted", tenant_id=tenant_id, attempts=attempts)
    raise AllocationExhausted(
        f"could not allocate an order number after {attempts} attempts", attempts=attempts
    )


def _apply_completion(
    db: Session,
    tenant_id: int,
    order: Order,
    customer_id: Optional[int],
    payment_status: str,
    total: int,
) -> None:
    required: OrderedDict[int, int] = OrderedDict()
    for item in order.items:
        if item.product_id is None:
            continue
        required[item.product_id] = required.get(item.product_id, 0) + item.qty

    for product_id, qty in required.items():
        product = get_product(db, tenant_id, product_id)
        if product is None or not product.track_stock:
            continue
        try:
            adjust_stock(db, tenant_id, product_id, -qty, reason=f"order {order.order_number}")
        except NotTracked:
            # tracking switched off since the lookup
            continue

    if customer_id is not None and payment_status == PaymentStatus.PAID.value:
        customers.increment_total_spent(db, customer_id, total)


def transition_status(db: Session, tenant_id: int, order_id: int, new_status: Any) -> Order:
    """Move an order along the status table.

    Entering COMPLETED decrements stock for tracked items and, when payment is
    PAID at that moment, credits the customer's total_spent. Any failure rolls
    back the status change together with every decrement already made.
    """
    target = _parse_status(new_status)
    try:
        order = _load_order(db, tenant_id, order_id)
        current = OrderStatus(order.status)
        if current in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"order {order.order_number} is {current.value} and accepts no status change",
                current=current.value,
                requested=target.value,
            )
        if target == current:
            _release(db, order)
            return order
        if not can_transition(current, target):
            raise InvalidTransition(
                f"cannot move order {order.order_number} from {current.value} to {target.value}",
                current=current.value,
                requested=target.value,
            )

        now = _now()
        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target == OrderStatus.COMPLETED:
            values["completed_at"] = now
        claimed = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current.value)
            .values(**values)
            .returning(Order.customer_id, Order.payment_status, Order.total)
            .execution_options(synchronize_session=False)
        ).one_or_none()
        if claimed is None:
            raise Conflict(
                f"order {order.order_number} was changed concurrently", order_id=order_id
            )
        if target == OrderStatus.COMPLETED:
            customer_id, payment_status, total = claimed
            _apply_completion(db, tenant_id, order, customer_id, payment_status, total)
        order_number = order.order_number
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "order status changed",
        tenant_id=tenant_id,
        order_id=order_id,
        order_number=order_number,
        from_status=current.value,
        to_status=target.value,
    )
    return _read_order(db, tenant_id, order_id)


def transition_payment(
    db: Session,
    tenant_id: int,
    order_id: int,
    new_payment_status: Any,
    paid_amount: Optional[int] = None,
) -> Order:
    """Set the payment label; allowed in every order status, terminal included."""
    target = _parse_payment_status(new_payment_status)
    if paid_amount is not None and paid_amount < 0:
        raise InvalidInput("paid amount must not be negative")
    if paid_amount is not None and paid_amount > BIGINT_MAX:
        raise InvalidInput("paid amount is out of range", limit=BIGINT_MAX)
    try:
        order = _load_order(db, tenant_id, order_id)
        previous = order.payment_status
        order.payment_status = target.value
        if paid_amount is not None:
            order.paid_amount = paid_amount
        order.updated_at = _now()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "payment status changed",
        tenant_id=tenant_id,
        order_id=order_id,
        from_status=previous,
        to_status=target.value,
        paid_amount=paid_amount,
    )
    return _read_order(db, tenant_id, order_id)


def update_order(db: Session, tenant_id: int, order_id: int, changes: OrderUpdate) -> Order:
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    try:
        order = _load_order(db, tenant_id, order_id)
        if order.status not in EDITABLE_STATUSES:
            raise OrderLocked(
                f"order {order.order_number} is {order.status} and can no longer be edited",
                status=order.status,
            )

        values: dict[str, Any] = {"updated_at": _now()}
        if "discount" in fields:
            discount = fields["discount"]
            if discount < 0:
                raise InvalidDiscount("discount must not be negative")
            total = order.subtotal - discount + order.tax
            if total < 0:
                raise InvalidDiscount(
                    f"discount {discount} exceeds order amount {order.subtotal + order.tax}",
                    subtotal=order.subtotal,
                    tax=order.tax,
                    discount=discount,
                )
            values["discount"] = discount
            values["total"] = total
        for key in ("payment_method", "notes"):
            if key in fields:
                values[key] = fields[key]
        if "metadata" in fields:
            values["metadata_json"] = fields["metadata"]

        updated = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status.in_(EDITABLE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if updated != 1:
            raise OrderLocked(
                f"order {order.order_number} was finalized concurrently", order_id=order_id
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("order updated", tenant_id=tenant_id, order_id=order_id, fields=sorted(fields))
    return _read_order(db, tenant_id, order_id)


def delete_order(db: Session, tenant_id: int, order_id: int) -> None:
    """Hard-delete an order and its items; COMPLETED orders are kept."""
    try:
        order = _load_order(db, tenant_id, order_id)
        if order.status == OrderStatus.COMPLETED.value:
            raise OrderLocked(
                f"order {order.order_number} is completed and cannot be deleted",
                status=order.status,
            )
        observed_status = order.status
        customer_id = order.customer_id
        order_number = order.order_number
        db.expunge(order)

        db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        deleted = db.execute(
            delete(Order)
            .where(
                Order.id == order_id,
                Order.tenant_id == tenant_id,
                Order.status == observed_status,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if deleted != 1:
            raise Conflict(f"order {order_number} was changed concurrently", order_id=order_id)
        if customer_id is not None:
            customers.increment_total_orders(db, customer_id, -1)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "order deleted",
        tenant_id=tenant_id,
        order_id=order_id,
        order_number=order_number,
        customer_id=customer_id,
    )


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def list_orders(db: Session, tenant_id: int, query: OrderQuery) -> tuple[list[Order], int]:
    """Filtered, sorted page of a tenant's orders plus the unpaged match count."""
    conditions = [Order.tenant_id == tenant_id]
    if query.search:
        conditions.append(Order.order_number.icontains(query.search, autoescape=True))
    if query.status is not None:
        conditions.append(Order.status == _parse_status(query.status).value)
    if query.payment_status is not None:
        conditions.append(Order.payment_status == _parse_payment_status(query.payment_status).value)
    if query.customer_id is not None:
        conditions.append(Order.customer_id == query.customer_id)
    if query.date_from is not None:
        conditions.append(Order.created_at >= _day_start(query.date_from))
    if query.date_to is not None:
        conditions.append(Order.created_at < _day_start(query.date_to + timedelta(days=1)))

    sort_column = SORT_COLUMNS.get(query.sort_by)
    if sort_column is None:
        raise InvalidInput(f"cannot sort orders by {query.sort_by!r}")
    if query.sort_order == "asc":
        ordering = (sort_column.asc(), Order.id.asc())
    elif query.sort_order == "desc":
        ordering = (sort_column.desc(), Order.id.desc())
    else:
        raise InvalidInput(f"unknown sort order {query.sort_order!r}")

    try:
        total = db.execute(select(func.count()).select_from(Order).where(*conditions)).scalar_one()
        rows = list(
            db.execute(
                select(Order)
                .where(*conditions)
                .options(selectinload(Order.items))
                .order_by(*ordering)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).scalars()
        )
    except Exception:
        db.rollback()
        raise
    _release(db, *rows)
    return rows, total


def total_pages(total: int, limit: int) -> int:
    return ceil(total / limit) if limit else 0
