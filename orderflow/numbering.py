"""Per-tenant, per-day order numbers of the form ``ORD-YYYYMMDD-NNN``.

The sequence lives in one ``order_sequence`` row per tenant and day and is
advanced with a single ``UPDATE ... RETURNING`` so concurrent creations never
observe the same value. The counter row is created on first use with an
insert that ignores conflicts, seeded from the orders already numbered for
that day.
"""

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.logging import get_logger
from orderflow.models import Order, OrderSequence

logger = get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _today() -> date:
    return datetime.now(timezone.utc).date()


def day_prefix(on_date: date, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.order_number_prefix}-{on_date:%Y%m%d}-"


def format_order_number(on_date: date, value: int) -> str:
    return f"{day_prefix(on_date)}{value:0{settings.order_number_width}d}"


def highest_sequence(db: Session, tenant_id: int, on_date: date) -> int:
    """Highest sequence already used by an order of this tenant on ``on_date``."""
    prefix = day_prefix(on_date)
    numbers = db.execute(
        select(Order.order_number).where(
            Order.tenant_id == tenant_id,
            Order.order_number.like(f"{prefix}%"),
        )
    ).scalars()
    highest = 0
    for number in numbers:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def _ensure_counter(db: Session, tenant_id: int, on_date: date) -> None:
    dialect = db.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise ValueError(f"order numbering does not support the {dialect!r} database dialect")
    seed = highest_sequence(db, tenant_id, on_date)
    db.execute(
        insert(OrderSequence)
        .values(tenant_id=tenant_id, sequence_date=on_date, last_value=seed)
        .on_conflict_do_nothing(index_elements=["tenant_id", "sequence_date"])
    )


def _resync_counter(db: Session, tenant_id: int, on_date: date) -> None:
    highest = highest_sequence(db, tenant_id, on_date)
    db.execute(
        update(OrderSequence)
        .where(
            OrderSequence.tenant_id == tenant_id,
            OrderSequence.sequence_date == on_date,
            OrderSequence.last_value < highest,
        )
        .values(last_value=highest)
        .execution_options(synchronize_session=False)
    )


def _increment(db: Session, tenant_id: int, on_date: date) -> Optional[int]:
    return db.execute(
        update(OrderSequence)
        .where(
            OrderSequence.tenant_id == tenant_id,
            OrderSequence.sequence_date == on_date,
        )
        .values(last_value=OrderSequence.last_value + 1)
        .returning(OrderSequence.last_value)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()


def allocate_order_number(
    db: Session,
    tenant_id: int,
    on_date: Optional[date] = None,
    *,
    resync: bool = False,
) -> str:
    """Reserve the next order number for ``tenant_id`` on ``on_date``.

    Runs inside the caller's transaction: if the order insert is rolled back
    the reserved value is released with it. ``resync`` first raises the counter
    to the highest number already in use, which is what a retry after a
    uniqueness collision needs.
    """
    on_date = on_date or _today()
    if resync:
        _resync_counter(db, tenant_id, on_date)
    value = _increment(db, tenant_id, on_date)
    if value is None:
        _ensure_counter(db, tenant_id, on_date)
        value = _increment(db, tenant_id, on_date)
    order_number = format_order_number(on_date, value)
    logger.debug("order number allocated", tenant_id=tenant_id, order_number=order_number)
    return order_number
