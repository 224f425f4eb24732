"""Customer lookups and the aggregate counters maintained by the order engine.

Counters are only ever changed with single-statement ``x = x + :delta``
updates so concurrent order traffic never loses an increment.
"""

from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from orderflow.models import Customer


def get_customer(db: Session, tenant_id: int, customer_id: int) -> Optional[Customer]:
    return db.execute(
        select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
    ).scalar_one_or_none()


def increment_total_orders(db: Session, customer_id: int, delta: int) -> None:
    # floored at zero
    new_value = case(
        (Customer.total_orders + delta < 0, 0),
        else_=Customer.total_orders + delta,
    )
    db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(total_orders=new_value)
        .execution_options(synchronize_session=False)
    )


def increment_total_spent(db: Session, customer_id: int, amount: int) -> None:
    db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(total_spent=Customer.total_spent + amount)
        .execution_options(synchronize_session=False)
    )
