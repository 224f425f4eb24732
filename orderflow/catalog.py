from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.models import Product


def get_product(db: Session, tenant_id: int, product_id: int) -> Optional[Product]:
    return db.execute(
        select(Product).where(Product.id == product_id, Product.tenant_id == tenant_id)
    ).scalar_one_or_none()
