"""Atomic stock adjustments for stock-tracked products."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orderflow.errors import InsufficientStock, InvalidInput, NotTracked, ProductNotFound
from orderflow.logging import get_logger
from orderflow.models import BIGINT_MAX, Product

logger = get_logger(__name__)


@dataclass(frozen=True)
class StockAdjustment:
    product_id: int
    previous_stock: int
    new_stock: int
    delta: int
    reason: Optional[str] = None


def _classify_failure(db: Session, tenant_id: int, product_id: int, delta: int) -> None:
    product = db.execute(
        select(Product)
        .where(Product.id == product_id, Product.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if product is None:
        raise ProductNotFound(f"product {product_id} not found", product_id=product_id)
    if not product.track_stock:
        raise NotTracked(f"product {product_id} does not track stock", product_id=product_id)
    available = product.stock or 0
    if delta > 0:
        raise InvalidInput(
            f"stock of product {product_id} would exceed {BIGINT_MAX}",
            product_id=product_id,
            available=available,
            requested=delta,
        )
    raise InsufficientStock(
        f"insufficient stock for product {product_id}: available {available}, requested {-delta}",
        product_id=product_id,
        available=available,
        requested=-delta,
    )


def adjust_stock(
    db: Session,
    tenant_id: int,
    product_id: int,
    delta: int,
    reason: Optional[str] = None,
) -> StockAdjustment:
    """Apply ``delta`` to the product's stock in one guarded statement.

    The floor check and the write happen in the same UPDATE, so two
    concurrent decrements can never both pass against the same units. The
    product row is only read back when nothing matched, to report why.
    """
    if abs(delta) > BIGINT_MAX:
        raise InvalidInput(f"stock adjustment {delta} is out of range", product_id=product_id)
    current = func.coalesce(Product.stock, 0)
    # bounds compare the stored value, never the sum
    new_stock = db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.tenant_id == tenant_id,
            Product.track_stock.is_(True),
            current >= -delta,
            current <= BIGINT_MAX - max(delta, 0),
        )
        .values(stock=current + delta)
        .returning(Product.stock)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()
    if new_stock is None:
        _classify_failure(db, tenant_id, product_id, delta)

    logger.info(
        "stock adjusted",
        tenant_id=tenant_id,
        product_id=product_id,
        delta=delta,
        new_stock=new_stock,
        reason=reason,
    )
    return StockAdjustment(
        product_id=product_id,
        previous_stock=new_stock - delta,
        new_stock=new_stock,
        delta=delta,
        reason=reason,
    )


def list_low_stock(db: Session, tenant_id: int) -> list[Product]:
    """Active tracked products at or below their minimum stock level.

    Ends the read transaction and returns detached products.
    """
    try:
        products = list(
            db.execute(
                select(Product)
                .where(
                    Product.tenant_id == tenant_id,
                    Product.track_stock.is_(True),
                    Product.is_active.is_(True),
                    func.coalesce(Product.stock, 0) <= Product.min_stock,
                )
                .order_by(func.coalesce(Product.stock, 0), Product.id)
            ).scalars()
        )
    except Exception:
        db.rollback()
        raise
    for product in products:
        db.expunge(product)
    db.rollback()
    return products
