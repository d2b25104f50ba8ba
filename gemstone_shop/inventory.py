"""Stock validation, conditioned decrement and restoration of product inventory."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from gemstone_shop.config import get_settings
from gemstone_shop.models import OrderItem, Product, utcnow

logger = logging.getLogger(__name__)

STOCK_LEVELS = ("out_of_stock", "critical", "low", "warning")


@dataclass
class StockCheck:
    issues: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def validate_stock(
    db: Session, items: Iterable[Tuple[int, int]], warning_threshold: Optional[int] = None
) -> StockCheck:
    """Check every ``(product_id, quantity)`` pair against current stock.

    All problems are collected instead of stopping at the first one, so the
    caller can report every failing item at once. Rows are locked for update
    on backends that support it. ``warning_threshold`` defaults to
    ``Settings.low_stock_warning_threshold``.
    """
    if warning_threshold is None:
        warning_threshold = get_settings().low_stock_warning_threshold
    check = StockCheck()
    for product_id, quantity in items:
        product = db.query(Product).filter(Product.id == product_id).with_for_update().first()
        if product is None:
            check.issues.append({"product_id": product_id, "issue": "Product not found"})
            continue

        available = product.quantity_in_stock
        if available < quantity:
            logger.error(
                "Insufficient stock for product #%s: requested %s, available %s", product_id, quantity, available
            )
            check.issues.append(
                {
                    "product_id": product_id,
                    "product_name": product.name,
                    "requested": quantity,
                    "available": available,
                    "issue": "Insufficient stock",
                }
            )

        remaining = available - quantity
        if 0 <= remaining < warning_threshold:
            check.warnings.append(
                {"product_id": product_id, "product_name": product.name, "remaining_after_order": remaining}
            )

    for warning in check.warnings:
        logger.warning(
            "Low stock: %s (ID: %s) will have %s units remaining",
            warning["product_name"],
            warning["product_id"],
            warning["remaining_after_order"],
        )
    return check


def decrement_stock(db: Session, product_id: int, quantity: int) -> bool:
    """Take ``quantity`` units from a product only if that many are in stock.

    Returns False when no row was updated, which means the stock is gone.
    """
    updated = (
        db.query(Product)
        .filter(Product.id == product_id, Product.quantity_in_stock >= quantity)
        .update(
            {Product.quantity_in_stock: Product.quantity_in_stock - quantity, Product.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    if updated:
        logger.info("Stock decremented for product #%s by %s", product_id, quantity)
    return updated == 1


def restore_stock(db: Session, items: Iterable[OrderItem]) -> int:
    """Give every item's quantity back to its product. Returns the number of products updated."""
    restored = 0
    for item in items:
        restored += (
            db.query(Product)
            .filter(Product.id == item.product_id)
            .update(
                {Product.quantity_in_stock: Product.quantity_in_stock + item.quantity, Product.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        logger.info("Stock restored for product #%s: +%s units", item.product_id, item.quantity)
    return restored


def stock_level(quantity: int) -> str:
    if quantity == 0:
        return "out_of_stock"
    if quantity < 5:
        return "critical"
    if quantity < 10:
        return "low"
    return "warning"


def low_stock_report(
    db: Session, threshold: Optional[int] = None, default_threshold: Optional[int] = None
) -> Dict[str, Any]:
    if default_threshold is None:
        default_threshold = get_settings().low_stock_report_threshold
    if not threshold or threshold < 1:
        threshold = default_threshold
    logger.info("Checking for products with stock below %s units", threshold)

    products = (
        db.query(Product)
        .filter(Product.quantity_in_stock < threshold)
        .order_by(Product.quantity_in_stock.asc(), Product.name.asc())
        .all()
    )
    rows = [
        {
            "id": p.id,
            "name": p.name,
            "type": p.type,
            "quantity_in_stock": p.quantity_in_stock,
            "price": p.price,
            "stock_level": stock_level(p.quantity_in_stock),
        }
        for p in products
    ]
    grouped = {level: [r for r in rows if r["stock_level"] == level] for level in STOCK_LEVELS}
    summary = {
        "total_low_stock_products": len(rows),
        "out_of_stock_count": len(grouped["out_of_stock"]),
        "critical_count": len(grouped["critical"]),
        "low_count": len(grouped["low"]),
        "warning_count": len(grouped["warning"]),
        "threshold": threshold,
    }
    logger.info("Low stock summary: %s", summary)
    return {"summary": summary, "products": grouped, "all_products": rows}
