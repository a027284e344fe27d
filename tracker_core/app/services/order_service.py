"""
Order Fulfillment Service
=========================
Orders carry a cached fulfilled quantity/weight and a status. Both are
derived from the sales linked to the order and are resynchronized by
``recompute_order`` whenever those sales change.

Sales are linked through ``order_id`` on circle, PL, coil-direct and scrap
sales. Only circle and PL sales carry pieces; the other two add weight only.

Callers own the transaction: functions here flush but never commit, so a
sale mutation and the recompute it triggers land in the same commit.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_
from sqlalchemy.orm import Session

from ..models import CircleSale, CoilDirectSale, Order, OrderStatus, PlSale, ScrapSale
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Fields an order payload may set directly. Fulfillment and status are derived.
EDITABLE_FIELDS = (
    "order_date", "order_by", "company", "grade",
    "thickness_mm", "op_size_mm",
    "ordered_qty_pcs", "ordered_weight_kg",
    "price_per_kg", "notes",
)
TARGET_FIELDS = ("ordered_qty_pcs", "ordered_weight_kg")
NON_NEGATIVE_FIELDS = TARGET_FIELDS + ("price_per_kg",)


# =============================================================================
# STATUS RULES
# =============================================================================

def decide_status(
    ordered_qty: Optional[float],
    ordered_weight: Optional[float],
    sold_qty: float,
    sold_weight: float,
) -> str:
    """
    Status of a live (not cancelled) order.

    A target counts only when it is positive. Meeting either target is
    enough to fulfil the order.
    """
    target_qty = ordered_qty or 0
    target_wt = ordered_weight or 0
    anything_sold = sold_qty > 0 or sold_weight > 0

    if target_qty <= 0 and target_wt <= 0:
        return OrderStatus.PARTIAL.value if anything_sold else OrderStatus.PENDING.value

    hit_qty = target_qty > 0 and sold_qty >= target_qty
    hit_wt = target_wt > 0 and sold_weight >= target_wt
    if hit_qty or hit_wt:
        return OrderStatus.FULFILLED.value
    if anything_sold:
        return OrderStatus.PARTIAL.value
    return OrderStatus.PENDING.value


def linked_sale_totals(db: Session, order_id: int) -> Tuple[int, float]:
    """Sum (pieces, kg) over every sale row pointing at the order."""
    qty = 0
    weight = 0.0
    for model, qty_col, wt_col in (
        (CircleSale, CircleSale.sold_qty, CircleSale.sold_weight_kg),
        (PlSale, PlSale.sold_qty, PlSale.sold_weight_kg),
        (CoilDirectSale, None, CoilDirectSale.sold_weight_kg),
        (ScrapSale, None, ScrapSale.weight_kg),
    ):
        wt_sum = func.coalesce(func.sum(wt_col), 0)
        if qty_col is not None:
            row = db.query(func.coalesce(func.sum(qty_col), 0), wt_sum).filter(
                model.order_id == order_id
            ).one()
            qty += int(row[0] or 0)
            weight += float(row[1] or 0)
        else:
            weight += float(
                db.query(wt_sum).filter(model.order_id == order_id).scalar() or 0
            )
    return qty, weight


# =============================================================================
# RECOMPUTE
# =============================================================================

def recompute_order(db: Session, order_id: Optional[int]) -> Optional[Order]:
    """
    Resynchronize an order's fulfilled totals and status from its sales.

    Returns None when the order does not exist. Cancelled orders are returned
    untouched. Safe to call any number of times.
    """
    if not order_id:
        return None
    order = db.get(Order, order_id)
    if order is None:
        logger.debug("Recompute skipped, order %s not found", order_id)
        return None
    if order.cancelled_at is not None:
        return order

    sold_qty, sold_weight = linked_sale_totals(db, order.id)
    status = decide_status(order.ordered_qty_pcs, order.ordered_weight_kg, sold_qty, sold_weight)

    if status != order.status:
        logger.info("Order %s: %s -> %s", order.id, order.status, status)
    order.fulfilled_qty_pcs = sold_qty
    order.fulfilled_weight_kg = sold_weight
    order.status = status
    order.updated_at = datetime.utcnow()
    db.flush()
    return order


def recompute_orders(db: Session, order_ids: Iterable[Optional[int]]) -> None:
    for order_id in sorted({oid for oid in order_ids if oid}):
        recompute_order(db, order_id)


def recompute_all_orders(db: Session) -> int:
    ids = [row[0] for row in db.query(Order.id).all()]
    for order_id in ids:
        recompute_order(db, order_id)
    logger.info("Recomputed %d orders", len(ids))
    return len(ids)


# =============================================================================
# CRUD
# =============================================================================

def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def list_orders(
    db: Session,
    q: Optional[str] = None,
    status: Optional[str] = None,
    grade: Optional[str] = None,
    company: Optional[str] = None,
) -> List[Order]:
    query = db.query(Order)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(
            cast(Order.id, String).like(like),
            Order.company.ilike(like),
            Order.grade.ilike(like),
        ))
    if status:
        query = query.filter(Order.status == status)
    if grade:
        query = query.filter(Order.grade == grade)
    if company:
        query = query.filter(Order.company == company)
    # undated last, then newest first
    return query.order_by(
        Order.order_date.is_(None),
        Order.order_date.desc(),
        Order.id.desc(),
    ).all()


def _check_amounts(data: dict) -> None:
    for key in NON_NEGATIVE_FIELDS:
        value = data.get(key)
        if value is not None and value < 0:
            raise ValidationError(f"{key} must be >= 0")


def create_order(db: Session, data: dict) -> Order:
    _check_amounts(data)
    order = Order(**{k: v for k, v in data.items() if k in EDITABLE_FIELDS})
    order.status = OrderStatus.PENDING.value
    order.fulfilled_qty_pcs = 0
    order.fulfilled_weight_kg = 0.0
    db.add(order)
    db.flush()
    logger.info("Created order %s for %s", order.id, order.company or "-")
    return order


def update_order(db: Session, order_id: int, data: dict) -> Order:
    """Apply edited fields; targets changing triggers a recompute."""
    order = get_order(db, order_id)
    _check_amounts(data)
    changed = False
    for key, value in data.items():
        if key not in EDITABLE_FIELDS:
            continue
        setattr(order, key, value)
        changed = True
    if not changed:
        return order
    order.updated_at = datetime.utcnow()
    db.flush()
    if any(k in data for k in TARGET_FIELDS):
        recompute_order(db, order.id)
    return order


def delete_order(db: Session, order_id: int) -> None:
    """Hard delete. Linked sales stay and lose their order link."""
    order = get_order(db, order_id)
    for model in (CircleSale, PlSale, CoilDirectSale, ScrapSale):
        db.query(model).filter(model.order_id == order.id).update(
            {model.order_id: None}, synchronize_session=False
        )
    db.delete(order)
    db.flush()
    logger.info("Deleted order %s", order_id)


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(db: Session, order_id: int, remarks: Optional[str]) -> Order:
    """
    Soft-cancel an order. Fulfillment bookkeeping is frozen until uncancelled.

    Raises:
        ValidationError: remarks missing or blank
        NotFoundError: unknown order
        ConflictError: already cancelled
    """
    if not remarks or not remarks.strip():
        raise ValidationError("Cancellation remarks are required")
    order = get_order(db, order_id)
    if order.cancelled_at is not None:
        raise ConflictError("Already cancelled")

    order.cancelled_at = datetime.utcnow()
    order.cancel_remarks = remarks.strip()
    order.status = OrderStatus.CANCELLED.value
    order.updated_at = datetime.utcnow()
    db.flush()
    logger.info("Order %s cancelled: %s", order.id, order.cancel_remarks)
    return order


def uncancel_order(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id)
    if order.cancelled_at is None:
        raise ConflictError("Not cancelled")

    order.cancelled_at = None
    order.cancel_remarks = None
    order.status = OrderStatus.PENDING.value
    order.updated_at = datetime.utcnow()
    db.flush()
    logger.info("Order %s uncancelled", order.id)
    return recompute_order(db, order.id)
