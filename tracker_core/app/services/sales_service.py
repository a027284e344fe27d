"""
Sales Service
=============
Circle, PL and scrap sales. Availability is derived (produced minus sales),
so creating a sale is a plain insert and undoing one is a plain delete.

Any sale that references an order triggers ``recompute_order`` before the
caller commits.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models import CircleSale, CircleStock, PlSale, PlStock, ScrapSale, SourceType
from .errors import InsufficientStockError, NotFoundError, ValidationError
from .order_service import get_order, linked_sale_totals, recompute_order, recompute_orders
from .stock_service import (
    LineageResolver, allocate_fifo, circle_stock_available, pl_stock_available,
    pl_stock_rows, scrap_pool_remaining, scrap_pools,
)

logger = logging.getLogger(__name__)

EPS = 1e-9


def _positive_weight(value, name: str) -> float:
    if value is None or value == "" or float(value) <= 0:
        raise ValidationError(f"{name} must be > 0")
    return float(value)


def _check_order(db: Session, order_id: Optional[int]) -> None:
    if order_id:
        get_order(db, order_id)


def _date_key(value):
    return value or date.max


# =============================================================================
# CIRCLE SALES
# =============================================================================

class CircleSaleService:

    @staticmethod
    def create(db: Session, data: dict) -> CircleSale:
        """
        Sell from one circle stock row.

        Raises:
            ValidationError: stock_id missing or weight <= 0
            NotFoundError: unknown stock row or order
            InsufficientStockError: more than the row has available
        """
        stock_id = data.get("stock_id")
        if not stock_id:
            raise ValidationError("stock_id and sold_weight_kg required")
        weight = _positive_weight(data.get("sold_weight_kg"), "sold_weight_kg")
        stock = db.get(CircleStock, stock_id)
        if stock is None:
            raise NotFoundError("Stock not found")
        order_id = data.get("order_id")
        _check_order(db, order_id)

        qty = int(data.get("sold_qty") or 0)
        if qty < 0:
            raise ValidationError("sold_qty must be >= 0")
        available_qty, available_wt = circle_stock_available(db, stock)
        if weight > available_wt + EPS:
            raise InsufficientStockError(
                f"Insufficient circle stock #{stock.id}. "
                f"Available: {available_wt:.3f} kg, Requested: {weight:.3f} kg"
            )
        if qty > available_qty:
            raise InsufficientStockError(
                f"Insufficient circle stock #{stock.id}. Available: {available_qty} pcs, Requested: {qty} pcs"
            )

        sale = CircleSale(
            stock_id=stock.id,
            order_id=order_id,
            sold_qty=qty,
            sold_weight_kg=weight,
            buyer=data.get("buyer"),
            price_per_kg=data.get("price_per_kg"),
            sale_date=data.get("sale_date") or date.today(),
            created_at=datetime.utcnow(),
        )
        db.add(sale)
        db.flush()
        recompute_order(db, order_id)
        return sale

    @staticmethod
    def record_for_order(db: Session, stock_id: Optional[int], order_id: Optional[int]) -> dict:
        """
        Sell from a stock row towards an order's remaining weight target.

        Sells everything available when the order has no weight target.
        """
        if not stock_id or not order_id:
            raise ValidationError("stock_id and order_id are required")
        stock = db.get(CircleStock, stock_id)
        if stock is None:
            raise NotFoundError("Stock not found")
        order = get_order(db, order_id)

        _, available = circle_stock_available(db, stock)
        if available <= EPS:
            raise InsufficientStockError("No available weight left in this stock")

        sell = available
        target = float(order.ordered_weight_kg or 0)
        if target > 0:
            _, fulfilled = linked_sale_totals(db, order.id)
            remaining = max(0.0, target - fulfilled)
            if remaining <= EPS:
                raise ValidationError("Order target already fulfilled")
            sell = min(available, remaining)

        sale = CircleSale(
            stock_id=stock.id,
            order_id=order.id,
            sold_qty=0,
            sold_weight_kg=sell,
            buyer=order.company,
            price_per_kg=order.price_per_kg,
            sale_date=date.today(),
            created_at=datetime.utcnow(),
        )
        db.add(sale)
        db.flush()
        order = recompute_order(db, order.id)
        logger.info("Stock #%s sold %.3f kg to order %s", stock.id, sell, order.id)
        return {"ok": True, "sale": sale, "order": order}

    @staticmethod
    def list_sales(db: Session) -> List[dict]:
        resolver = LineageResolver(db)
        rows = db.query(CircleSale, CircleStock).join(
            CircleStock, CircleStock.id == CircleSale.stock_id
        ).order_by(CircleSale.sale_date.desc(), CircleSale.id.desc()).all()
        result = []
        for sale, stock in rows:
            lineage = resolver.resolve(stock.source_type, stock.source_id)
            result.append({
                "id": sale.id,
                "stock_id": sale.stock_id,
                "order_id": sale.order_id,
                "sold_qty": sale.sold_qty,
                "sold_weight_kg": sale.sold_weight_kg,
                "buyer": sale.buyer,
                "price_per_kg": sale.price_per_kg,
                "sale_date": sale.sale_date,
                "created_at": sale.created_at,
                "size_mm": stock.size_mm,
                "source_type": stock.source_type,
                "source_ref": lineage.source_ref,
                "grade": lineage.grade,
                "thickness_mm": lineage.thickness,
            })
        return result

    @staticmethod
    def delete(db: Session, sale_id: int) -> None:
        sale = db.get(CircleSale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        order_id = sale.order_id
        db.delete(sale)
        db.flush()
        recompute_order(db, order_id)


# =============================================================================
# PL SALES
# =============================================================================

class PlSaleService:

    @staticmethod
    def create(db: Session, data: dict) -> PlSale:
        stock_id = data.get("pl_stock_id")
        if not stock_id:
            raise ValidationError("pl_stock_id and positive sold_weight_kg required")
        weight = _positive_weight(data.get("sold_weight_kg"), "sold_weight_kg")
        stock = db.get(PlStock, stock_id)
        if stock is None:
            raise NotFoundError("PL stock row not found")
        order_id = data.get("order_id")
        _check_order(db, order_id)

        qty = int(data.get("sold_qty") or 0)
        if qty < 0:
            raise ValidationError("sold_qty must be >= 0")
        available_qty, available_wt = pl_stock_available(db, stock)
        if weight > available_wt + EPS:
            raise InsufficientStockError("Sold weight exceeds available PL stock weight")
        if qty > available_qty:
            raise InsufficientStockError("Sold qty exceeds available PL stock qty")

        sale = PlSale(
            pl_stock_id=stock.id,
            order_id=order_id,
            sold_qty=qty,
            sold_weight_kg=weight,
            buyer=data.get("buyer"),
            price_per_kg=data.get("price_per_kg"),
            sale_date=data.get("sale_date") or date.today(),
            created_at=datetime.utcnow(),
        )
        db.add(sale)
        db.flush()
        recompute_order(db, order_id)
        return sale

    @staticmethod
    def record_bulk(db: Session, data: dict) -> dict:
        """
        Sell a weight of one grade across PL stock rows, oldest production first.

        Optional size_mm / thickness_mm narrow the candidates. Whatever cannot
        be covered is reported as leftover.
        """
        grade = data.get("grade")
        if not grade:
            raise ValidationError("grade and positive weight_kg are required")
        need = _positive_weight(data.get("weight_kg"), "weight_kg")
        size_mm = data.get("size_mm")
        thickness_mm = data.get("thickness_mm")
        order_id = data.get("order_id")
        _check_order(db, order_id)

        candidates = [
            r for r in pl_stock_rows(db)
            if r["available_weight_kg"] > EPS
            and str(r["grade"] or "").lower() == str(grade).lower()
            and (size_mm is None or (r["size_mm"] is not None and float(r["size_mm"]) == float(size_mm)))
            and (thickness_mm is None or (r["thickness_mm"] is not None and float(r["thickness_mm"]) == float(thickness_mm)))
        ]
        if not candidates:
            raise InsufficientStockError("No matching PL stock available for the given filters.")
        candidates.sort(key=lambda r: (_date_key(r["production_date"]), r["id"]))

        takes, leftover = allocate_fifo([(r, r["available_weight_kg"]) for r in candidates], need)
        allocations = []
        for row, take in takes:
            sale = PlSale(
                pl_stock_id=row["id"],
                order_id=order_id,
                sold_qty=0,
                sold_weight_kg=take,
                buyer=data.get("buyer"),
                price_per_kg=data.get("price_per_kg"),
                sale_date=data.get("sale_date") or date.today(),
                created_at=datetime.utcnow(),
            )
            db.add(sale)
            db.flush()
            allocations.append({"pl_stock_id": row["id"], "sold_weight_kg": take, "sale_id": sale.id})
        recompute_order(db, order_id)

        total_sold = sum(a["sold_weight_kg"] for a in allocations)
        logger.info("PL bulk sale %s: %.3f of %.3f kg over %d rows", grade, total_sold, need, len(allocations))
        return {
            "ok": True,
            "grade": grade,
            "filters": {"size_mm": size_mm, "thickness_mm": thickness_mm},
            "total_requested": need,
            "total_sold": total_sold,
            "leftover": leftover,
            "allocations": allocations,
        }

    @staticmethod
    def list_sales(db: Session) -> List[dict]:
        resolver = LineageResolver(db)
        rows = db.query(PlSale, PlStock).join(PlStock, PlStock.id == PlSale.pl_stock_id).order_by(
            PlSale.sale_date.desc(), PlSale.id.desc()
        ).all()
        result = []
        for sale, stock in rows:
            lineage = resolver.resolve(stock.source_type, stock.source_id)
            result.append({
                "id": sale.id,
                "pl_stock_id": sale.pl_stock_id,
                "order_id": sale.order_id,
                "sold_qty": sale.sold_qty,
                "sold_weight_kg": sale.sold_weight_kg,
                "buyer": sale.buyer,
                "price_per_kg": sale.price_per_kg,
                "sale_date": sale.sale_date,
                "created_at": sale.created_at,
                "size_mm": stock.size_mm,
                "weight_kg": stock.weight_kg,
                "operator": stock.operator,
                "production_date": stock.production_date,
                "source_ref": lineage.source_ref,
                "grade": stock.grade or lineage.grade,
                "thickness": lineage.thickness,
                "width": lineage.width,
            })
        return result

    @staticmethod
    def delete(db: Session, sale_id: int) -> None:
        sale = db.get(PlSale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        order_id = sale.order_id
        db.delete(sale)
        db.flush()
        recompute_order(db, order_id)


# =============================================================================
# SCRAP SALES
# =============================================================================

SCRAP_SOURCES = (SourceType.CIRCLE.value, SourceType.PATTA.value)


class ScrapSaleService:

    @staticmethod
    def create(db: Session, data: dict) -> ScrapSale:
        weight = _positive_weight(data.get("weight_kg"), "weight_kg")
        rn = data.get("rn")
        source_type = data.get("source_type")
        order_id = data.get("order_id")
        _check_order(db, order_id)

        remaining = scrap_pool_remaining(db, rn, source_type)
        if weight > remaining + EPS:
            raise InsufficientStockError(f"Cannot sell {weight}kg. Only {remaining}kg available.")

        sale = ScrapSale(
            rn=rn,
            source_type=source_type,
            grade=data.get("grade"),
            order_id=order_id,
            weight_kg=weight,
            buyer=data.get("buyer"),
            price_per_kg=data.get("price_per_kg"),
            sale_date=data.get("sale_date") or date.today(),
            notes=data.get("notes"),
            created_at=datetime.utcnow(),
        )
        db.add(sale)
        db.flush()
        recompute_order(db, order_id)
        return sale

    @staticmethod
    def record_bulk(db: Session, data: dict) -> dict:
        grade = data.get("grade")
        if not grade:
            raise ValidationError("grade and positive weight_kg are required")
        need = _positive_weight(data.get("weight_kg"), "weight_kg")
        source_type = data.get("source_type")
        if source_type and source_type not in SCRAP_SOURCES:
            raise ValidationError("source_type must be 'circle' or 'patta' if provided")
        order_id = data.get("order_id")
        _check_order(db, order_id)

        pools = [
            p for p in scrap_pools(db)
            if str(p["grade"] or "").lower() == str(grade).lower()
            and (not source_type or p["source_type"] == source_type)
            and p["remaining"] > EPS
        ]
        if not pools:
            raise InsufficientStockError("No matching scrap available for the given filters.")

        takes, leftover = allocate_fifo([(p, p["remaining"]) for p in pools], need)
        allocations = []
        for pool, take in takes:
            sale = ScrapSale(
                rn=pool["rn"],
                source_type=pool["source_type"],
                grade=grade,
                order_id=order_id,
                weight_kg=take,
                buyer=data.get("buyer"),
                price_per_kg=data.get("price_per_kg"),
                sale_date=data.get("sale_date") or date.today(),
                notes=data.get("notes"),
                created_at=datetime.utcnow(),
            )
            db.add(sale)
            db.flush()
            allocations.append({
                "rn": pool["rn"], "source_type": pool["source_type"],
                "weight_kg": take, "sale_id": sale.id,
            })
        recompute_order(db, order_id)

        total_sold = sum(a["weight_kg"] for a in allocations)
        logger.info("Scrap bulk sale %s: %.3f of %.3f kg over %d pools", grade, total_sold, need, len(allocations))
        return {
            "ok": True,
            "grade": grade,
            "filter_source_type": source_type or None,
            "total_requested": need,
            "total_sold": total_sold,
            "leftover": leftover,
            "allocations": allocations,
        }

    @staticmethod
    def list_sales(db: Session) -> List[dict]:
        rows = db.query(ScrapSale).order_by(ScrapSale.sale_date.desc(), ScrapSale.id.desc()).all()
        return [
            {
                "id": s.id,
                "sale_date": s.sale_date,
                "buyer": s.buyer,
                "grade": s.grade,
                "rn": s.rn,
                "source_type": s.source_type,
                "order_id": s.order_id,
                "weight_kg": s.weight_kg,
                "price_per_kg": s.price_per_kg,
                "notes": s.notes,
                "total_value": (s.weight_kg or 0) * (s.price_per_kg or 0),
            }
            for s in rows
        ]

    @staticmethod
    def update(db: Session, sale_id: int, data: dict) -> ScrapSale:
        """Edit a scrap sale; availability is checked with this sale given back."""
        sale = db.get(ScrapSale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")

        rn = data.get("rn", sale.rn)
        source_type = data.get("source_type", sale.source_type)
        weight = data.get("weight_kg")
        weight = float(sale.weight_kg) if weight is None or weight == "" else float(weight)
        if weight <= 0:
            raise ValidationError("weight_kg must be > 0")
        old_order_id = sale.order_id
        new_order_id = data.get("order_id", old_order_id)
        _check_order(db, new_order_id)

        remaining = scrap_pool_remaining(db, rn, source_type, exclude_sale_id=sale.id)
        if weight > remaining + EPS:
            raise InsufficientStockError(f"Cannot set {weight}kg. Only {remaining}kg available for RN {rn}.")

        sale.rn = rn
        sale.source_type = source_type
        sale.weight_kg = weight
        sale.order_id = new_order_id
        for key in ("sale_date", "buyer", "grade", "notes"):
            if key in data:
                setattr(sale, key, data[key])
        if data.get("price_per_kg") is not None and data.get("price_per_kg") != "":
            sale.price_per_kg = float(data["price_per_kg"])
        db.flush()
        recompute_orders(db, [old_order_id, new_order_id])
        return sale

    @staticmethod
    def delete(db: Session, sale_id: int) -> None:
        sale = db.get(ScrapSale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        order_id = sale.order_id
        db.delete(sale)
        db.flush()
        recompute_order(db, order_id)
