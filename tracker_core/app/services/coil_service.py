"""
Coil Service
============
Coil purchases, edits, direct sales, extra scrap and the cascading delete.
Every mutation resyncs the coil_stock mirror row before returning.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import (
    CircleRun, Coil, CoilDirectSale, CoilScrap, CoilStock, ScrapSale, SourceType,
)
from .errors import InsufficientStockError, NotFoundError, ValidationError
from .order_service import get_order, recompute_order, recompute_orders
from .production_service import collect_descendants, propagate_coil_attributes, remove_descendants
from .stock_service import coil_balance, coil_summary, next_rn, sync_coil_stock

logger = logging.getLogger(__name__)

COIL_FIELDS = (
    "rn", "grade", "thickness", "width", "supplier",
    "purchase_weight_kg", "purchase_date", "purchase_price",
)


class CoilService:
    """Service class for coil operations"""

    @staticmethod
    def get(db: Session, coil_id: int) -> Coil:
        coil = db.get(Coil, coil_id)
        if coil is None:
            raise NotFoundError("Coil not found")
        return coil

    @staticmethod
    def _check_rn_free(db: Session, rn: str, coil_id: Optional[int] = None) -> None:
        query = db.query(Coil.id).filter(Coil.rn == rn)
        if coil_id is not None:
            query = query.filter(Coil.id != coil_id)
        if query.first():
            raise ValidationError(f"S.No. {rn} already exists")

    @staticmethod
    def purchase(db: Session, data: dict) -> Coil:
        """
        Record a coil purchase and its coil_stock mirror.

        RN is auto-assigned when not supplied; purchase date defaults to today.

        Raises:
            ValidationError: weight missing or <= 0, RN already taken
        """
        weight = data.get("purchase_weight_kg")
        if weight is None or float(weight) <= 0:
            raise ValidationError("purchase_weight_kg must be > 0")
        rn = data.get("rn") or None
        if rn:
            CoilService._check_rn_free(db, rn)
        else:
            rn = next_rn(db)

        coil = Coil(
            rn=rn,
            grade=data.get("grade"),
            thickness=data.get("thickness"),
            width=data.get("width"),
            supplier=data.get("supplier"),
            purchase_weight_kg=float(weight),
            purchase_date=data.get("purchase_date") or date.today(),
            purchase_price=data.get("purchase_price"),
        )
        db.add(coil)
        db.flush()
        sync_coil_stock(db, coil)
        logger.info("Coil %s purchased: %.3f kg", coil.rn, coil.purchase_weight_kg)
        return coil

    @staticmethod
    def list_summaries(
        db: Session,
        q: Optional[str] = None,
        grade: Optional[str] = None,
        operator: Optional[str] = None,
        limit: int = 200,
    ) -> List[dict]:
        query = db.query(Coil)
        if operator:
            query = query.filter(
                Coil.id.in_(db.query(CircleRun.coil_id).filter(CircleRun.operator == operator))
            )
        if q:
            like = f"%{q}%"
            query = query.filter(or_(Coil.rn.like(like), Coil.supplier.like(like)))
        if grade:
            query = query.filter(Coil.grade == grade)
        coils = query.order_by(Coil.created_at.desc(), Coil.id.desc()).limit(limit).all()
        return [coil_summary(db, c) for c in coils]

    @staticmethod
    def update(db: Session, coil_id: int, data: dict) -> dict:
        coil = CoilService.get(db, coil_id)
        fields = {k: v for k, v in data.items() if k in COIL_FIELDS}
        if not fields:
            return coil_summary(db, coil)
        if "purchase_weight_kg" in fields:
            weight = fields["purchase_weight_kg"]
            if weight is None or float(weight) <= 0:
                raise ValidationError("purchase_weight_kg must be > 0")
        if fields.get("rn"):
            CoilService._check_rn_free(db, fields["rn"], coil.id)

        for key, value in fields.items():
            setattr(coil, key, value)
        db.flush()
        if any(k in fields for k in ("grade", "thickness", "width")):
            counts = propagate_coil_attributes(db, coil)
            logger.info("Coil %s attributes propagated: %s", coil.rn, counts)
        sync_coil_stock(db, coil)
        return coil_summary(db, coil)

    @staticmethod
    def delete(db: Session, coil_id: int) -> dict:
        """
        Delete a coil and everything derived from it.

        Runs, stock rows, their sales, direct sales, extra scrap and scrap
        sales booked against the coil's scrap pools all go. Orders that lose
        linked sales are recomputed.
        """
        coil = CoilService.get(db, coil_id)
        rn = coil.rn
        run_ids = [r[0] for r in db.query(CircleRun.id).filter(CircleRun.coil_id == coil.id).all()]
        d = collect_descendants(db, circle_run_ids=run_ids)
        affected = remove_descendants(db, d, force=True)

        pool_rns = {f"PATTA-{pid}" for pid in d.patta_run_ids}
        if coil.rn:
            pool_rns.add(coil.rn)
        scrap_sales = db.query(ScrapSale).filter(
            ScrapSale.rn.in_(sorted(pool_rns)),
            ScrapSale.source_type.in_([SourceType.CIRCLE.value, SourceType.PATTA.value]),
        ).all() if pool_rns else []
        direct_sales = db.query(CoilDirectSale).filter(CoilDirectSale.coil_id == coil.id).all()
        for sale in scrap_sales + direct_sales:
            if sale.order_id:
                affected.add(sale.order_id)
            db.delete(sale)

        db.query(CoilScrap).filter(CoilScrap.coil_id == coil.id).delete(synchronize_session="evaluate")
        db.query(CoilStock).filter(CoilStock.coil_id == coil.id).delete(synchronize_session="evaluate")
        db.flush()
        # collections may still hold rows removed above
        db.expire(coil)
        db.delete(coil)
        db.flush()
        recompute_orders(db, affected)

        logger.info(
            "Deleted coil %s: %d circle runs, %d patta runs, %d PL runs, %d orders recomputed",
            rn, len(d.circle_run_ids), len(d.patta_run_ids), len(d.pl_run_ids), len(affected),
        )
        return {"ok": True, "affected_orders": sorted(affected)}

    @staticmethod
    def bulk_delete(db: Session, ids: List[int]) -> dict:
        if not ids:
            raise ValidationError("No coil IDs provided")
        deleted = []
        for coil_id in ids:
            if db.get(Coil, coil_id) is None:
                logger.debug("Bulk delete skipped unknown coil %s", coil_id)
                continue
            CoilService.delete(db, coil_id)
            deleted.append(coil_id)
        return {"ok": True, "deleted": len(deleted), "ids": deleted}

    # =========================================================================
    # DIRECT SALES & EXTRA SCRAP
    # =========================================================================

    @staticmethod
    def sell_direct(db: Session, coil_id: int, data: dict) -> CoilDirectSale:
        weight = data.get("sold_weight_kg")
        if weight is None or float(weight) <= 0:
            raise ValidationError("sold_weight_kg must be > 0")
        coil = CoilService.get(db, coil_id)
        order_id = data.get("order_id")
        if order_id:
            get_order(db, order_id)

        balance = coil_balance(db, coil)
        if float(weight) > balance + 1e-9:
            raise InsufficientStockError(
                f"Insufficient coil balance for {coil.rn}. "
                f"Available: {balance:.3f} kg, Requested: {float(weight):.3f} kg"
            )

        sale = CoilDirectSale(
            coil_id=coil.id,
            order_id=order_id,
            sold_weight_kg=float(weight),
            buyer=data.get("buyer"),
            price_per_kg=data.get("price_per_kg"),
            sale_date=data.get("sale_date") or date.today(),
            created_at=datetime.utcnow(),
        )
        db.add(sale)
        db.flush()
        sync_coil_stock(db, coil)
        recompute_order(db, order_id)
        return sale

    @staticmethod
    def list_direct_sales(db: Session) -> List[dict]:
        rows = db.query(CoilDirectSale, Coil).join(Coil, Coil.id == CoilDirectSale.coil_id).order_by(
            CoilDirectSale.created_at.desc(), CoilDirectSale.id.desc()
        ).all()
        return [
            {
                "id": sale.id,
                "coil_id": sale.coil_id,
                "order_id": sale.order_id,
                "sold_weight_kg": sale.sold_weight_kg,
                "buyer": sale.buyer,
                "price_per_kg": sale.price_per_kg,
                "sale_date": sale.sale_date,
                "created_at": sale.created_at,
                "rn": coil.rn,
                "grade": coil.grade,
                "thickness": coil.thickness,
                "width": coil.width,
            }
            for sale, coil in rows
        ]

    @staticmethod
    def delete_direct_sale(db: Session, sale_id: int) -> None:
        sale = db.get(CoilDirectSale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        coil = db.get(Coil, sale.coil_id)
        order_id = sale.order_id
        db.delete(sale)
        db.flush()
        if coil is not None:
            sync_coil_stock(db, coil)
        recompute_order(db, order_id)

    @staticmethod
    def book_scrap(db: Session, coil_id: int, weight_kg: Optional[float]) -> CoilScrap:
        if weight_kg is None or float(weight_kg) <= 0:
            raise ValidationError("scrap_weight_kg must be > 0")
        coil = CoilService.get(db, coil_id)
        if float(weight_kg) > coil_balance(db, coil) + 1e-9:
            raise InsufficientStockError("Scrap exceeds available coil weight")
        scrap = CoilScrap(coil_id=coil.id, scrap_weight_kg=float(weight_kg), created_at=datetime.utcnow())
        db.add(scrap)
        db.flush()
        sync_coil_stock(db, coil)
        return scrap
