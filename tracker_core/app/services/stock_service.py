"""
Stock & Lineage Service
=======================
Derived stock figures for every stock table:
- Lineage resolution (which coil a circle, patta or PL piece came from)
- Circle / PL availability (produced minus sales, never stored)
- Coil balance and the cached coil_stock mirror
- Scrap pools per RN and source
- FIFO allocation for bulk sales
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..models import (
    CircleRun, CircleSale, CircleStock, Coil, CoilDirectSale, CoilScrap,
    CoilStock, Order, OrderStatus, PattaRun, PlRun, PlSale, PlStock, ScrapSale, SourceType,
)

logger = logging.getLogger(__name__)

MAX_LINEAGE_DEPTH = 16


def _coalesce(*values):
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _matches(needle: Optional[str], *haystack) -> bool:
    if not needle:
        return True
    needle = needle.lower()
    return any(needle in str(h).lower() for h in haystack if h is not None)


# =============================================================================
# LINEAGE
# =============================================================================

class Lineage:
    """Where a run or stock row ultimately came from"""

    def __init__(self):
        self.coil: Optional[Coil] = None
        self.circle_run: Optional[CircleRun] = None
        self.source_ref: Optional[str] = None
        self.grade: Optional[str] = None
        self.thickness: Optional[float] = None
        self.width: Optional[float] = None

    @property
    def coil_id(self) -> Optional[int]:
        return self.coil.id if self.coil else None

    def as_dict(self) -> dict:
        return {
            "source_ref": self.source_ref,
            "grade": self.grade,
            "thickness_mm": self.thickness,
            "coil_id": self.coil_id,
        }


class LineageResolver:
    """
    Walks run references back to the coil.

    circle -> circle run -> coil
    patta  -> patta run -> (circle run | parent patta run) ...
    pl     -> PL run -> (circle run | parent PL run) ...

    The nearest explicit grade wins, so a patta run's own grade beats the
    coil's. Results are memoized for the life of the resolver, which should
    not outlive one request.
    """

    def __init__(self, db: Session):
        self.db = db
        self._cache: Dict[Tuple[str, int], Lineage] = {}

    def resolve(self, source_type: str, source_id: Optional[int]) -> Lineage:
        key = (source_type, source_id)
        if key not in self._cache:
            self._cache[key] = self._walk(source_type, source_id)
        return self._cache[key]

    def _walk(self, kind: str, ref_id: Optional[int]) -> Lineage:
        lineage = Lineage()
        for _ in range(MAX_LINEAGE_DEPTH):
            if ref_id is None:
                break
            if kind == SourceType.CIRCLE.value:
                run = self.db.get(CircleRun, ref_id)
                if run is None:
                    break
                coil = run.coil
                lineage.circle_run = run
                lineage.coil = coil
                lineage.grade = _coalesce(lineage.grade, run.grade, coil.grade if coil else None)
                lineage.thickness = _coalesce(run.thickness, coil.thickness if coil else None)
                lineage.width = _coalesce(run.width, coil.width if coil else None)
                if lineage.source_ref is None and coil is not None:
                    lineage.source_ref = coil.rn
                return lineage
            if kind == SourceType.PATTA.value:
                run = self.db.get(PattaRun, ref_id)
                if run is None:
                    break
                lineage.grade = _coalesce(lineage.grade, run.grade)
                if lineage.source_ref is None and run.source_type == SourceType.PATTA.value:
                    lineage.source_ref = f"PATTA-{run.patta_source_id}"
                kind, ref_id = run.source_type, run.patta_source_id
                continue
            if kind == SourceType.PL.value:
                run = self.db.get(PlRun, ref_id)
                if run is None:
                    break
                if lineage.source_ref is None:
                    lineage.source_ref = f"PL-{run.id}"
                kind, ref_id = run.source_type, run.pl_source_id
                continue
            break
        else:
            logger.warning("Lineage of %s %s deeper than %d hops", kind, ref_id, MAX_LINEAGE_DEPTH)
        return lineage


def descends_from_coil(resolver: LineageResolver, source_type: str, source_id: int, coil_id: int) -> bool:
    return resolver.resolve(source_type, source_id).coil_id == coil_id


# =============================================================================
# CIRCLE / PL AVAILABILITY
# =============================================================================

def _sold_by_stock(db: Session, sale_model, stock_col) -> Dict[int, Tuple[int, float]]:
    rows = db.query(
        stock_col,
        func.coalesce(func.sum(sale_model.sold_qty), 0),
        func.coalesce(func.sum(sale_model.sold_weight_kg), 0),
    ).group_by(stock_col).all()
    return {r[0]: (int(r[1] or 0), float(r[2] or 0)) for r in rows}


def _available(produced_qty, produced_wt, sold_qty, sold_wt) -> Tuple[int, float]:
    return (
        max(0, int(produced_qty or 0) - sold_qty),
        max(0.0, float(produced_wt or 0) - sold_wt),
    )


def _sold_for(db: Session, sale_model, stock_col, stock_id: int) -> Tuple[int, float]:
    row = db.query(
        func.coalesce(func.sum(sale_model.sold_qty), 0),
        func.coalesce(func.sum(sale_model.sold_weight_kg), 0),
    ).filter(stock_col == stock_id).one()
    return int(row[0] or 0), float(row[1] or 0)


def circle_stock_available(db: Session, stock: CircleStock) -> Tuple[int, float]:
    """(pieces, kg) still unsold on a circle stock row"""
    return _available(stock.qty, stock.weight_kg, *_sold_for(db, CircleSale, CircleSale.stock_id, stock.id))


def pl_stock_available(db: Session, stock: PlStock) -> Tuple[int, float]:
    return _available(stock.qty, stock.weight_kg, *_sold_for(db, PlSale, PlSale.pl_stock_id, stock.id))


def _stock_row(stock, lineage: Lineage, sold: Tuple[int, float]) -> dict:
    available_qty, available_wt = _available(stock.qty, stock.weight_kg, *sold)
    row = {
        "id": stock.id,
        "source_type": stock.source_type,
        "source_id": stock.source_id,
        "size_mm": stock.size_mm,
        "weight_kg": stock.weight_kg,
        "qty": stock.qty,
        "production_date": stock.production_date,
        "operator": stock.operator,
        "sold_qty": sold[0],
        "sold_weight_kg": sold[1],
        "available_qty": available_qty,
        "available_weight_kg": available_wt,
    }
    row.update(lineage.as_dict())
    return row


def circle_stock_rows(
    db: Session,
    source_types: Optional[Iterable[str]] = None,
    q: Optional[str] = None,
    resolver: Optional[LineageResolver] = None,
) -> List[dict]:
    """Circle stock with lineage, sold totals and derived availability."""
    resolver = resolver or LineageResolver(db)
    sold = _sold_by_stock(db, CircleSale, CircleSale.stock_id)
    query = db.query(CircleStock)
    if source_types:
        query = query.filter(CircleStock.source_type.in_(list(source_types)))
    rows = []
    for stock in query.order_by(CircleStock.production_date.desc(), CircleStock.id.desc()).all():
        lineage = resolver.resolve(stock.source_type, stock.source_id)
        if not _matches(q, lineage.source_ref, lineage.grade, stock.operator):
            continue
        rows.append(_stock_row(stock, lineage, sold.get(stock.id, (0, 0.0))))
    return rows


def circle_stock_row(db: Session, stock: CircleStock, resolver: Optional[LineageResolver] = None) -> dict:
    resolver = resolver or LineageResolver(db)
    lineage = resolver.resolve(stock.source_type, stock.source_id)
    return _stock_row(stock, lineage, _sold_for(db, CircleSale, CircleSale.stock_id, stock.id))


def _same(a, b) -> bool:
    if a is None or b is None:
        return True
    return abs(float(a) - float(b)) < 1e-6


def circle_stock_matches(db: Session, stock: CircleStock) -> List[dict]:
    """
    Open orders a circle stock row could be sold against.

    An order matches on grade, thickness and op size (unset order fields
    match anything) and must still have remaining weight. ``cover`` is
    ``full`` when the row's available weight covers that remainder.
    """
    row = circle_stock_row(db, stock)
    available = row["available_weight_kg"]
    query = db.query(Order).filter(
        Order.cancelled_at.is_(None),
        Order.status != OrderStatus.FULFILLED.value,
    )
    matches = []
    for order in query.order_by(Order.order_date.is_(None), Order.order_date, Order.id).all():
        if order.grade and row["grade"] and order.grade.lower() != str(row["grade"]).lower():
            continue
        if not _same(order.thickness_mm, row["thickness_mm"]) or not _same(order.op_size_mm, row["size_mm"]):
            continue
        remaining = order.remaining_weight_kg
        if remaining <= 0:
            continue
        matches.append({
            "order_id": order.id,
            "order_date": order.order_date,
            "company": order.company,
            "grade": order.grade,
            "thickness_mm": order.thickness_mm,
            "op_size_mm": order.op_size_mm,
            "ordered_weight_kg": order.ordered_weight_kg,
            "fulfilled_weight_kg": order.fulfilled_weight_kg,
            "remaining_weight_kg": remaining,
            "cover": "full" if available >= remaining else "partial",
        })
    return matches


def pl_stock_rows(
    db: Session,
    q: Optional[str] = None,
    resolver: Optional[LineageResolver] = None,
) -> List[dict]:
    resolver = resolver or LineageResolver(db)
    sold = _sold_by_stock(db, PlSale, PlSale.pl_stock_id)
    rows = []
    for stock in db.query(PlStock).order_by(PlStock.production_date.desc(), PlStock.id.desc()).all():
        lineage = resolver.resolve(stock.source_type, stock.source_id)
        if not _matches(q, lineage.source_ref, stock.grade, lineage.grade, stock.operator):
            continue
        row = _stock_row(stock, lineage, sold.get(stock.id, (0, 0.0)))
        row["grade"] = _coalesce(stock.grade, lineage.grade)
        rows.append(row)
    return rows


# =============================================================================
# COILS
# =============================================================================

def next_rn(db: Session) -> str:
    """Next 4-digit zero padded RN after the highest purely numeric one."""
    highest = 0
    for (rn,) in db.query(Coil.rn).filter(Coil.rn.isnot(None)).all():
        if rn.isdigit():
            highest = max(highest, int(rn))
    return str(highest + 1).zfill(4)


def coil_balance(db: Session, coil: Coil) -> float:
    """Purchased minus direct sales, circle-run input and extra coil scrap."""
    direct = db.query(func.coalesce(func.sum(CoilDirectSale.sold_weight_kg), 0)).filter(
        CoilDirectSale.coil_id == coil.id
    ).scalar() or 0
    cut = db.query(func.coalesce(func.sum(CircleRun.net_weight_kg), 0)).filter(
        CircleRun.coil_id == coil.id
    ).scalar() or 0
    extra_scrap = db.query(func.coalesce(func.sum(CoilScrap.scrap_weight_kg), 0)).filter(
        CoilScrap.coil_id == coil.id
    ).scalar() or 0
    return float(coil.purchase_weight_kg or 0) - float(direct) - float(cut) - float(extra_scrap)


def coil_summary(db: Session, coil: Coil) -> dict:
    outputs = db.query(
        func.coalesce(func.sum(CircleRun.net_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.circle_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.patta_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.pl_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.scrap_weight_kg), 0),
    ).filter(CircleRun.coil_id == coil.id).one()
    direct = db.query(func.coalesce(func.sum(CoilDirectSale.sold_weight_kg), 0)).filter(
        CoilDirectSale.coil_id == coil.id
    ).scalar() or 0
    extra_scrap = db.query(func.coalesce(func.sum(CoilScrap.scrap_weight_kg), 0)).filter(
        CoilScrap.coil_id == coil.id
    ).scalar() or 0
    purchased = float(coil.purchase_weight_kg or 0)
    net_input = float(outputs[0] or 0)
    return {
        "id": coil.id,
        "rn": coil.rn,
        "grade": coil.grade,
        "thickness": coil.thickness,
        "width": coil.width,
        "supplier": coil.supplier,
        "purchase_date": coil.purchase_date,
        "purchase_price": coil.purchase_price,
        "purchased_kg": purchased,
        "direct_sold_kg": float(direct),
        "net_input_kg": net_input,
        "circles_kg": float(outputs[1] or 0),
        "patta_kg": float(outputs[2] or 0),
        "pl_kg": float(outputs[3] or 0),
        "scrap_kg": float(outputs[4] or 0),
        "extra_scrap_kg": float(extra_scrap),
        "balance_kg": purchased - float(direct) - net_input - float(extra_scrap),
    }


def sync_coil_stock(db: Session, coil: Coil) -> CoilStock:
    """Upsert the coil_stock mirror row from the coil and its true balance."""
    stock = db.query(CoilStock).filter(CoilStock.coil_id == coil.id).first()
    if stock is None:
        stock = CoilStock(coil_id=coil.id, created_at=datetime.utcnow())
        db.add(stock)
    stock.rn = coil.rn
    stock.grade = coil.grade
    stock.thickness = coil.thickness
    stock.width = coil.width
    stock.supplier = coil.supplier
    stock.purchase_date = coil.purchase_date
    stock.purchase_price = coil.purchase_price
    stock.initial_weight_kg = coil.purchase_weight_kg
    stock.available_weight_kg = max(0.0, coil_balance(db, coil))
    stock.updated_at = datetime.utcnow()
    db.flush()
    return stock


def recalc_coil_stock(db: Session) -> int:
    coils = db.query(Coil).all()
    for coil in coils:
        sync_coil_stock(db, coil)
    logger.info("Recalculated coil stock for %d coils", len(coils))
    return len(coils)


def coil_stock_rows(db: Session, q: Optional[str] = None) -> List[CoilStock]:
    query = db.query(CoilStock).filter(CoilStock.available_weight_kg > 0)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(
            CoilStock.rn.like(like),
            CoilStock.supplier.like(like),
            CoilStock.grade.like(like),
        ))
    return query.order_by(CoilStock.created_at.desc(), CoilStock.id.desc()).all()


# =============================================================================
# SCRAP POOLS
# =============================================================================

def scrap_sources(db: Session, resolver: Optional[LineageResolver] = None) -> List[dict]:
    """One entry per circle or patta run that produced scrap."""
    resolver = resolver or LineageResolver(db)
    rows = []
    for run in db.query(CircleRun).filter(CircleRun.scrap_weight_kg > 0).all():
        coil = run.coil
        rows.append({
            "date": run.run_date,
            "rn": coil.rn if coil else None,
            "source_type": SourceType.CIRCLE.value,
            "grade": _coalesce(coil.grade if coil else None, run.grade),
            "operator": run.operator,
            "scrap_weight_kg": float(run.scrap_weight_kg or 0),
        })
    for run in db.query(PattaRun).filter(PattaRun.scrap_weight_kg > 0).all():
        lineage = resolver.resolve(SourceType.PATTA.value, run.id)
        rows.append({
            "date": run.run_date,
            "rn": lineage.source_ref,
            "source_type": SourceType.PATTA.value,
            "grade": _coalesce(lineage.coil.grade if lineage.coil else None, lineage.grade),
            "operator": run.operator,
            "scrap_weight_kg": float(run.scrap_weight_kg or 0),
        })
    return rows


def scrap_sold_by_pool(db: Session, exclude_sale_id: Optional[int] = None) -> Dict[Tuple[str, str], float]:
    query = db.query(
        ScrapSale.rn, ScrapSale.source_type, func.coalesce(func.sum(ScrapSale.weight_kg), 0)
    )
    if exclude_sale_id is not None:
        query = query.filter(ScrapSale.id != exclude_sale_id)
    return {(r[0], r[1]): float(r[2] or 0) for r in query.group_by(ScrapSale.rn, ScrapSale.source_type).all()}


def scrap_pools(db: Session, exclude_sale_id: Optional[int] = None) -> List[dict]:
    """
    Scrap grouped by (rn, source_type), oldest first.

    Sales are booked against a pool key, so several runs of the same coil
    share one pool.
    """
    pools: Dict[Tuple[str, str], dict] = {}
    for src in scrap_sources(db):
        key = (src["rn"], src["source_type"])
        pool = pools.get(key)
        if pool is None:
            pool = pools[key] = {
                "date": src["date"],
                "rn": src["rn"],
                "source_type": src["source_type"],
                "grade": src["grade"],
                "base_weight": 0.0,
            }
        pool["base_weight"] += src["scrap_weight_kg"]
        if src["date"] and (pool["date"] is None or src["date"] < pool["date"]):
            pool["date"] = src["date"]
        pool["grade"] = _coalesce(pool["grade"], src["grade"])

    sold = scrap_sold_by_pool(db, exclude_sale_id)
    result = []
    for key, pool in pools.items():
        pool["sold"] = sold.get(key, 0.0)
        pool["remaining"] = max(0.0, pool["base_weight"] - pool["sold"])
        result.append(pool)
    result.sort(key=lambda p: (p["date"] or date.max, str(p["rn"])))
    return result


def scrap_pool_remaining(
    db: Session, rn: Optional[str], source_type: Optional[str], exclude_sale_id: Optional[int] = None
) -> float:
    for pool in scrap_pools(db, exclude_sale_id):
        if pool["rn"] == rn and pool["source_type"] == source_type:
            return pool["remaining"]
    return 0.0


def scrap_summary(db: Session) -> dict:
    rows = scrap_pools(db)
    total = sum(r["base_weight"] for r in rows)
    sold = sum(r["sold"] for r in rows)
    return {
        "rows": rows,
        "totals": {
            "total_kg": total,
            "sold_kg": sold,
            "available_kg": max(0.0, total - sold),
        },
    }


def scrap_only_rows(db: Session, q: Optional[str] = None) -> List[dict]:
    rows = [
        {
            "date": src["date"],
            "source_ref": src["rn"],
            "grade": src["grade"],
            "operator": src["operator"],
            "scrap_weight_kg": src["scrap_weight_kg"],
            "source_type": src["source_type"],
        }
        for src in scrap_sources(db)
        if _matches(q, src["rn"], src["grade"], src["operator"])
    ]
    rows.sort(key=lambda r: r["date"] or date.min, reverse=True)
    return rows


# =============================================================================
# FIFO ALLOCATION
# =============================================================================

def allocate_fifo(candidates: List[Tuple[object, float]], need: float) -> Tuple[List[Tuple[object, float]], float]:
    """
    Take ``need`` kg from candidates in the order given.

    Args:
        candidates: (item, available_kg) pairs, oldest first
        need: weight requested

    Returns:
        ([(item, take_kg), ...], leftover_kg)
    """
    remaining = need
    takes = []
    for item, available in candidates:
        if remaining <= 0:
            break
        take = min(remaining, available)
        if take <= 0:
            continue
        takes.append((item, take))
        remaining -= take
    return takes, max(0.0, remaining)
