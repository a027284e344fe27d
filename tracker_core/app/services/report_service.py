"""
Report Service
==============
Read-only aggregates: dashboard totals, per-coil profitability and yield.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import (
    CircleRun, CircleSale, CircleStock, Coil, CoilDirectSale, PattaRun, PlSale, PlStock,
    ScrapSale, SourceType,
)
from .stock_service import LineageResolver

logger = logging.getLogger(__name__)

RECENT_RUNS = 10
BALANCE_TOLERANCE = 1e-6


def safe_pct(num: float, den: float) -> Optional[float]:
    """Percentage rounded to 2 places, None when the denominator is not positive."""
    if not den or den <= 0:
        return None
    return round(100.0 * (num or 0) / den, 2)


# =============================================================================
# DASHBOARD
# =============================================================================

def dashboard(db: Session) -> dict:
    circle = db.query(
        func.coalesce(func.sum(CircleRun.circle_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.net_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.scrap_weight_kg), 0),
        func.coalesce(func.sum(CircleRun.patta_weight_kg), 0),
    ).one()
    patta = db.query(
        func.coalesce(func.sum(PattaRun.circle_weight_kg), 0),
        func.coalesce(func.sum(PattaRun.net_weight_kg), 0),
        func.coalesce(func.sum(PattaRun.scrap_weight_kg), 0),
    ).one()
    totals = {
        "circles_kg": float(circle[0]) + float(patta[0]),
        "net_kg": float(circle[1]) + float(patta[1]),
        "scrap_kg": float(circle[2]) + float(patta[2]),
        "patta_kg": float(circle[3]),
    }

    per_operator: Dict[Optional[str], List[float]] = defaultdict(lambda: [0.0, 0.0])
    for model in (CircleRun, PattaRun):
        rows = db.query(
            model.operator,
            func.coalesce(func.sum(model.circle_weight_kg), 0),
            func.coalesce(func.sum(model.net_weight_kg), 0),
        ).group_by(model.operator).all()
        for operator, circles, net in rows:
            per_operator[operator][0] += float(circles)
            per_operator[operator][1] += float(net)
    by_operator = [
        {"operator": op, "circles_kg": c, "net_kg": n, "yield_pct": safe_pct(c, n)}
        for op, (c, n) in per_operator.items()
    ]
    by_operator.sort(key=lambda r: r["circles_kg"], reverse=True)

    return {"totals": totals, "byOperator": by_operator, "recent": recent_runs(db)}


def recent_runs(db: Session, limit: int = RECENT_RUNS) -> List[dict]:
    resolver = LineageResolver(db)
    rows = []
    for run in db.query(CircleRun).order_by(CircleRun.run_date.desc(), CircleRun.id.desc()).limit(limit).all():
        rows.append({
            "run_date": run.run_date,
            "rn": run.coil.rn if run.coil else None,
            "operator": run.operator,
            "circle_weight_kg": run.circle_weight_kg,
            "scrap_weight_kg": run.scrap_weight_kg,
            "patta_weight_kg": run.patta_weight_kg,
            "source_type": SourceType.CIRCLE.value,
        })
    for run in db.query(PattaRun).order_by(PattaRun.run_date.desc(), PattaRun.id.desc()).limit(limit).all():
        rows.append({
            "run_date": run.run_date,
            "rn": resolver.resolve(SourceType.PATTA.value, run.id).source_ref,
            "operator": run.operator,
            "circle_weight_kg": run.circle_weight_kg,
            "scrap_weight_kg": run.scrap_weight_kg,
            "patta_weight_kg": None,
            "source_type": SourceType.PATTA.value,
        })
    # newest first, patta before circle on the same day
    rows.sort(key=lambda r: (r["run_date"] or date.min, r["source_type"]), reverse=True)
    return rows[:limit]


# =============================================================================
# PROFITABILITY
# =============================================================================

def _attributed_sales(db: Session) -> Dict[int, Dict[str, float]]:
    """Sold weight and revenue per coil, following every sale back through its lineage."""
    resolver = LineageResolver(db)
    totals: Dict[int, Dict[str, float]] = defaultdict(lambda: {"sold_kg": 0.0, "revenue": 0.0})

    def book(coil_id, weight, price):
        if coil_id is None:
            return
        totals[coil_id]["sold_kg"] += float(weight or 0)
        totals[coil_id]["revenue"] += float(weight or 0) * float(price or 0)

    for sale, stock in db.query(CircleSale, CircleStock).join(CircleStock, CircleStock.id == CircleSale.stock_id).all():
        book(resolver.resolve(stock.source_type, stock.source_id).coil_id, sale.sold_weight_kg, sale.price_per_kg)
    for sale, stock in db.query(PlSale, PlStock).join(PlStock, PlStock.id == PlSale.pl_stock_id).all():
        book(resolver.resolve(stock.source_type, stock.source_id).coil_id, sale.sold_weight_kg, sale.price_per_kg)
    for sale in db.query(CoilDirectSale).all():
        book(sale.coil_id, sale.sold_weight_kg, sale.price_per_kg)

    coil_by_rn = {rn: cid for cid, rn in db.query(Coil.id, Coil.rn).all() if rn}
    for sale in db.query(ScrapSale).all():
        coil_id = coil_by_rn.get(sale.rn)
        if coil_id is None and sale.rn and sale.rn.startswith("PATTA-"):
            ref = sale.rn[len("PATTA-"):]
            if ref.isdigit():
                coil_id = resolver.resolve(SourceType.PATTA.value, int(ref)).coil_id
        book(coil_id, sale.weight_kg, sale.price_per_kg)
    return totals


def profitability(db: Session) -> List[dict]:
    """
    Purchase cost, revenue and profit of every fully sold coil.

    A coil is fully sold when purchased weight minus every sale attributed to
    it is zero. Run scrap that was never sold keeps a coil off this report.
    """
    sales = _attributed_sales(db)
    result = []
    for coil in db.query(Coil).order_by(Coil.created_at.desc(), Coil.id.desc()).all():
        attributed = sales.get(coil.id, {"sold_kg": 0.0, "revenue": 0.0})
        purchased = float(coil.purchase_weight_kg or 0)
        balance = purchased - attributed["sold_kg"]
        if abs(balance) > BALANCE_TOLERANCE:
            logger.debug("Coil %s not fully sold, balance %.3f kg", coil.rn, balance)
            continue
        cost = float(coil.purchase_price or 0) * purchased
        result.append({
            "coil_id": coil.id,
            "coil_no": coil.rn,
            "purchase_cost": cost,
            "total_revenue": attributed["revenue"],
            "profit": attributed["revenue"] - cost,
            "balance_kg": 0.0,
        })
    return result


# =============================================================================
# YIELD
# =============================================================================

def yield_report(db: Session) -> List[dict]:
    circle = {
        coil_id: (float(net or 0), float(out or 0))
        for coil_id, net, out in db.query(
            CircleRun.coil_id,
            func.sum(CircleRun.net_weight_kg),
            func.sum(CircleRun.circle_weight_kg),
        ).group_by(CircleRun.coil_id).all()
    }

    resolver = LineageResolver(db)
    patta: Dict[int, List[float]] = defaultdict(lambda: [0.0, 0.0])
    for run in db.query(PattaRun).all():
        coil_id = resolver.resolve(SourceType.PATTA.value, run.id).coil_id
        if coil_id is None:
            continue
        patta[coil_id][0] += float(run.net_weight_kg or 0)
        patta[coil_id][1] += float(run.circle_weight_kg or 0)

    rows = []
    for coil in db.query(Coil).order_by(Coil.created_at.desc(), Coil.id.desc()).all():
        if coil.id not in circle and coil.id not in patta:
            continue
        net, circle_out = circle.get(coil.id, (0.0, 0.0))
        patta_net, patta_out = patta.get(coil.id, (0.0, 0.0))
        rows.append({
            "coil_id": coil.id,
            "rn": coil.rn,
            "grade": coil.grade,
            "net_input_kg": net,
            "circle_out_kg": circle_out,
            "patta_net_kg": patta_net,
            "patta_out_kg": patta_out,
            "circle_yield_pct": safe_pct(circle_out, net),
            "patta_yield_pct": safe_pct(patta_out, patta_net),
            "total_yield_pct": safe_pct(circle_out + patta_out, net),
        })
    return rows
