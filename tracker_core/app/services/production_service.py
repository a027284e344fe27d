"""
Production Service
==================
Circle, patta and PL runs and the stock rows their outputs create.

Output -> stock mapping:
- circle run circles  -> circle_stock (source 'circle')
- circle run PL       -> pl_stock     (source 'circle')
- circle run patta    -> child patta run (source 'circle')
- patta run circles   -> circle_stock (source 'patta')
- PL run circles      -> circle_stock (source 'pl')

Stock rows are updated in place so sales keep pointing at them. A stock row
that already has sales cannot be removed.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from ..models import (
    CircleRun, CircleSale, CircleStock, Coil, PattaRun, PlRun, PlSale, PlStock,
    SourceType,
)
from .errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from .stock_service import LineageResolver, coil_balance, sync_coil_stock

logger = logging.getLogger(__name__)

CIRCLE = SourceType.CIRCLE.value
PATTA = SourceType.PATTA.value
PL = SourceType.PL.value

CIRCLE_RUN_FIELDS = (
    "run_date", "operator", "net_weight_kg", "op_size_mm", "circle_weight_kg",
    "qty", "scrap_weight_kg", "patta_size", "patta_weight_kg", "pl_size", "pl_weight_kg",
)
PATTA_RUN_FIELDS = (
    "run_date", "operator", "net_weight_kg", "op_size_mm", "circle_weight_kg",
    "qty", "scrap_weight_kg", "patta_size", "grade",
)
PL_RUN_FIELDS = (
    "run_date", "operator", "net_weight_kg", "op_size_mm", "circle_weight_kg",
    "qty", "scrap_weight_kg",
)
MAX_DESCENT = 32


def _positive(value) -> bool:
    return value is not None and float(value) > 0


def _check_measures(data: dict, fields) -> None:
    for key in fields:
        if key in ("run_date", "operator", "grade"):
            continue
        value = data.get(key)
        if value not in (None, "") and float(value) < 0:
            raise ValidationError(f"{key} must be >= 0")


# =============================================================================
# STOCK ROW HELPERS
# =============================================================================

def _upsert_stock(db: Session, model, source_type: str, source_id: int, **values):
    row = db.query(model).filter(
        model.source_type == source_type, model.source_id == source_id
    ).first()
    if row is None:
        row = model(source_type=source_type, source_id=source_id, created_at=datetime.utcnow())
        db.add(row)
    for key, value in values.items():
        setattr(row, key, value)
    row.updated_at = datetime.utcnow()
    return row


def _sales_of(db: Session, model, stock_ids: Iterable[int]):
    stock_ids = list(stock_ids)
    if not stock_ids:
        return []
    if model is CircleStock:
        return db.query(CircleSale).filter(CircleSale.stock_id.in_(stock_ids)).all()
    return db.query(PlSale).filter(PlSale.pl_stock_id.in_(stock_ids)).all()


def _remove_stock(db: Session, model, source_type: str, source_id: int) -> None:
    row = db.query(model).filter(
        model.source_type == source_type, model.source_id == source_id
    ).first()
    if row is None:
        return
    if _sales_of(db, model, [row.id]):
        raise ConflictError(
            f"Cannot remove {model.__tablename__} #{row.id}: it already has sales"
        )
    db.delete(row)


# =============================================================================
# DESCENDANTS
# =============================================================================

class Descendants:
    """Every run and stock row derived from a set of runs"""

    def __init__(self):
        self.circle_run_ids: Set[int] = set()
        self.patta_run_ids: Set[int] = set()
        self.pl_run_ids: Set[int] = set()

    def circle_stock(self, db: Session) -> List[CircleStock]:
        rows = []
        for source_type, ids in ((CIRCLE, self.circle_run_ids), (PATTA, self.patta_run_ids), (PL, self.pl_run_ids)):
            if ids:
                rows += db.query(CircleStock).filter(
                    CircleStock.source_type == source_type, CircleStock.source_id.in_(sorted(ids))
                ).all()
        return rows

    def pl_stock(self, db: Session) -> List[PlStock]:
        if not self.circle_run_ids:
            return []
        return db.query(PlStock).filter(
            PlStock.source_type == CIRCLE, PlStock.source_id.in_(sorted(self.circle_run_ids))
        ).all()


def _children(db: Session, model, source_col, parent_type: str, parent_ids: Set[int]) -> Set[int]:
    if not parent_ids:
        return set()
    return {
        r[0] for r in db.query(model.id).filter(
            model.source_type == parent_type, source_col.in_(sorted(parent_ids))
        ).all()
    }


def _descend(db: Session, model, source_col, own_type: str, seed: Set[int]) -> Set[int]:
    found = set(seed)
    frontier = set(seed)
    for _ in range(MAX_DESCENT):
        nxt = _children(db, model, source_col, own_type, frontier) - found
        if not nxt:
            break
        found |= nxt
        frontier = nxt
    return found


def collect_descendants(
    db: Session,
    circle_run_ids: Iterable[int] = (),
    patta_run_ids: Iterable[int] = (),
    pl_run_ids: Iterable[int] = (),
) -> Descendants:
    d = Descendants()
    d.circle_run_ids = set(circle_run_ids)
    patta_seed = set(patta_run_ids) | _children(db, PattaRun, PattaRun.patta_source_id, CIRCLE, d.circle_run_ids)
    d.patta_run_ids = _descend(db, PattaRun, PattaRun.patta_source_id, PATTA, patta_seed)
    pl_seed = set(pl_run_ids) | _children(db, PlRun, PlRun.pl_source_id, CIRCLE, d.circle_run_ids)
    d.pl_run_ids = _descend(db, PlRun, PlRun.pl_source_id, PL, pl_seed)
    return d


def remove_descendants(db: Session, d: Descendants, force: bool = False) -> Set[int]:
    """
    Delete the runs in ``d`` and every stock row they produced.

    Without ``force`` any sale on those stock rows aborts with ConflictError.
    With ``force`` the sales are deleted too and the ids of the orders they
    were linked to are returned so the caller can recompute them.
    """
    circle_stock = d.circle_stock(db)
    pl_stock = d.pl_stock(db)
    sales = _sales_of(db, CircleStock, [s.id for s in circle_stock])
    sales += _sales_of(db, PlStock, [s.id for s in pl_stock])
    if sales and not force:
        raise ConflictError("Stock derived from this run already has sales")

    affected_orders = {s.order_id for s in sales if s.order_id}
    for sale in sales:
        db.delete(sale)
    for row in circle_stock + pl_stock:
        db.delete(row)
    db.flush()
    for model, ids in ((PlRun, d.pl_run_ids), (PattaRun, d.patta_run_ids), (CircleRun, d.circle_run_ids)):
        if ids:
            db.query(model).filter(model.id.in_(sorted(ids))).delete(synchronize_session="evaluate")
    db.flush()
    return affected_orders


# =============================================================================
# CIRCLE RUNS
# =============================================================================

class CircleRunService:

    @staticmethod
    def get(db: Session, run_id: int) -> CircleRun:
        run = db.get(CircleRun, run_id)
        if run is None:
            raise NotFoundError("Circle run not found")
        return run

    @staticmethod
    def _check_cut(db: Session, coil: Coil, extra_kg: float) -> None:
        if extra_kg > 0 and extra_kg > coil_balance(db, coil) + 1e-9:
            raise InsufficientStockError("Cutting exceeds available coil weight. Please check balance.")

    @staticmethod
    def create(db: Session, data: dict) -> CircleRun:
        """
        Start a circle run on a coil.

        Raises:
            ValidationError: coil_id missing
            NotFoundError: unknown coil
            InsufficientStockError: net input above the coil balance
        """
        coil_id = data.get("coil_id")
        if not coil_id:
            raise ValidationError("coil_id is required")
        _check_measures(data, CIRCLE_RUN_FIELDS)
        coil = db.get(Coil, coil_id)
        if coil is None:
            raise NotFoundError("Coil not found")

        net = float(data.get("net_weight_kg") or 0)
        CircleRunService._check_cut(db, coil, net)

        run = CircleRun(
            coil_id=coil.id,
            run_date=data.get("run_date") or date.today(),
            operator=data.get("operator"),
            grade=coil.grade,
            thickness=coil.thickness,
            width=coil.width,
            net_weight_kg=net,
        )
        for key in CIRCLE_RUN_FIELDS:
            if key in data and key not in ("run_date", "operator", "net_weight_kg"):
                setattr(run, key, data[key])
        db.add(run)
        db.flush()
        CircleRunService.sync_outputs(db, run)
        sync_coil_stock(db, coil)
        logger.info("Circle run %s started on coil %s", run.id, coil.rn)
        return run

    @staticmethod
    def bulk_start(db: Session, coil_ids: List[int], operator: Optional[str], run_date: Optional[date]) -> dict:
        """Start empty runs for many coils, skipping coils already running that day."""
        if not coil_ids:
            raise ValidationError("coil_ids (array) is required")
        if not operator:
            raise ValidationError("operator is required")
        run_date = run_date or date.today()

        result = {"ok": True, "started": 0, "skipped": 0, "created_ids": [], "skipped_ids": []}
        for coil_id in coil_ids:
            coil = db.get(Coil, coil_id)
            exists = db.query(CircleRun.id).filter(
                CircleRun.coil_id == coil_id, CircleRun.run_date == run_date
            ).first()
            if coil is None or exists:
                result["skipped"] += 1
                result["skipped_ids"].append(coil_id)
                continue
            run = CircleRun(
                coil_id=coil.id, operator=operator, run_date=run_date,
                grade=coil.grade, thickness=coil.thickness, width=coil.width,
            )
            db.add(run)
            db.flush()
            result["started"] += 1
            result["created_ids"].append(run.id)
        result["first_run_id"] = result["created_ids"][0] if result["created_ids"] else None
        logger.info("Bulk start: %d started, %d skipped", result["started"], result["skipped"])
        return result

    @staticmethod
    def list_runs(
        db: Session,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        q: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> List[dict]:
        query = db.query(CircleRun, Coil).join(Coil, Coil.id == CircleRun.coil_id)
        if date_from:
            query = query.filter(CircleRun.run_date >= date_from)
        if date_to:
            query = query.filter(CircleRun.run_date <= date_to)
        if operator:
            query = query.filter(CircleRun.operator == operator)
        rows = []
        for run, coil in query.order_by(CircleRun.run_date.desc(), CircleRun.id.desc()).all():
            grade = coil.grade or run.grade
            if q and not any(q.lower() in str(v).lower() for v in (coil.rn, grade) if v):
                continue
            row = {k: getattr(run, k) for k in CIRCLE_RUN_FIELDS}
            row.update({
                "id": run.id, "coil_id": run.coil_id, "rn": coil.rn, "grade": grade,
                "thickness": run.thickness, "width": run.width,
            })
            rows.append(row)
        return rows

    @staticmethod
    def update(db: Session, run_id: int, data: dict) -> CircleRun:
        run = CircleRunService.get(db, run_id)
        _check_measures(data, CIRCLE_RUN_FIELDS)
        if "net_weight_kg" in data:
            coil = db.get(Coil, run.coil_id)
            delta = float(data.get("net_weight_kg") or 0) - float(run.net_weight_kg or 0)
            if coil is not None:
                CircleRunService._check_cut(db, coil, delta)

        changed = False
        for key in CIRCLE_RUN_FIELDS:
            if key in data:
                setattr(run, key, data[key])
                changed = True
        if not changed:
            return run
        db.flush()
        CircleRunService.sync_outputs(db, run)
        if run.coil is not None:
            sync_coil_stock(db, run.coil)
        return run

    @staticmethod
    def sync_outputs(db: Session, run: CircleRun) -> None:
        """Bring the stock rows and child patta run in line with the run's outputs."""
        if _positive(run.circle_weight_kg) and run.qty:
            _upsert_stock(
                db, CircleStock, CIRCLE, run.id,
                size_mm=run.op_size_mm, weight_kg=run.circle_weight_kg, qty=run.qty,
                production_date=run.run_date, operator=run.operator,
            )
        else:
            _remove_stock(db, CircleStock, CIRCLE, run.id)

        if _positive(run.pl_weight_kg):
            _upsert_stock(
                db, PlStock, CIRCLE, run.id,
                grade=run.grade, size_mm=run.pl_size, weight_kg=float(run.pl_weight_kg),
                qty=0, production_date=run.run_date or date.today(), operator=run.operator,
            )
        else:
            _remove_stock(db, PlStock, CIRCLE, run.id)

        children = db.query(PattaRun).filter(
            PattaRun.source_type == CIRCLE, PattaRun.patta_source_id == run.id
        ).order_by(PattaRun.id).all()
        if run.patta_size and _positive(run.patta_weight_kg):
            child = children[0] if children else None
            if child is None:
                child = PattaRun(source_type=CIRCLE, patta_source_id=run.id, qty=0)
                db.add(child)
            child.run_date = run.run_date
            child.operator = run.operator
            child.net_weight_kg = float(run.patta_weight_kg)
            child.patta_size = run.patta_size
            if run.grade:
                child.grade = run.grade
        elif children:
            remove_descendants(db, collect_descendants(db, patta_run_ids=[c.id for c in children]))
            logger.info("Patta cleared on circle run %s, removed %d patta runs", run.id, len(children))
        db.flush()

    @staticmethod
    def delete(db: Session, run_id: int) -> None:
        run = CircleRunService.get(db, run_id)
        coil = run.coil
        remove_descendants(db, collect_descendants(db, circle_run_ids=[run.id]))
        if coil is not None:
            db.expire(coil)
            sync_coil_stock(db, coil)
        logger.info("Deleted circle run %s", run_id)


# =============================================================================
# PATTA RUNS
# =============================================================================

class PattaRunService:

    @staticmethod
    def get(db: Session, run_id: int) -> PattaRun:
        run = db.get(PattaRun, run_id)
        if run is None:
            raise NotFoundError("Patta run not found")
        return run

    @staticmethod
    def _sync_stock(db: Session, run: PattaRun) -> None:
        if _positive(run.circle_weight_kg):
            _upsert_stock(
                db, CircleStock, PATTA, run.id,
                size_mm=run.op_size_mm, weight_kg=run.circle_weight_kg, qty=run.qty or 0,
                production_date=run.run_date, operator=run.operator,
            )
        else:
            _remove_stock(db, CircleStock, PATTA, run.id)
        db.flush()

    @staticmethod
    def create(db: Session, data: dict) -> PattaRun:
        source_type = data.get("source_type")
        source_id = data.get("patta_source_id")
        if not source_id or not source_type:
            raise ValidationError("patta_source_id and source_type required")
        _check_measures(data, PATTA_RUN_FIELDS)
        if source_type not in (CIRCLE, PATTA):
            raise ValidationError("source_type must be 'circle' or 'patta'")
        parent_model = CircleRun if source_type == CIRCLE else PattaRun
        if db.get(parent_model, source_id) is None:
            raise NotFoundError("Patta source not found")

        run = PattaRun(source_type=source_type, patta_source_id=source_id, qty=0)
        for key in PATTA_RUN_FIELDS:
            if key in data and data[key] is not None:
                setattr(run, key, data[key])
        run.run_date = run.run_date or date.today()
        if not run.grade:
            run.grade = LineageResolver(db).resolve(source_type, source_id).grade
        db.add(run)
        db.flush()
        PattaRunService._sync_stock(db, run)
        logger.info("Patta run %s from %s %s", run.id, source_type, source_id)
        return run

    @staticmethod
    def list_runs(
        db: Session,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        q: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> List[dict]:
        resolver = LineageResolver(db)
        query = db.query(PattaRun)
        if date_from:
            query = query.filter(PattaRun.run_date >= date_from)
        if date_to:
            query = query.filter(PattaRun.run_date <= date_to)
        if operator:
            query = query.filter(PattaRun.operator == operator)
        rows = []
        for run in query.order_by(PattaRun.run_date.desc(), PattaRun.id.desc()).all():
            lineage = resolver.resolve(PATTA, run.id)
            if q and not any(q.lower() in str(v).lower() for v in (lineage.source_ref, run.operator) if v):
                continue
            row = {k: getattr(run, k) for k in PATTA_RUN_FIELDS}
            row.update({
                "id": run.id,
                "source_type": run.source_type,
                "patta_source_id": run.patta_source_id,
                "grade": lineage.grade,
                "source_ref": lineage.source_ref,
                "thickness_mm": lineage.thickness,
            })
            rows.append(row)
        return rows

    @staticmethod
    def update(db: Session, run_id: int, data: dict) -> PattaRun:
        run = PattaRunService.get(db, run_id)
        _check_measures(data, PATTA_RUN_FIELDS)
        for key in PATTA_RUN_FIELDS:
            if key in data:
                setattr(run, key, data[key])
        db.flush()
        PattaRunService._sync_stock(db, run)
        return run

    @staticmethod
    def delete(db: Session, run_id: int) -> None:
        run = PattaRunService.get(db, run_id)
        remove_descendants(db, collect_descendants(db, patta_run_ids=[run.id]))
        logger.info("Deleted patta run %s", run_id)

    @staticmethod
    def sources(db: Session) -> List[dict]:
        """Patta produced by circle runs, available as patta run sources."""
        rows = db.query(CircleRun, Coil).join(Coil, Coil.id == CircleRun.coil_id).filter(
            CircleRun.patta_weight_kg > 0
        ).order_by(CircleRun.run_date.desc(), CircleRun.id.desc()).all()
        return [
            {
                "source_id": run.id,
                "source_type": CIRCLE,
                "rn": coil.rn,
                "patta_size": run.patta_size,
                "patta_weight_kg": run.patta_weight_kg,
            }
            for run, coil in rows
        ]


# =============================================================================
# PL RUNS
# =============================================================================

class PlRunService:

    @staticmethod
    def get(db: Session, run_id: int) -> PlRun:
        run = db.get(PlRun, run_id)
        if run is None:
            raise NotFoundError("PL run not found")
        return run

    @staticmethod
    def _sync_stock(db: Session, run: PlRun) -> None:
        if _positive(run.circle_weight_kg) and run.qty:
            _upsert_stock(
                db, CircleStock, PL, run.id,
                size_mm=run.op_size_mm, weight_kg=run.circle_weight_kg, qty=run.qty,
                production_date=run.run_date, operator=run.operator,
            )
        else:
            _remove_stock(db, CircleStock, PL, run.id)
        db.flush()

    @staticmethod
    def create(db: Session, data: dict) -> PlRun:
        source_type = data.get("source_type")
        source_id = data.get("pl_source_id")
        if not source_id or not source_type:
            raise ValidationError("pl_source_id and source_type required")
        _check_measures(data, PL_RUN_FIELDS)
        if source_type not in (CIRCLE, PL):
            raise ValidationError("source_type must be 'circle' or 'pl'")
        parent_model = CircleRun if source_type == CIRCLE else PlRun
        if db.get(parent_model, source_id) is None:
            raise NotFoundError("PL source not found")

        run = PlRun(source_type=source_type, pl_source_id=source_id)
        for key in PL_RUN_FIELDS:
            if key in data:
                setattr(run, key, data[key])
        run.run_date = run.run_date or date.today()
        db.add(run)
        db.flush()
        PlRunService._sync_stock(db, run)
        logger.info("PL run %s from %s %s", run.id, source_type, source_id)
        return run

    @staticmethod
    def list_runs(
        db: Session,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        q: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> List[dict]:
        resolver = LineageResolver(db)
        query = db.query(PlRun)
        if date_from:
            query = query.filter(PlRun.run_date >= date_from)
        if date_to:
            query = query.filter(PlRun.run_date <= date_to)
        if operator:
            query = query.filter(PlRun.operator == operator)
        rows = []
        for run in query.order_by(PlRun.run_date.desc(), PlRun.id.desc()).all():
            parent = resolver.resolve(run.source_type, run.pl_source_id)
            if q and not any(q.lower() in str(v).lower() for v in (parent.source_ref, run.operator) if v):
                continue
            row = {k: getattr(run, k) for k in PL_RUN_FIELDS}
            row.update({
                "id": run.id,
                "source_type": run.source_type,
                "pl_source_id": run.pl_source_id,
                "source_ref": parent.source_ref,
                "grade": parent.grade,
            })
            rows.append(row)
        return rows

    @staticmethod
    def update(db: Session, run_id: int, data: dict) -> PlRun:
        run = PlRunService.get(db, run_id)
        _check_measures(data, PL_RUN_FIELDS)
        for key in PL_RUN_FIELDS:
            if key in data:
                setattr(run, key, data[key])
        db.flush()
        PlRunService._sync_stock(db, run)
        return run

    @staticmethod
    def delete(db: Session, run_id: int) -> None:
        run = PlRunService.get(db, run_id)
        remove_descendants(db, collect_descendants(db, pl_run_ids=[run.id]))
        logger.info("Deleted PL run %s", run_id)


def propagate_coil_attributes(db: Session, coil: Coil) -> Dict[str, int]:
    """Copy grade/thickness/width from a coil down to everything cut from it."""
    runs = db.query(CircleRun).filter(CircleRun.coil_id == coil.id).all()
    for run in runs:
        run.grade = coil.grade
        run.thickness = coil.thickness
        run.width = coil.width
    d = collect_descendants(db, circle_run_ids=[r.id for r in runs])
    if d.patta_run_ids:
        db.query(PattaRun).filter(PattaRun.id.in_(sorted(d.patta_run_ids))).update(
            {PattaRun.grade: coil.grade}, synchronize_session="evaluate"
        )
    pl_rows = d.pl_stock(db)
    for row in pl_rows:
        row.grade = coil.grade
        row.updated_at = datetime.utcnow()
    db.flush()
    return {"circle_runs": len(runs), "patta_runs": len(d.patta_run_ids), "pl_stock": len(pl_rows)}
