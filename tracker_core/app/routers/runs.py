"""
Production Runs API Router
==========================
Circle, patta and PL runs. Creating or editing a run keeps its stock rows
in step with its outputs.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..deps import get_db, http_error
from ..services.errors import TrackerError
from ..services.production_service import CircleRunService, PattaRunService, PlRunService

router = APIRouter(prefix="/api", tags=["Production Runs"])


# =============================================================================
# CIRCLE RUNS
# =============================================================================

@router.post("/circle-runs", response_model=schemas.CircleRunOut, status_code=201)
def create_circle_run(data: schemas.CircleRunCreate, db: Session = Depends(get_db)):
    try:
        run = CircleRunService.create(db, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.post("/circle-runs/bulk-start")
def bulk_start_circle_runs(data: schemas.BulkStartRequest, db: Session = Depends(get_db)):
    try:
        result = CircleRunService.bulk_start(db, data.coil_ids, data.operator, data.run_date)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return result


@router.get("/circle-runs")
def list_circle_runs(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    q: Optional[str] = None,
    operator: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return CircleRunService.list_runs(db, date_from, date_to, q, operator)


@router.patch("/circle-runs/{run_id}", response_model=schemas.CircleRunOut)
def update_circle_run(run_id: int, data: schemas.CircleRunUpdate, db: Session = Depends(get_db)):
    try:
        run = CircleRunService.update(db, run_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.delete("/circle-runs/{run_id}")
def delete_circle_run(run_id: int, db: Session = Depends(get_db)):
    try:
        CircleRunService.delete(db, run_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


# =============================================================================
# PATTA RUNS
# =============================================================================

@router.get("/patta")
def list_patta_sources(db: Session = Depends(get_db)):
    return PattaRunService.sources(db)


@router.post("/patta-runs", response_model=schemas.PattaRunOut, status_code=201)
def create_patta_run(data: schemas.PattaRunCreate, db: Session = Depends(get_db)):
    try:
        run = PattaRunService.create(db, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.get("/patta-runs")
def list_patta_runs(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    q: Optional[str] = None,
    operator: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return PattaRunService.list_runs(db, date_from, date_to, q, operator)


@router.patch("/patta-runs/{run_id}", response_model=schemas.PattaRunOut)
def update_patta_run(run_id: int, data: schemas.PattaRunUpdate, db: Session = Depends(get_db)):
    try:
        run = PattaRunService.update(db, run_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.delete("/patta-runs/{run_id}")
def delete_patta_run(run_id: int, db: Session = Depends(get_db)):
    try:
        PattaRunService.delete(db, run_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


# =============================================================================
# PL RUNS
# =============================================================================

@router.post("/pl-runs", response_model=schemas.PlRunOut, status_code=201)
def create_pl_run(data: schemas.PlRunCreate, db: Session = Depends(get_db)):
    try:
        run = PlRunService.create(db, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.get("/pl-runs")
def list_pl_runs(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    q: Optional[str] = None,
    operator: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return PlRunService.list_runs(db, date_from, date_to, q, operator)


@router.patch("/pl-runs/{run_id}", response_model=schemas.PlRunOut)
def update_pl_run(run_id: int, data: schemas.PlRunUpdate, db: Session = Depends(get_db)):
    try:
        run = PlRunService.update(db, run_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(run)
    return run


@router.delete("/pl-runs/{run_id}")
def delete_pl_run(run_id: int, db: Session = Depends(get_db)):
    try:
        PlRunService.delete(db, run_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}
