"""
Coils API Router
================
Coil purchases, summaries, direct sales, extra scrap and the coil_stock
mirror.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..deps import get_db, http_error
from ..services.coil_service import CoilService
from ..services.errors import TrackerError
from ..services.stock_service import coil_stock_rows, coil_summary, recalc_coil_stock

router = APIRouter(prefix="/api", tags=["Coils"])


@router.post("/coils/purchase", response_model=schemas.CoilOut, status_code=201)
def purchase_coil(data: schemas.CoilPurchase, db: Session = Depends(get_db)):
    try:
        coil = CoilService.purchase(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(coil)
    return coil


@router.get("/coils")
def list_coils(
    q: Optional[str] = None,
    grade: Optional[str] = None,
    operator: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return CoilService.list_summaries(db, q=q, grade=grade, operator=operator, limit=limit)


@router.get("/coils/{coil_id}/summary")
def get_coil_summary(coil_id: int, db: Session = Depends(get_db)):
    try:
        coil = CoilService.get(db, coil_id)
    except TrackerError as e:
        raise http_error(db, e)
    return coil_summary(db, coil)


@router.patch("/coils/{coil_id}")
def update_coil(coil_id: int, data: schemas.CoilUpdate, db: Session = Depends(get_db)):
    try:
        summary = CoilService.update(db, coil_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return summary


@router.delete("/coils/{coil_id}")
def delete_coil(coil_id: int, db: Session = Depends(get_db)):
    """Cascade delete: runs, stock, sales and scrap derived from the coil."""
    try:
        result = CoilService.delete(db, coil_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return result


@router.post("/coils/bulk-delete")
def bulk_delete_coils(data: schemas.BulkDeleteRequest, db: Session = Depends(get_db)):
    try:
        result = CoilService.bulk_delete(db, data.ids)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return result


@router.post("/coils/{coil_id}/sell-direct", response_model=schemas.DirectSaleOut, status_code=201)
def sell_coil_direct(coil_id: int, data: schemas.DirectSaleCreate, db: Session = Depends(get_db)):
    try:
        sale = CoilService.sell_direct(db, coil_id, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(sale)
    return sale


@router.post("/coils/{coil_id}/scrap", response_model=schemas.CoilScrapOut, status_code=201)
def book_coil_scrap(coil_id: int, data: schemas.CoilScrapCreate, db: Session = Depends(get_db)):
    try:
        scrap = CoilService.book_scrap(db, coil_id, data.scrap_weight_kg)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(scrap)
    return scrap


@router.get("/coil-direct-sales")
def list_direct_sales(db: Session = Depends(get_db)):
    return CoilService.list_direct_sales(db)


@router.delete("/coil-direct-sales/{sale_id}")
def delete_direct_sale(sale_id: int, db: Session = Depends(get_db)):
    try:
        CoilService.delete_direct_sale(db, sale_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


@router.get("/coil-stock", response_model=List[schemas.CoilStockOut])
def list_coil_stock(q: Optional[str] = None, db: Session = Depends(get_db)):
    return coil_stock_rows(db, q)


@router.post("/coil-stock/recalc")
def recalc_stock(db: Session = Depends(get_db)):
    count = recalc_coil_stock(db)
    db.commit()
    return {"ok": True, "coils": count}
