"""
Sales API Router
================
Circle, PL and scrap sales. Every create, edit or delete of a sale linked
to an order recomputes that order in the same transaction.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..deps import get_db, http_error
from ..services.errors import TrackerError
from ..services.sales_service import CircleSaleService, PlSaleService, ScrapSaleService

router = APIRouter(prefix="/api", tags=["Sales"])


# =============================================================================
# CIRCLE SALES
# =============================================================================

@router.post("/circle-sales", response_model=schemas.CircleSaleOut, status_code=201)
def create_circle_sale(data: schemas.CircleSaleCreate, db: Session = Depends(get_db)):
    try:
        sale = CircleSaleService.create(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(sale)
    return sale


@router.post("/circle-sales/record-order", response_model=schemas.RecordOrderOut)
def record_circle_sale_for_order(data: schemas.RecordOrderRequest, db: Session = Depends(get_db)):
    """Sell from a stock row up to the order's remaining weight."""
    try:
        result = CircleSaleService.record_for_order(db, data.stock_id, data.order_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(result["sale"])
    db.refresh(result["order"])
    return result


@router.get("/circle-sales")
def list_circle_sales(db: Session = Depends(get_db)):
    return CircleSaleService.list_sales(db)


@router.delete("/circle-sales/{sale_id}")
def delete_circle_sale(sale_id: int, db: Session = Depends(get_db)):
    try:
        CircleSaleService.delete(db, sale_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


# =============================================================================
# PL SALES
# =============================================================================

@router.post("/pl-sales", response_model=schemas.PlSaleOut, status_code=201)
def create_pl_sale(data: schemas.PlSaleCreate, db: Session = Depends(get_db)):
    try:
        sale = PlSaleService.create(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(sale)
    return sale


@router.post("/pl-sales/record-bulk")
def record_pl_bulk(data: schemas.BulkSaleRequest, db: Session = Depends(get_db)):
    try:
        result = PlSaleService.record_bulk(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return result


@router.get("/pl-sales")
def list_pl_sales(db: Session = Depends(get_db)):
    return PlSaleService.list_sales(db)


@router.delete("/pl-sales/{sale_id}")
def delete_pl_sale(sale_id: int, db: Session = Depends(get_db)):
    try:
        PlSaleService.delete(db, sale_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


# =============================================================================
# SCRAP SALES
# =============================================================================

@router.post("/scrap-sales", response_model=schemas.ScrapSaleOut, status_code=201)
def create_scrap_sale(data: schemas.ScrapSaleCreate, db: Session = Depends(get_db)):
    try:
        sale = ScrapSaleService.create(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(sale)
    return sale


@router.post("/scrap-sales/record-bulk")
def record_scrap_bulk(data: schemas.BulkSaleRequest, db: Session = Depends(get_db)):
    try:
        result = ScrapSaleService.record_bulk(db, data.model_dump())
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return result


@router.get("/scrap-sales")
def list_scrap_sales(db: Session = Depends(get_db)):
    return ScrapSaleService.list_sales(db)


@router.patch("/scrap-sales/{sale_id}", response_model=schemas.ScrapSaleOut)
def update_scrap_sale(sale_id: int, data: schemas.ScrapSaleUpdate, db: Session = Depends(get_db)):
    try:
        sale = ScrapSaleService.update(db, sale_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(sale)
    return sale


@router.delete("/scrap-sales/{sale_id}")
def delete_scrap_sale(sale_id: int, db: Session = Depends(get_db)):
    try:
        ScrapSaleService.delete(db, sale_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}
