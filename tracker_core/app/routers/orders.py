"""
Orders API Router
=================
Customer orders and their fulfilment status.

Status and fulfilled totals are never written by clients. They are
recomputed from linked sales (see services.order_service).
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..deps import get_db, http_error
from ..services import order_service
from ..services.errors import TrackerError

router = APIRouter(prefix="/api/orders", tags=["Orders"])


@router.get("", response_model=List[schemas.OrderOut])
def list_orders(
    q: Optional[str] = None,
    status: Optional[str] = None,
    grade: Optional[str] = None,
    company: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return order_service.list_orders(db, q=q, status=status, grade=grade, company=company)


@router.post("", response_model=schemas.OrderOut, status_code=201)
def create_order(data: schemas.OrderCreate, db: Session = Depends(get_db)):
    order = order_service.create_order(db, data.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(order)
    return order


@router.post("/recompute")
def recompute_all(db: Session = Depends(get_db)):
    count = order_service.recompute_all_orders(db)
    db.commit()
    return {"ok": True, "recomputed": count}


@router.patch("/{order_id}", response_model=schemas.OrderOut)
def update_order(order_id: int, data: schemas.OrderUpdate, db: Session = Depends(get_db)):
    try:
        order = order_service.update_order(db, order_id, data.model_dump(exclude_unset=True))
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(order)
    return order


@router.delete("/{order_id}")
def delete_order(order_id: int, db: Session = Depends(get_db)):
    try:
        order_service.delete_order(db, order_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    return {"ok": True}


@router.patch("/{order_id}/cancel", response_model=schemas.OrderOut)
def cancel_order(order_id: int, data: schemas.OrderCancel, db: Session = Depends(get_db)):
    """Soft-cancel. Remarks are mandatory; cancelling twice is a conflict."""
    try:
        order = order_service.cancel_order(db, order_id, data.remarks)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(order)
    return order


@router.patch("/{order_id}/uncancel", response_model=schemas.OrderOut)
def uncancel_order(order_id: int, db: Session = Depends(get_db)):
    try:
        order = order_service.uncancel_order(db, order_id)
    except TrackerError as e:
        raise http_error(db, e)
    db.commit()
    db.refresh(order)
    return order


@router.post("/{order_id}/update-status", response_model=schemas.StatusOut)
def update_status(order_id: int, db: Session = Depends(get_db)):
    try:
        order = order_service.get_order(db, order_id)
    except TrackerError as e:
        raise http_error(db, e)
    order = order_service.recompute_order(db, order.id)
    db.commit()
    return {
        "ok": True,
        "status": order.status,
        "totals": {
            "sold_qty": order.fulfilled_qty_pcs or 0,
            "sold_weight": order.fulfilled_weight_kg or 0.0,
        },
    }
