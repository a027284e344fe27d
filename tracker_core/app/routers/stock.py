"""
Stock API Router
================
Read-only stock views. Availability is always derived from production minus
sales at query time.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..deps import get_db
from ..models import CircleStock, SourceType
from ..services.stock_service import (
    circle_stock_matches, circle_stock_rows, pl_stock_rows, scrap_only_rows, scrap_summary,
)

router = APIRouter(prefix="/api", tags=["Stock"])


@router.get("/circle-stock")
def list_circle_stock(
    q: Optional[str] = None,
    source_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """``source_type`` takes one value or a comma separated list."""
    types = [t.strip() for t in source_type.split(",") if t.strip()] if source_type else None
    return circle_stock_rows(db, source_types=types, q=q)


@router.get("/circle-stock-only")
def list_circle_stock_only(q: Optional[str] = None, db: Session = Depends(get_db)):
    return circle_stock_rows(db, source_types=[SourceType.CIRCLE.value, SourceType.PATTA.value], q=q)


@router.get("/patta-stock")
def list_patta_stock(q: Optional[str] = None, db: Session = Depends(get_db)):
    return circle_stock_rows(db, source_types=[SourceType.PATTA.value], q=q)


@router.get("/circle-stock/{stock_id}/matches")
def match_orders(stock_id: int, db: Session = Depends(get_db)):
    stock = db.get(CircleStock, stock_id)
    if stock is None:
        raise HTTPException(status_code=404, detail="Stock not found")
    return circle_stock_matches(db, stock)


@router.get("/pl-stock")
def list_pl_stock(q: Optional[str] = None, db: Session = Depends(get_db)):
    return pl_stock_rows(db, q)


@router.get("/scrap")
def get_scrap(db: Session = Depends(get_db)):
    return scrap_summary(db)


@router.get("/scrap-only")
def list_scrap_only(q: Optional[str] = None, db: Session = Depends(get_db)):
    return scrap_only_rows(db, q)
