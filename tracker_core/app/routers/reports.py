from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..deps import get_db
from ..services import report_service

router = APIRouter(prefix="/api", tags=["Reports"])


@router.get("/dashboard")
def get_dashboard(db: Session = Depends(get_db)):
    return report_service.dashboard(db)


@router.get("/dashboard/profitability")
def get_profitability(db: Session = Depends(get_db)):
    """Fully sold coils only: purchase cost, revenue and profit."""
    return report_service.profitability(db)


@router.get("/yield")
def get_yield(db: Session = Depends(get_db)):
    return report_service.yield_report(db)
