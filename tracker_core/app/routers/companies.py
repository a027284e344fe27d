from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import models, schemas
from ..deps import get_db

router = APIRouter(prefix="/api/companies", tags=["Companies"])


@router.post("", response_model=schemas.CompanyOut, status_code=201)
def create_company(company_in: schemas.CompanyCreate, db: Session = Depends(get_db)):
    if not company_in.name or not company_in.name.strip():
        raise HTTPException(status_code=400, detail="Company name is required")
    company = models.Company(
        name=company_in.name.strip(),
        country=company_in.country,
        city=company_in.city,
        email=company_in.email,
        phone=company_in.phone,
    )
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


@router.get("", response_model=List[schemas.CompanyOut])
def list_companies(db: Session = Depends(get_db)):
    return db.query(models.Company).order_by(models.Company.name).all()


@router.delete("/{company_id}")
def delete_company(company_id: int, db: Session = Depends(get_db)):
    company = db.query(models.Company).filter(models.Company.id == company_id).first()
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")
    db.delete(company)
    db.commit()
    return {"ok": True}
