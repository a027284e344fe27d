from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(prefix="/api", tags=["Health"])


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/_health/db")
def health_db(request: Request):
    try:
        return request.app.state.database.ping()
    except SQLAlchemyError as e:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {e.__class__.__name__}")
