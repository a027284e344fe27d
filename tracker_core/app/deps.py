from typing import Generator

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from .services.errors import TrackerError


def get_db(request: Request) -> Generator:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def http_error(db: Session, error: TrackerError) -> HTTPException:
    """Roll back the request's work and map a service error to its HTTP status."""
    db.rollback()
    return HTTPException(status_code=error.status_code, detail=str(error))
