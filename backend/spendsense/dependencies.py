"""
FastAPI dependencies.
"""

from typing import Generator
from sqlalchemy.orm import Session
from spendsense.database import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database sessions.
    Uncommitted work is rolled back when the session closes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
