from collections.abc import Iterator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, system_clock
from stockledger.db.session import SessionLocal


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return system_clock


def get_business_id(x_business_id: str = Header(..., alias="X-Business-ID")) -> str:
    business_id = x_business_id.strip()
    if not business_id:
        raise HTTPException(status_code=400, detail="X-Business-ID header is required")
    return business_id


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-ID")) -> str:
    cleaned = (x_actor_id or "").strip()
    return cleaned or "system"
