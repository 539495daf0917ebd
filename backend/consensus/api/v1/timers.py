import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from consensus.api.v1.participants import get_db
from consensus.core.config import get_settings
from consensus.services import timers


logger = logging.getLogger(__name__)

router = APIRouter()


def require_admin_key(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    if not x_admin_key or not hmac.compare_digest(x_admin_key, get_settings().admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


@router.post("/process", dependencies=[Depends(require_admin_key)])
def process_timers(db: Session = Depends(get_db)) -> dict:
    """Run every deadline sweep once; called by the external scheduler."""
    factory = sessionmaker(bind=db.get_bind(), autoflush=False)
    return timers.process_all_timers(factory).as_dict()


@router.get("/health")
def health(db: Session = Depends(get_db)) -> dict:
    report = timers.timer_health(db)
    if report["status"] != "ok":
        logger.warning("Timer processing is behind: %s", report["overdue"])
    return report
