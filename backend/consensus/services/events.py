import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consensus.core.timeutil import utcnow
from consensus.models.event import Event

logger = logging.getLogger(__name__)

VOTE_CAST = "vote_cast"
COMMENT_UP_POLLINATE = "comment_up_pollinate"
TIER_ADVANCED = "deliberation_tier_advanced"
CHAMPION = "deliberation_champion"


@dataclass
class PendingEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[uuid.UUID] = None


def log_event(
    db: Session,
    *,
    event_type: str,
    payload: dict[str, Any],
    actor_id: Optional[uuid.UUID] = None,
) -> Event:
    event = Event(
        type=event_type,
        payload=payload,
        actor_id=actor_id,
        created_at=utcnow(),
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def emit_event(
    db: Session,
    *,
    event_type: str,
    payload: dict[str, Any],
    actor_id: Optional[uuid.UUID] = None,
) -> Optional[Event]:
    """Write an outbox row in a session of its own.

    Called after the engine transaction committed; a failure here is logged
    and never propagates into the caller.
    """
    outbox = Session(bind=db.get_bind())
    try:
        return log_event(outbox, event_type=event_type, payload=payload, actor_id=actor_id)
    except SQLAlchemyError:
        outbox.rollback()
        logger.exception("Failed to record %s event", event_type)
        return None
    finally:
        outbox.close()


def emit_all(db: Session, events: Iterable[PendingEvent]) -> None:
    for pending in events:
        emit_event(db, event_type=pending.type, payload=pending.payload, actor_id=pending.actor_id)
