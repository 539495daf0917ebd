import logging
import random
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from consensus.core.config import get_settings
from consensus.core.errors import EngineError, RetryableConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Postgres SQLSTATEs for serialization_failure and deadlock_detected.
_RETRYABLE_PGCODES = {"40001", "40P01"}
_RETRYABLE_MESSAGES = ("database is locked", "could not serialize", "deadlock detected", "lock timeout")


def is_retryable(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        # Unique-constraint races (double join, double vote row) resolve on retry.
        return True
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    message = str(exc.orig).lower()
    return isinstance(exc, OperationalError) and any(m in message for m in _RETRYABLE_MESSAGES)


def run_serializable(
    db: Session,
    work: Callable[[Session], T],
    *,
    attempts: Optional[int] = None,
    label: str = "transaction",
) -> T:
    """Run ``work`` in one serializable transaction and commit it.

    The whole unit is re-run on a serialization failure, deadlock or lock
    timeout, up to ``attempts`` times with jittered backoff. Engine errors
    roll back and propagate unchanged.
    """
    max_attempts = attempts or get_settings().max_transaction_retries
    for attempt in range(1, max_attempts + 1):
        if not db.in_transaction():
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        try:
            result = work(db)
            db.commit()
            return result
        except EngineError:
            db.rollback()
            raise
        except DBAPIError as exc:
            db.rollback()
            if not is_retryable(exc):
                raise
            logger.info("%s conflict on attempt %s/%s: %s", label, attempt, max_attempts, exc.orig)
            if attempt < max_attempts:
                time.sleep(random.uniform(0.01, 0.05) * attempt)
        except Exception:
            db.rollback()
            raise
    logger.warning("%s gave up after %s attempts", label, max_attempts)
    raise RetryableConflict()
