"""FastAPI dependency injection: database sessions, scheduler, tracker."""
from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from pushcast.core.errors import ConfigurationError, InvalidTransitionError, NotFoundError, StoreError
from pushcast.db.session import get_session_factory
from pushcast.dispatch.tracking import DeliveryTracker
from pushcast.scheduling.scheduler import CampaignScheduler

_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConfigurationError, 422),
    (StoreError, 503),
)


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_scheduler(request: Request) -> CampaignScheduler:
    """Return the scheduler created by the application lifespan."""
    return request.app.state.scheduler


def get_tracker(db: Session = Depends(get_db)) -> DeliveryTracker:
    return DeliveryTracker(db)


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate engine errors raised inside the block into HTTP errors."""
    try:
        yield
    except tuple(error for error, _ in _ERROR_STATUS) as exc:
        status_code = next(code for error, code in _ERROR_STATUS if isinstance(exc, error))
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc
