from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from services.errors import Conflict, UpstreamUnavailable


STORE_LOGGER = logging.getLogger("lab_lending.store")


@contextmanager
def store_call(db: Session, operation: str) -> Iterator[Session]:
    """One durable call against the store: everything inside commits together or not at all."""
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        STORE_LOGGER.warning("Store call rejected operation=%s error=%s", operation, exc.orig)
        raise Conflict(f"Constraint violated during {operation}.", operation=operation) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        STORE_LOGGER.error("Store call failed operation=%s error=%s", operation, exc)
        raise UpstreamUnavailable(f"Store unavailable during {operation}: {exc}", operation=operation) from exc
    except Exception:
        db.rollback()
        raise
