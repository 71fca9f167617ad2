# rentledger/utils/db.py
from __future__ import annotations

from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import OperationalError

from rentledger.errors import NotFound
from rentledger.extensions import db

T = TypeVar("T")


# =========================================================
# Transaction runner (SAFE)
# =========================================================
def run_in_transaction(
    action: str,
    fn: Callable[[], T],
    *,
    attempts: int | None = None,
    retry_on: tuple[type[BaseException], ...] = (OperationalError,),
) -> T:
    """
    Run ``fn`` and commit, as one unit of work.

    - Any exception rolls the session back, so nothing is partially applied.
    - Exceptions listed in ``retry_on`` re-run ``fn`` from the beginning.
      ``fn`` must therefore re-load every row it touches on each call.
    """
    if attempts is None:
        attempts = current_app.config.get("TRANSACTION_RETRY_ATTEMPTS", 3)
    attempts = max(1, int(attempts))

    for attempt in range(1, attempts + 1):
        try:
            result = fn()
            db.session.commit()
            return result
        except retry_on as exc:
            db.session.rollback()
            if attempt >= attempts:
                current_app.logger.error("%s failed after %d attempts: %s", action, attempts, exc)
                raise
            current_app.logger.warning(
                "%s hit %s (attempt %d/%d); retrying",
                action,
                type(exc).__name__,
                attempt,
                attempts,
            )
        except Exception:
            db.session.rollback()
            raise

    raise RuntimeError(f"{action}: retry loop exited without result")  # pragma: no cover


def get_or_404(model, ident, label: str | None = None):
    obj = db.session.get(model, ident) if ident is not None else None
    if obj is None:
        raise NotFound(f"{label or model.__name__} {ident} not found")
    return obj


def lock_or_404(model, ident, label: str | None = None):
    """SELECT ... FOR UPDATE on a single row (no-op lock on SQLite)."""
    obj = (
        db.session.query(model)
        .filter(model.id == ident)
        .with_for_update(of=model)
        .populate_existing()
        .first()
    )
    if obj is None:
        raise NotFound(f"{label or model.__name__} {ident} not found")
    return obj
