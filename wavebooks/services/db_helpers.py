# wavebooks/services/db_helpers.py
from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from wavebooks.extensions import db
from wavebooks.services.errors import NotFoundError


def commit_or_rollback(action: str) -> None:
    """Commit the session; rollback + log on failure and let the error propagate."""
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("%s failed", action)
        raise


def get_owned(model, user_id: int, obj_id, *, lock: bool = False):
    """
    Fetch a row belonging to `user_id` or raise NotFoundError.

    With lock=True the row is read with SELECT ... FOR UPDATE OF <table>
    (ignored by SQLite).
    """
    if obj_id is None:
        raise NotFoundError(f"{model.__name__} not found.", details={"id": obj_id})

    q = db.select(model).where(model.id == obj_id, model.user_id == user_id)
    if lock:
        q = q.with_for_update(of=model)
    obj = db.session.execute(q).unique().scalar_one_or_none()
    if obj is None:
        raise NotFoundError(f"{model.__name__} not found.", details={"id": obj_id})
    return obj
