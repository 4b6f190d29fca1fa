"""
Concurrency helpers shared by the retry queue and the email rate counter.

PostgreSQL gets row locks (SKIP LOCKED) and RETURNING; SQLite falls back to
plain selects, so callers still claim rows with a conditional UPDATE.
"""

from typing import Any, List, Optional, Type, TypeVar
from sqlalchemy import update, func
from sqlalchemy.orm import Session

ModelT = TypeVar('ModelT')


def dialect_name(db: Session) -> str:
    bind = db.get_bind()
    return bind.dialect.name if bind is not None else ""


def is_postgres(db: Session) -> bool:
    return dialect_name(db) == 'postgresql'


def get_pending_with_skip_locked(
    db: Session,
    model: Type[ModelT],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> List[ModelT]:
    """
    Select a batch of queue rows. Two batch runs overlapping on PostgreSQL
    see disjoint rows until the selecting transaction ends.
    """
    query = db.query(model).filter(filter_condition)
    if isinstance(order_by, (list, tuple)):
        query = query.order_by(*order_by)
    elif order_by is not None:
        query = query.order_by(order_by)
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)
    return query.limit(limit).all()


class AtomicCounter:
    """Server-side `column = column + n` so concurrent senders never lose an increment"""

    @staticmethod
    def increment(
        db: Session,
        model: Type[ModelT],
        filter_condition,
        column_name: str,
        increment_by: int = 1
    ) -> int:
        """Increment and return the new value (0 when no row matched)"""
        column = getattr(model, column_name)
        stmt = (
            update(model)
            .where(filter_condition)
            .values({column_name: func.coalesce(column, 0) + increment_by})
            .execution_options(synchronize_session=False)
        )

        if is_postgres(db):
            row: Optional[Any] = db.execute(stmt.returning(column)).fetchone()
            return row[0] if row else 0

        db.execute(stmt)
        return db.query(column).filter(filter_condition).scalar() or 0
