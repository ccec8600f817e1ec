from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StorageError


class AnalyticsStore:
    """
    Read/write seam the funnel and cohort engines run against.

    Criteria are plain SQLAlchemy boolean clauses, conjoined. Every database
    failure leaves this class as StorageError and is not retried here.
    """

    def __init__(self, db: Session):
        self.db = db

    def distinct(self, column, *criteria) -> List[Any]:
        stmt = select(column).where(*criteria).distinct()
        return list(self._run(lambda: self.db.execute(stmt).scalars().all()))

    def find(self, columns: Sequence, *criteria, order_by: Optional[Iterable] = None,
             limit: Optional[int] = None) -> List[Any]:
        stmt = select(*columns).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._run(lambda: self.db.execute(stmt).all()))

    def all(self, model, *criteria, order_by: Optional[Iterable] = None) -> List[Any]:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        return list(self._run(lambda: self.db.execute(stmt).scalars().all()))

    def count(self, entity, *criteria) -> int:
        stmt = select(func.count()).select_from(entity).where(*criteria)
        return int(self._run(lambda: self.db.execute(stmt).scalar()) or 0)

    def get(self, model, ident):
        return self._run(lambda: self.db.get(model, ident))

    def add(self, obj) -> None:
        self.db.add(obj)

    def delete(self, obj) -> None:
        self._run(lambda: self.db.delete(obj))

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"commit failed: {e}") from e

    def _run(self, fn):
        try:
            return fn()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"query failed: {e}") from e
