from __future__ import annotations

import logging
import uuid
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opportunity_automation.core.database import Base


logger = logging.getLogger("opportunity_automation.crm.store")

ModelT = TypeVar("ModelT", bound=Base)


@dataclass(frozen=True, slots=True)
class WriteResult:
    record_id: uuid.UUID | None
    success: bool
    error: str | None = None


class RecordStore(Protocol):
    def fetch(
        self,
        model: type[ModelT],
        *,
        where: Mapping[str, Any] | None = None,
        id_in: Collection[uuid.UUID | None] | None = None,
        field_in: Mapping[str, Collection[Any]] | None = None,
        order_by: Sequence[str] = (),
        include_deleted: bool = False,
    ) -> list[ModelT]: ...

    def fetch_map(
        self,
        model: type[ModelT],
        *,
        where: Mapping[str, Any] | None = None,
        id_in: Collection[uuid.UUID | None] | None = None,
        field_in: Mapping[str, Collection[Any]] | None = None,
        include_deleted: bool = False,
    ) -> dict[uuid.UUID, ModelT]: ...

    def insert(self, records: Sequence[Base]) -> list[WriteResult]: ...

    def update(self, model: type[ModelT], changes: Sequence[Mapping[str, Any]]) -> list[WriteResult]: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlAlchemyRecordStore:
    """Batched reads and writes over a single SQLAlchemy session.

    Membership filters drop ``None`` values, and an empty membership set
    short-circuits to an empty result without issuing a query. Soft-deleted
    rows (``deleted_at`` set) are hidden unless ``include_deleted`` is true.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch(
        self,
        model: type[ModelT],
        *,
        where: Mapping[str, Any] | None = None,
        id_in: Collection[uuid.UUID | None] | None = None,
        field_in: Mapping[str, Collection[Any]] | None = None,
        order_by: Sequence[str] = (),
        include_deleted: bool = False,
    ) -> list[ModelT]:
        stmt = self._build_query(
            model,
            where=where,
            id_in=id_in,
            field_in=field_in,
            include_deleted=include_deleted,
        )
        if stmt is None:
            return []
        for field_name in order_by:
            stmt = stmt.order_by(getattr(model, field_name).asc())
        return list(self.session.scalars(stmt).all())

    def fetch_map(
        self,
        model: type[ModelT],
        *,
        where: Mapping[str, Any] | None = None,
        id_in: Collection[uuid.UUID | None] | None = None,
        field_in: Mapping[str, Collection[Any]] | None = None,
        include_deleted: bool = False,
    ) -> dict[uuid.UUID, ModelT]:
        rows = self.fetch(
            model,
            where=where,
            id_in=id_in,
            field_in=field_in,
            include_deleted=include_deleted,
        )
        return {row.id: row for row in rows}  # type: ignore[attr-defined]

    def insert(self, records: Sequence[Base]) -> list[WriteResult]:
        if not records:
            return []
        self.session.add_all(records)
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.warning("store.insert_failed", extra={"record_count": len(records), "error": str(exc)})
            raise
        return [WriteResult(record_id=getattr(record, "id", None), success=True) for record in records]

    def update(self, model: type[ModelT], changes: Sequence[Mapping[str, Any]]) -> list[WriteResult]:
        if not changes:
            return []
        rows = self.fetch_map(model, id_in=[change.get("id") for change in changes])
        results: list[WriteResult] = []
        for change in changes:
            record_id = change.get("id")
            row = rows.get(record_id) if record_id is not None else None
            if row is None:
                results.append(WriteResult(record_id=record_id, success=False, error="record not found"))
                continue
            for field_name, value in change.items():
                if field_name == "id":
                    continue
                setattr(row, field_name, value)
            if hasattr(row, "row_version"):
                row.row_version = int(row.row_version) + 1
            results.append(WriteResult(record_id=record_id, success=True))
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.warning("store.update_failed", extra={"record_count": len(changes), "error": str(exc)})
            raise
        return results

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def _build_query(
        self,
        model: type[ModelT],
        *,
        where: Mapping[str, Any] | None,
        id_in: Collection[uuid.UUID | None] | None,
        field_in: Mapping[str, Collection[Any]] | None,
        include_deleted: bool,
    ) -> Select[tuple[ModelT]] | None:
        stmt: Select[tuple[ModelT]] = select(model)
        if id_in is not None:
            ids = {value for value in id_in if value is not None}
            if not ids:
                return None
            stmt = stmt.where(model.id.in_(ids))  # type: ignore[attr-defined]
        for field_name, values in (field_in or {}).items():
            members = {value for value in values if value is not None}
            if not members:
                return None
            stmt = stmt.where(getattr(model, field_name).in_(members))
        for field_name, value in (where or {}).items():
            column = getattr(model, field_name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        if not include_deleted and hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))  # type: ignore[attr-defined]
        return stmt
