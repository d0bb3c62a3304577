from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opportunity_automation import audit, events
from opportunity_automation.core.config import get_settings
from opportunity_automation.crm import rules
from opportunity_automation.crm.models import CRMAccount, CRMContact, CRMOpportunity, CRMTask, CRMUser
from opportunity_automation.crm.notifications import NotificationService, build_notification_service
from opportunity_automation.crm.repositories import SqlAlchemyRecordStore
from opportunity_automation.crm.schemas import (
    AccountCreate,
    AccountRead,
    BatchResultRead,
    ContactCreate,
    ContactRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    RecordResultRead,
    TaskRead,
    UserCreate,
    UserRead,
)
from opportunity_automation.crm.triggers import (
    LifecycleDispatcher,
    PhaseOutcome,
    TriggerPhase,
    TriggerRegistry,
    TriggerTransaction,
)


logger = logging.getLogger("opportunity_automation.crm.service")
tracer = trace.get_tracer("opportunity_automation.crm.service")

NOT_FOUND_MESSAGE = "opportunity not found"
NOT_IN_RECYCLE_BIN_MESSAGE = "opportunity not found in recycle bin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class ReferenceDataService:
    def create_user(self, session: Session, dto: UserCreate) -> UserRead:
        user = CRMUser(**dto.model_dump())
        session.add(user)
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def create_account(self, session: Session, dto: AccountCreate) -> AccountRead:
        account = CRMAccount(**dto.model_dump())
        session.add(account)
        session.commit()
        session.refresh(account)
        return AccountRead.model_validate(account)

    def create_contact(self, session: Session, dto: ContactCreate) -> ContactRead:
        if dto.account_id is not None:
            account = session.scalar(select(CRMAccount).where(CRMAccount.id == dto.account_id))
            if account is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="account not found")
        contact = CRMContact(**dto.model_dump())
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)


class OpportunityService:
    """Write path for opportunities; every batch runs through the lifecycle dispatcher."""

    def __init__(
        self,
        *,
        registry: TriggerRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        notifier_factory: Callable[[Session], NotificationService] | None = None,
        rule_logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry or rules.registry
        self.clock = clock
        self.notifier_factory = notifier_factory or (
            lambda session: build_notification_service(get_settings().notification_backend, session)
        )
        self.rule_logger = rule_logger

    def insert_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        dtos: Sequence[OpportunityCreate],
    ) -> BatchResultRead:
        transaction = TriggerTransaction()
        store, dispatcher = self._dispatcher(session, actor_user, transaction)
        records = [CRMOpportunity(id=uuid.uuid4(), **dto.model_dump()) for dto in dtos]

        with tracer.start_as_current_span("opportunity.insert_batch") as span:
            span.set_attribute("record_count", len(records))
            before = dispatcher.on_before_insert(records, transaction=transaction)
            accepted = [record for record in records if not before.is_rejected(record.id)]
            self._record_rejected(
                actor_user,
                before,
                action="create",
                before_images={},
                transaction=transaction,
            )
            if accepted:
                store.insert(accepted)
                self._commit(session)
                self._record_committed(
                    actor_user,
                    accepted,
                    action="create",
                    phase=before.phase,
                    before={},
                    transaction=transaction,
                )
                dispatcher.on_after_insert(accepted, transaction=transaction)
            self._log_batch("insert", len(records), before)

        return BatchResultRead(
            operation="insert",
            results=[self._result(record.id, before) for record in records],
        )

    def update_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        dtos: Sequence[OpportunityUpdate],
        *,
        transaction: TriggerTransaction | None = None,
    ) -> BatchResultRead:
        transaction = transaction or TriggerTransaction()
        store, dispatcher = self._dispatcher(session, actor_user, transaction)

        with tracer.start_as_current_span("opportunity.update_batch") as span:
            span.set_attribute("record_count", len(dtos))
            rows = store.fetch_map(CRMOpportunity, id_in=[dto.id for dto in dtos])
            records: list[CRMOpportunity] = []
            old_records: dict[uuid.UUID, OpportunityRead] = {}
            for dto in dtos:
                row = rows.get(dto.id)
                if row is None:
                    continue
                if row.id not in old_records:
                    old_records[row.id] = OpportunityRead.model_validate(row)
                    records.append(row)
                for field_name, value in dto.model_dump(exclude_unset=True, exclude={"id"}).items():
                    setattr(row, field_name, value)

            before = dispatcher.on_before_update(records, old_records, transaction=transaction)
            self._record_rejected(
                actor_user,
                before,
                action="update",
                before_images=old_records,
                transaction=transaction,
            )
            accepted: list[CRMOpportunity] = []
            for row in records:
                if before.is_rejected(row.id):
                    session.expire(row)
                    continue
                row.row_version = int(row.row_version) + 1
                accepted.append(row)
            if accepted:
                self._commit(session)
                self._record_committed(
                    actor_user,
                    accepted,
                    action="update",
                    phase=before.phase,
                    before=old_records,
                    transaction=transaction,
                )
                dispatcher.on_after_update(accepted, old_records, transaction=transaction)
            self._log_batch("update", len(records), before)

        return BatchResultRead(
            operation="update",
            results=[
                self._result(dto.id, before) if dto.id in rows else self._missing(dto.id, NOT_FOUND_MESSAGE)
                for dto in dtos
            ],
        )

    def delete_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        ids: Sequence[uuid.UUID],
    ) -> BatchResultRead:
        transaction = TriggerTransaction()
        store, dispatcher = self._dispatcher(session, actor_user, transaction)

        with tracer.start_as_current_span("opportunity.delete_batch") as span:
            span.set_attribute("record_count", len(ids))
            rows = store.fetch_map(CRMOpportunity, id_in=ids)
            records = self._unique_rows(ids, rows)
            old_records = {row.id: OpportunityRead.model_validate(row) for row in records}

            before = dispatcher.on_before_delete(records, old_records, transaction=transaction)
            accepted = [row for row in records if not before.is_rejected(row.id)]
            self._record_rejected(
                actor_user,
                before,
                action="delete",
                before_images=old_records,
                transaction=transaction,
            )
            if accepted:
                deleted_at = self.clock()
                for row in accepted:
                    row.deleted_at = deleted_at
                    row.row_version = int(row.row_version) + 1
                self._commit(session)
                self._record_committed(
                    actor_user,
                    accepted,
                    action="delete",
                    phase=before.phase,
                    before=old_records,
                    transaction=transaction,
                )
                dispatcher.on_after_delete(accepted, old_records, transaction=transaction)
            self._log_batch("delete", len(records), before)

        return BatchResultRead(
            operation="delete",
            results=[
                self._result(record_id, before) if record_id in rows else self._missing(record_id, NOT_FOUND_MESSAGE)
                for record_id in ids
            ],
        )

    def undelete_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        ids: Sequence[uuid.UUID],
    ) -> BatchResultRead:
        transaction = TriggerTransaction()
        store, dispatcher = self._dispatcher(session, actor_user, transaction)

        with tracer.start_as_current_span("opportunity.undelete_batch") as span:
            span.set_attribute("record_count", len(ids))
            rows = {
                row_id: row
                for row_id, row in store.fetch_map(CRMOpportunity, id_in=ids, include_deleted=True).items()
                if row.deleted_at is not None
            }
            records = self._unique_rows(ids, rows)
            outcome = PhaseOutcome(phase=TriggerPhase.AFTER_UNDELETE)
            if records:
                for row in records:
                    row.deleted_at = None
                    row.row_version = int(row.row_version) + 1
                self._commit(session)
                self._record_committed(
                    actor_user,
                    records,
                    action="undelete",
                    phase=TriggerPhase.AFTER_UNDELETE,
                    before={},
                    transaction=transaction,
                )
                outcome = dispatcher.on_after_undelete(records, transaction=transaction)
            self._log_batch("undelete", len(records), outcome)

        return BatchResultRead(
            operation="undelete",
            results=[
                RecordResultRead(id=record_id, success=True)
                if record_id in rows
                else self._missing(record_id, NOT_IN_RECYCLE_BIN_MESSAGE)
                for record_id in ids
            ],
        )

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        row = session.scalar(
            select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id, CRMOpportunity.deleted_at.is_(None))
        )
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_MESSAGE)
        return OpportunityRead.model_validate(row)

    def list_tasks_for_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> list[TaskRead]:
        self.get_opportunity(session, opportunity_id)
        rows = session.scalars(
            select(CRMTask)
            .where(CRMTask.entity_type == "opportunity", CRMTask.entity_id == opportunity_id)
            .order_by(CRMTask.created_at.asc())
        ).all()
        return [TaskRead.model_validate(row) for row in rows]

    def _dispatcher(
        self,
        session: Session,
        actor_user: ActorUser,
        transaction: TriggerTransaction,
    ) -> tuple[SqlAlchemyRecordStore, LifecycleDispatcher]:
        store = SqlAlchemyRecordStore(session)

        def update_records(changes: list[dict[str, Any]]) -> BatchResultRead:
            return self.update_opportunities(
                session,
                actor_user,
                [OpportunityUpdate.model_validate(change) for change in changes],
                transaction=transaction,
            )

        dispatcher = LifecycleDispatcher(
            store,
            self.notifier_factory(session),
            registry=self.registry,
            settings=get_settings(),
            clock=self.clock,
            update_records=update_records,
            rule_logger=self.rule_logger,
        )
        return store, dispatcher

    def _unique_rows(
        self,
        ids: Sequence[uuid.UUID],
        rows: dict[uuid.UUID, CRMOpportunity],
    ) -> list[CRMOpportunity]:
        seen: set[uuid.UUID] = set()
        ordered: list[CRMOpportunity] = []
        for record_id in ids:
            row = rows.get(record_id)
            if row is None or record_id in seen:
                continue
            seen.add(record_id)
            ordered.append(row)
        return ordered

    def _result(self, record_id: uuid.UUID, outcome: PhaseOutcome) -> RecordResultRead:
        errors = outcome.errors_for(record_id)
        return RecordResultRead(id=record_id, success=not errors, errors=errors)

    def _missing(self, record_id: uuid.UUID, message: str) -> RecordResultRead:
        return RecordResultRead(id=record_id, success=False, errors=[message])

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("opportunity.batch.commit_failed")
            raise

    def _record_rejected(
        self,
        actor_user: ActorUser,
        outcome: PhaseOutcome,
        *,
        action: str,
        before_images: dict[uuid.UUID, OpportunityRead],
        transaction: TriggerTransaction,
    ) -> None:
        for record_id in sorted(outcome.rejected_ids, key=str):
            previous = before_images.get(record_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.opportunity",
                entity_id=str(record_id),
                action=action,
                before=previous.model_dump(mode="json") if previous is not None else None,
                after=None,
                correlation_id=actor_user.correlation_id,
                phase=outcome.phase.value,
                transaction_id=transaction.transaction_id,
                outcome=audit.OUTCOME_REJECTED,
                errors=outcome.errors_for(record_id),
            )

    def _record_committed(
        self,
        actor_user: ActorUser,
        records: Sequence[CRMOpportunity],
        *,
        action: str,
        phase: TriggerPhase,
        before: dict[uuid.UUID, OpportunityRead],
        transaction: TriggerTransaction,
    ) -> None:
        for record in records:
            after = OpportunityRead.model_validate(record)
            previous = before.get(record.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.opportunity",
                entity_id=str(record.id),
                action=action,
                before=previous.model_dump(mode="json") if previous is not None else None,
                after=after.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
                phase=phase.value,
                transaction_id=transaction.transaction_id,
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": f"crm.opportunity.{action}d",
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": actor_user.user_id,
                    "correlation_id": actor_user.correlation_id,
                    "version": 1,
                    "payload": {"opportunity_id": str(record.id), "row_version": after.row_version},
                }
            )

    def _log_batch(self, operation: str, record_count: int, outcome: PhaseOutcome) -> None:
        logger.info(
            "opportunity.batch.processed",
            extra={
                "phase": operation,
                "record_count": record_count,
                "rejected_count": len(outcome.rejected_ids),
                "skipped_count": len(outcome.skipped_ids),
            },
        )
