"""Lifecycle dispatch for opportunity writes.

Every write path hands a whole batch to :class:`LifecycleDispatcher`, which
runs the rules registered for the matching :class:`TriggerPhase` in
declaration order. Rules in a ``before_*`` phase may reject individual
records and may mutate records in place before they are persisted. Rules in
an ``after_*`` phase run once the triggering write is committed; each runs
in its own auxiliary transaction and its failures are logged, never raised.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from opentelemetry import trace

from opportunity_automation.context import get_correlation_id
from opportunity_automation.core.config import Settings, get_settings
from opportunity_automation.crm.models import CRMOpportunity
from opportunity_automation.crm.notifications import NotificationService
from opportunity_automation.crm.repositories import RecordStore
from opportunity_automation.crm.schemas import OpportunityRead
from opportunity_automation.metrics import observe_recursion_skips, observe_trigger_rule, observe_trigger_rule_failure


logger = logging.getLogger("opportunity_automation.crm.triggers")
tracer = trace.get_tracer("opportunity_automation.crm.triggers")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerPhase(str, Enum):
    BEFORE_INSERT = "before_insert"
    AFTER_INSERT = "after_insert"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    AFTER_UNDELETE = "after_undelete"

    @property
    def is_before(self) -> bool:
        return self.value.startswith("before_")


@dataclass(frozen=True, slots=True)
class Rejection:
    record_id: uuid.UUID
    rule: str
    message: str


Rule = Callable[["TriggerContext"], Iterable[Rejection] | None]
RecordUpdater = Callable[[list[dict[str, Any]]], object]


@dataclass(frozen=True, slots=True)
class RegisteredRule:
    name: str
    func: Rule


class TriggerRegistry:
    def __init__(self) -> None:
        self._rules: dict[TriggerPhase, list[RegisteredRule]] = {phase: [] for phase in TriggerPhase}

    def register(self, *phases: TriggerPhase, name: str | None = None) -> Callable[[Rule], Rule]:
        if not phases:
            raise ValueError("at least one phase is required")

        def decorator(func: Rule) -> Rule:
            rule_name = name or func.__name__
            for phase in phases:
                if any(existing.name == rule_name for existing in self._rules[phase]):
                    raise ValueError(f"rule '{rule_name}' is already registered for {phase.value}")
                self._rules[phase].append(RegisteredRule(name=rule_name, func=func))
            return func

        return decorator

    def rules_for(self, phase: TriggerPhase) -> list[RegisteredRule]:
        return list(self._rules[phase])


@dataclass
class TriggerTransaction:
    """Records which (record, phase) pairs already ran in one logical write."""

    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    processed: set[tuple[uuid.UUID, TriggerPhase]] = field(default_factory=set)

    def claim(
        self,
        phase: TriggerPhase,
        records: Sequence[CRMOpportunity],
    ) -> tuple[list[CRMOpportunity], list[uuid.UUID]]:
        fresh: list[CRMOpportunity] = []
        skipped: list[uuid.UUID] = []
        for record in records:
            key = (record.id, phase)
            if key in self.processed:
                skipped.append(record.id)
                continue
            self.processed.add(key)
            fresh.append(record)
        return fresh, skipped


@dataclass
class TriggerContext:
    phase: TriggerPhase
    records: list[CRMOpportunity]
    old_records: Mapping[uuid.UUID, OpportunityRead]
    store: RecordStore
    notifier: NotificationService
    settings: Settings
    now: datetime
    transaction: TriggerTransaction
    update_records: RecordUpdater
    logger: logging.Logger

    @property
    def today(self) -> date:
        return self.now.date()


@dataclass
class PhaseOutcome:
    phase: TriggerPhase
    processed_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_ids: list[uuid.UUID] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)
    failed_rules: list[str] = field(default_factory=list)

    @property
    def rejected_ids(self) -> set[uuid.UUID]:
        return {rejection.record_id for rejection in self.rejections}

    def is_rejected(self, record_id: uuid.UUID) -> bool:
        return any(rejection.record_id == record_id for rejection in self.rejections)

    def errors_for(self, record_id: uuid.UUID) -> list[str]:
        return [rejection.message for rejection in self.rejections if rejection.record_id == record_id]


class LifecycleDispatcher:
    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationService,
        *,
        registry: TriggerRegistry,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        update_records: RecordUpdater | None = None,
        rule_logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock
        self.update_records = update_records or (lambda changes: store.update(CRMOpportunity, changes))
        self.rule_logger = rule_logger or logger

    def on_before_insert(
        self,
        records: Sequence[CRMOpportunity],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.BEFORE_INSERT, records, {}, transaction=transaction)

    def on_after_insert(
        self,
        records: Sequence[CRMOpportunity],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.AFTER_INSERT, records, {}, transaction=transaction)

    def on_before_update(
        self,
        records: Sequence[CRMOpportunity],
        old_records: Mapping[uuid.UUID, OpportunityRead],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.BEFORE_UPDATE, records, old_records, transaction=transaction)

    def on_after_update(
        self,
        records: Sequence[CRMOpportunity],
        old_records: Mapping[uuid.UUID, OpportunityRead],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.AFTER_UPDATE, records, old_records, transaction=transaction)

    def on_before_delete(
        self,
        records: Sequence[CRMOpportunity],
        old_records: Mapping[uuid.UUID, OpportunityRead],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.BEFORE_DELETE, records, old_records, transaction=transaction)

    def on_after_delete(
        self,
        records: Sequence[CRMOpportunity],
        old_records: Mapping[uuid.UUID, OpportunityRead],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.AFTER_DELETE, records, old_records, transaction=transaction)

    def on_after_undelete(
        self,
        records: Sequence[CRMOpportunity],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        return self.dispatch(TriggerPhase.AFTER_UNDELETE, records, {}, transaction=transaction)

    def dispatch(
        self,
        phase: TriggerPhase,
        records: Sequence[CRMOpportunity],
        old_records: Mapping[uuid.UUID, OpportunityRead],
        *,
        transaction: TriggerTransaction,
    ) -> PhaseOutcome:
        batch, skipped = transaction.claim(phase, records)
        outcome = PhaseOutcome(phase=phase, processed_ids=[record.id for record in batch], skipped_ids=skipped)
        if skipped:
            observe_recursion_skips(phase.value, len(skipped))
            logger.info(
                "trigger.recursion_guard.skipped",
                extra={"phase": phase.value, "skipped_count": len(skipped), "record_count": len(batch)},
            )
        if not batch:
            return outcome

        context = TriggerContext(
            phase=phase,
            records=batch,
            old_records={record.id: old_records[record.id] for record in batch if record.id in old_records},
            store=self.store,
            notifier=self.notifier,
            settings=self.settings,
            now=self.clock(),
            transaction=transaction,
            update_records=self.update_records,
            logger=self.rule_logger,
        )

        with tracer.start_as_current_span(f"trigger.{phase.value}") as span:
            span.set_attribute("phase", phase.value)
            span.set_attribute("record_count", len(batch))
            span.set_attribute("transaction_id", transaction.transaction_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            logger.info(
                "trigger.phase.started",
                extra={"phase": phase.value, "record_count": len(batch), "transaction_id": transaction.transaction_id},
            )

            for rule in self.registry.rules_for(phase):
                if phase.is_before:
                    self._run_before_rule(rule, context, outcome)
                else:
                    self._run_after_rule(rule, context, outcome)

            span.set_attribute("rejected_count", len(outcome.rejected_ids))
            logger.info(
                "trigger.phase.finished",
                extra={
                    "phase": phase.value,
                    "record_count": len(batch),
                    "rejected_count": len(outcome.rejected_ids),
                    "transaction_id": transaction.transaction_id,
                },
            )
        return outcome

    def _run_before_rule(self, rule: RegisteredRule, context: TriggerContext, outcome: PhaseOutcome) -> None:
        started = time.perf_counter()
        try:
            rejections = list(rule.func(context) or [])
        except Exception as exc:
            logger.exception(
                "trigger.rule.failed",
                extra={"phase": context.phase.value, "rule": rule.name, "error": str(exc)[:500]},
            )
            raise

        batch_ids = set(outcome.processed_ids)
        accepted = [rejection for rejection in rejections if rejection.record_id in batch_ids]
        outcome.rejections.extend(accepted)
        observe_trigger_rule(context.phase.value, rule.name, time.perf_counter() - started, len(accepted))
        if accepted:
            logger.info(
                "trigger.rule.rejected",
                extra={"phase": context.phase.value, "rule": rule.name, "rejected_count": len(accepted)},
            )

    def _run_after_rule(self, rule: RegisteredRule, context: TriggerContext, outcome: PhaseOutcome) -> None:
        started = time.perf_counter()
        try:
            rejections = list(rule.func(context) or [])
            self.store.commit()
        except Exception as exc:
            self.store.rollback()
            outcome.failed_rules.append(rule.name)
            observe_trigger_rule_failure(context.phase.value, rule.name)
            logger.exception(
                "trigger.rule.failed",
                extra={
                    "phase": context.phase.value,
                    "rule": rule.name,
                    "record_count": len(context.records),
                    "error": str(exc)[:500],
                },
            )
            return
        finally:
            observe_trigger_rule(context.phase.value, rule.name, time.perf_counter() - started)

        if rejections:
            logger.warning(
                "trigger.rule.rejection_ignored",
                extra={"phase": context.phase.value, "rule": rule.name, "rejected_count": len(rejections)},
            )
