from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from opportunity_automation.core.config import Settings, get_settings
from opportunity_automation.crm.models import CRMOpportunity
from opportunity_automation.crm.notifications import InMemoryNotificationService
from opportunity_automation.crm.triggers import (
    LifecycleDispatcher,
    Rejection,
    TriggerContext,
    TriggerPhase,
    TriggerRegistry,
    TriggerTransaction,
)


FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0
        self.fetch_calls = 0
        self.updates: list[list[dict[str, Any]]] = []

    def fetch(self, model: Any, **kwargs: Any) -> list[Any]:
        self.fetch_calls += 1
        return []

    def fetch_map(self, model: Any, **kwargs: Any) -> dict[uuid.UUID, Any]:
        self.fetch_calls += 1
        return {}

    def insert(self, records: Any) -> list[Any]:
        return []

    def update(self, model: Any, changes: Any) -> list[Any]:
        self.updates.append([dict(change) for change in changes])
        return []

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


def _dispatcher(store: FakeStore, registry: TriggerRegistry) -> LifecycleDispatcher:
    return LifecycleDispatcher(
        store,
        InMemoryNotificationService(),
        registry=registry,
        settings=Settings(),
        clock=lambda: FIXED_NOW,
    )


def _opportunity(name: str = "Deal", amount: str = "6000") -> CRMOpportunity:
    return CRMOpportunity(id=uuid.uuid4(), name=name, amount=Decimal(amount), stage_name="Prospecting")


def test_registry_rejects_duplicate_rule_names() -> None:
    registry = TriggerRegistry()

    @registry.register(TriggerPhase.BEFORE_INSERT)
    def check(ctx: TriggerContext) -> None:
        return None

    with pytest.raises(ValueError):
        registry.register(TriggerPhase.BEFORE_INSERT, name="check")(lambda ctx: None)

    # Same name on another phase is fine.
    registry.register(TriggerPhase.BEFORE_UPDATE, name="check")(lambda ctx: None)
    assert [rule.name for rule in registry.rules_for(TriggerPhase.BEFORE_UPDATE)] == ["check"]


def test_rules_run_in_registration_order_with_whole_batch(store: FakeStore) -> None:
    registry = TriggerRegistry()
    calls: list[tuple[str, int]] = []

    @registry.register(TriggerPhase.BEFORE_INSERT)
    def first(ctx: TriggerContext) -> None:
        calls.append(("first", len(ctx.records)))

    @registry.register(TriggerPhase.BEFORE_INSERT)
    def second(ctx: TriggerContext) -> None:
        calls.append(("second", len(ctx.records)))

    records = [_opportunity("A"), _opportunity("B"), _opportunity("C")]
    outcome = _dispatcher(store, registry).on_before_insert(records, transaction=TriggerTransaction())

    assert calls == [("first", 3), ("second", 3)]
    assert outcome.processed_ids == [record.id for record in records]
    assert outcome.rejections == []


def test_rejections_accumulate_per_record_and_ignore_foreign_ids(store: FakeStore) -> None:
    registry = TriggerRegistry()
    stranger = uuid.uuid4()

    @registry.register(TriggerPhase.BEFORE_UPDATE)
    def too_small(ctx: TriggerContext) -> list[Rejection]:
        return [Rejection(record_id=ctx.records[0].id, rule="too_small", message="too small")]

    @registry.register(TriggerPhase.BEFORE_UPDATE)
    def everything(ctx: TriggerContext) -> list[Rejection]:
        rejections = [Rejection(record_id=record.id, rule="everything", message="no") for record in ctx.records]
        rejections.append(Rejection(record_id=stranger, rule="everything", message="not in batch"))
        return rejections

    first, second = _opportunity("A"), _opportunity("B")
    outcome = _dispatcher(store, registry).on_before_update([first, second], {}, transaction=TriggerTransaction())

    assert outcome.errors_for(first.id) == ["too small", "no"]
    assert outcome.errors_for(second.id) == ["no"]
    assert outcome.rejected_ids == {first.id, second.id}
    assert not outcome.is_rejected(stranger)


def test_before_phase_rule_error_propagates(store: FakeStore, caplog: pytest.LogCaptureFixture) -> None:
    registry = TriggerRegistry()

    @registry.register(TriggerPhase.BEFORE_DELETE)
    def broken(ctx: TriggerContext) -> None:
        raise RuntimeError("lookup failed")

    caplog.set_level(logging.INFO)
    with pytest.raises(RuntimeError):
        _dispatcher(store, registry).on_before_delete([_opportunity()], {}, transaction=TriggerTransaction())

    assert any(record.getMessage() == "trigger.rule.failed" for record in caplog.records)
    assert store.rollbacks == 0


def test_after_phase_failure_rolls_back_and_later_rules_still_run(
    store: FakeStore,
    caplog: pytest.LogCaptureFixture,
) -> None:
    registry = TriggerRegistry()
    ran: list[str] = []

    @registry.register(TriggerPhase.AFTER_INSERT)
    def explode(ctx: TriggerContext) -> None:
        raise RuntimeError("downstream unavailable")

    @registry.register(TriggerPhase.AFTER_INSERT)
    def follow_up(ctx: TriggerContext) -> None:
        ran.append("follow_up")

    caplog.set_level(logging.INFO)
    outcome = _dispatcher(store, registry).on_after_insert([_opportunity()], transaction=TriggerTransaction())

    assert outcome.failed_rules == ["explode"]
    assert ran == ["follow_up"]
    assert store.rollbacks == 1
    assert store.commits == 1
    failures = [record for record in caplog.records if record.getMessage() == "trigger.rule.failed"]
    assert failures
    assert getattr(failures[0], "rule", None) == "explode"
    assert getattr(failures[0], "phase", None) == "after_insert"


def test_recursion_guard_skips_second_dispatch_in_same_transaction(store: FakeStore) -> None:
    registry = TriggerRegistry()
    seen: list[uuid.UUID] = []

    @registry.register(TriggerPhase.BEFORE_UPDATE)
    def track(ctx: TriggerContext) -> None:
        seen.extend(record.id for record in ctx.records)

    dispatcher = _dispatcher(store, registry)
    transaction = TriggerTransaction()
    first, second = _opportunity("A"), _opportunity("B")

    dispatcher.on_before_update([first], {}, transaction=transaction)
    outcome = dispatcher.on_before_update([first, second], {}, transaction=transaction)

    assert seen == [first.id, second.id]
    assert outcome.skipped_ids == [first.id]
    assert outcome.processed_ids == [second.id]

    # A fresh transaction sees the record again.
    dispatcher.on_before_update([first], {}, transaction=TriggerTransaction())
    assert seen == [first.id, second.id, first.id]


def test_recursion_guard_is_per_phase(store: FakeStore) -> None:
    registry = TriggerRegistry()
    phases: list[TriggerPhase] = []

    @registry.register(TriggerPhase.BEFORE_UPDATE, TriggerPhase.AFTER_UPDATE)
    def track(ctx: TriggerContext) -> None:
        phases.append(ctx.phase)

    dispatcher = _dispatcher(store, registry)
    transaction = TriggerTransaction()
    record = _opportunity()

    dispatcher.on_before_update([record], {}, transaction=transaction)
    dispatcher.on_after_update([record], {}, transaction=transaction)

    assert phases == [TriggerPhase.BEFORE_UPDATE, TriggerPhase.AFTER_UPDATE]


def test_context_carries_old_records_and_clock(store: FakeStore) -> None:
    registry = TriggerRegistry()
    captured: list[TriggerContext] = []

    @registry.register(TriggerPhase.BEFORE_DELETE)
    def capture(ctx: TriggerContext) -> None:
        captured.append(ctx)

    record = _opportunity()
    old = {record.id: object(), uuid.uuid4(): object()}
    _dispatcher(store, registry).on_before_delete([record], old, transaction=TriggerTransaction())  # type: ignore[arg-type]

    assert len(captured) == 1
    ctx = captured[0]
    assert list(ctx.old_records) == [record.id]
    assert ctx.now == FIXED_NOW
    assert ctx.today.isoformat() == "2026-03-02"


def test_default_record_updater_writes_through_store(store: FakeStore) -> None:
    registry = TriggerRegistry()
    record = _opportunity()

    @registry.register(TriggerPhase.AFTER_UNDELETE)
    def touch(ctx: TriggerContext) -> None:
        ctx.update_records([{"id": record.id, "description": "restored"}])

    _dispatcher(store, registry).on_after_undelete([record], transaction=TriggerTransaction())

    assert store.updates == [[{"id": record.id, "description": "restored"}]]
    assert store.commits == 1
