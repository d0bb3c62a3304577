"""Opportunity trigger rules.

Rules are registered in the order they are declared below, which is the order
the dispatcher runs them in for a given phase. Each rule receives the whole
batch and issues at most one auxiliary query and one auxiliary write.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import timedelta
from decimal import Decimal

from opportunity_automation.crm.models import (
    CLOSED_WON_STAGE,
    CRMAccount,
    CRMContact,
    CRMOpportunity,
    CRMTask,
    CRMUser,
)
from opportunity_automation.crm.notifications import EmailMessage, NotificationError
from opportunity_automation.crm.triggers import Rejection, TriggerContext, TriggerPhase, TriggerRegistry
from opportunity_automation.metrics import observe_notification_failures


registry = TriggerRegistry()
opportunity_trigger = registry.register

CLOSED_WON_BANKING_DELETE_MESSAGE = "Cannot delete closed opportunity for a banking account that is won"
CLOSED_DELETE_MESSAGE = "Cannot delete closed opportunity"
REQUIRED_FIELDS = (("name", "Opportunity name"), ("stage_name", "Opportunity stage"))


def _first_contact_per_account(contacts: Iterable[CRMContact]) -> dict[uuid.UUID, CRMContact]:
    selected: dict[uuid.UUID, CRMContact] = {}
    for contact in contacts:
        if contact.account_id is not None and contact.account_id not in selected:
            selected[contact.account_id] = contact
    return selected


def _needs_primary_contact(records: Iterable[CRMOpportunity]) -> list[CRMOpportunity]:
    return [record for record in records if record.primary_contact_id is None and record.account_id is not None]


@opportunity_trigger(TriggerPhase.BEFORE_INSERT)
def apply_default_type(ctx: TriggerContext) -> None:
    for record in ctx.records:
        if not (record.type or "").strip():
            record.type = ctx.settings.default_opportunity_type


@opportunity_trigger(TriggerPhase.BEFORE_UPDATE)
def require_name_and_stage(ctx: TriggerContext) -> list[Rejection]:
    rejections: list[Rejection] = []
    for record in ctx.records:
        for field_name, label in REQUIRED_FIELDS:
            if not (getattr(record, field_name) or "").strip():
                rejections.append(
                    Rejection(record_id=record.id, rule="require_name_and_stage", message=f"{label} is required")
                )
    return rejections


@opportunity_trigger(TriggerPhase.BEFORE_INSERT, TriggerPhase.BEFORE_UPDATE)
def validate_minimum_amount(ctx: TriggerContext) -> list[Rejection]:
    minimum = ctx.settings.min_opportunity_amount
    message = f"Opportunity amount must be greater than {minimum}"
    rejections: list[Rejection] = []
    for record in ctx.records:
        amount = Decimal(record.amount) if record.amount is not None else Decimal("0")
        if amount < minimum:
            rejections.append(Rejection(record_id=record.id, rule="validate_minimum_amount", message=message))
    return rejections


@opportunity_trigger(TriggerPhase.BEFORE_UPDATE)
def append_stage_change_to_description(ctx: TriggerContext) -> None:
    for record in ctx.records:
        old = ctx.old_records.get(record.id)
        if old is None or old.stage_name == record.stage_name:
            continue
        entry = f"Stage Change:{record.stage_name}:{ctx.now.isoformat()}"
        record.description = f"{record.description}\n{entry}" if record.description else entry


@opportunity_trigger(TriggerPhase.BEFORE_UPDATE)
def backfill_ceo_primary_contact(ctx: TriggerContext) -> None:
    pending = _needs_primary_contact(ctx.records)
    if not pending:
        return

    # Alphabetically-first CEO per account.
    contacts = ctx.store.fetch(
        CRMContact,
        where={"title": ctx.settings.ceo_contact_title},
        field_in={"account_id": {record.account_id for record in pending}},
        order_by=("first_name",),
    )
    ceo_by_account = _first_contact_per_account(contacts)
    for record in pending:
        contact = ceo_by_account.get(record.account_id)  # type: ignore[arg-type]
        if contact is not None:
            record.primary_contact_id = contact.id


@opportunity_trigger(TriggerPhase.BEFORE_DELETE)
def prevent_closed_won_banking_deletion(ctx: TriggerContext) -> list[Rejection]:
    candidates = [
        record for record in ctx.records if record.stage_name == CLOSED_WON_STAGE and record.account_id is not None
    ]
    if not candidates:
        return []

    accounts = ctx.store.fetch_map(CRMAccount, id_in={record.account_id for record in candidates})
    rejections: list[Rejection] = []
    for record in candidates:
        account = accounts.get(record.account_id)  # type: ignore[arg-type]
        if account is None or account.industry != ctx.settings.protected_account_industry:
            continue
        rejections.append(
            Rejection(
                record_id=record.id,
                rule="prevent_closed_won_banking_deletion",
                message=CLOSED_WON_BANKING_DELETE_MESSAGE,
            )
        )
    return rejections


@opportunity_trigger(TriggerPhase.BEFORE_DELETE)
def prevent_closed_opportunity_deletion(ctx: TriggerContext) -> list[Rejection]:
    if not ctx.settings.block_closed_opportunity_deletion:
        return []
    return [
        Rejection(record_id=record.id, rule="prevent_closed_opportunity_deletion", message=CLOSED_DELETE_MESSAGE)
        for record in ctx.records
        if record.is_closed
    ]


@opportunity_trigger(TriggerPhase.AFTER_INSERT)
def create_follow_up_tasks(ctx: TriggerContext) -> None:
    due_date = ctx.today + timedelta(days=ctx.settings.follow_up_task_due_in_days)
    tasks = [
        CRMTask(
            subject=ctx.settings.follow_up_task_subject,
            entity_type="opportunity",
            entity_id=record.id,
            assigned_contact_id=record.primary_contact_id,
            owner_user_id=record.owner_user_id,
            due_date=due_date,
            status="Open",
        )
        for record in ctx.records
    ]
    if not tasks:
        return
    ctx.store.insert(tasks)
    ctx.logger.info("trigger.follow_up_tasks.created", extra={"record_count": len(tasks)})


def _deletion_message(recipient: str, records: list[CRMOpportunity]) -> EmailMessage:
    names = [record.name for record in records]
    if len(records) == 1:
        subject = f"Opportunity Deleted : {names[0]}"
    else:
        subject = f"Opportunities Deleted : {', '.join(names)}"
    body = "\n".join(f"Your Opportunity: {name} has been deleted." for name in names)
    return EmailMessage(
        recipient_address=recipient,
        subject=subject,
        body=body,
        entity_id=records[0].id if len(records) == 1 else None,
    )


@opportunity_trigger(TriggerPhase.AFTER_DELETE)
def notify_owners_on_deletion(ctx: TriggerContext) -> None:
    records_by_owner: dict[uuid.UUID, list[CRMOpportunity]] = {}
    for record in ctx.records:
        if record.owner_user_id is not None:
            records_by_owner.setdefault(record.owner_user_id, []).append(record)
    if not records_by_owner:
        return

    owners = ctx.store.fetch_map(CRMUser, id_in=records_by_owner.keys())
    messages: list[EmailMessage] = []
    for owner_id, owned in records_by_owner.items():
        owner = owners.get(owner_id)
        if owner is None or not owner.email:
            continue
        messages.append(_deletion_message(owner.email, owned))
    if not messages:
        return

    try:
        outcomes = ctx.notifier.send(messages)
    except NotificationError as exc:
        observe_notification_failures("send_error", len(messages))
        ctx.logger.warning(
            "notification.send_failed",
            extra={"message_count": len(messages), "error": str(exc)[:500]},
        )
        return

    for outcome in outcomes:
        if outcome.success:
            continue
        observe_notification_failures("rejected")
        ctx.logger.warning(
            "notification.send_failed",
            extra={"recipient": outcome.recipient_address, "error": outcome.error},
        )


@opportunity_trigger(TriggerPhase.AFTER_UNDELETE)
def backfill_vp_sales_primary_contact(ctx: TriggerContext) -> None:
    pending = _needs_primary_contact(ctx.records)
    if not pending:
        return

    # No ordering: the first match returned per account wins.
    contacts = ctx.store.fetch(
        CRMContact,
        where={"title": ctx.settings.vp_sales_contact_title},
        field_in={"account_id": {record.account_id for record in pending}},
    )
    vp_by_account = _first_contact_per_account(contacts)
    changes = [
        {"id": record.id, "primary_contact_id": vp_by_account[record.account_id].id}
        for record in pending
        if record.account_id in vp_by_account
    ]
    if changes:
        ctx.update_records(changes)
