from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from opportunity_automation.context import get_correlation_id
from opportunity_automation.core.auth import AuthUser, get_current_user as get_auth_user
from opportunity_automation.core.database import get_db
from opportunity_automation.crm.schemas import (
    AccountCreate,
    AccountRead,
    BatchResultRead,
    ContactCreate,
    ContactRead,
    OpportunityBatchCreateRequest,
    OpportunityBatchIdsRequest,
    OpportunityBatchUpdateRequest,
    OpportunityRead,
    TaskRead,
    UserCreate,
    UserRead,
)
from opportunity_automation.crm.service import ActorUser, OpportunityService, ReferenceDataService
from opportunity_automation.middleware.request_context import record_batch_summary

router = APIRouter(prefix="/api/crm", tags=["crm.reference_data"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
reference_data_service = ReferenceDataService()
opportunity_service = OpportunityService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _summarize(request: Request, result: BatchResultRead) -> BatchResultRead:
    record_batch_summary(request, result.operation, len(result.results), len(result.failed_ids))
    return result


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_permission(user, "crm.reference_data.write")
        return reference_data_service.create_user(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/accounts", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.reference_data.write")
        return reference_data_service.create_account(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_account_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.reference_data.write")
        return reference_data_service.create_contact(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.post("/opportunities/batch", response_model=BatchResultRead)
def insert_opportunities(
    request: Request,
    payload: OpportunityBatchCreateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BatchResultRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        result = opportunity_service.insert_opportunities(db, user, payload.records)
        return _summarize(request, result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_insert_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.patch("/opportunities/batch", response_model=BatchResultRead)
def update_opportunities(
    request: Request,
    payload: OpportunityBatchUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BatchResultRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        result = opportunity_service.update_opportunities(db, user, payload.records)
        return _summarize(request, result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.post("/opportunities/batch-delete", response_model=BatchResultRead)
def delete_opportunities(
    request: Request,
    payload: OpportunityBatchIdsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BatchResultRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        result = opportunity_service.delete_opportunities(db, user, payload.ids)
        return _summarize(request, result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.post("/opportunities/batch-undelete", response_model=BatchResultRead)
def undelete_opportunities(
    request: Request,
    payload: OpportunityBatchIdsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BatchResultRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        result = opportunity_service.undelete_opportunities(db, user, payload.ids)
        return _summarize(request, result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_undelete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@opportunities_router.get("/opportunities/{opportunity_id}/tasks", response_model=list[TaskRead])
def list_opportunity_tasks(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_tasks_for_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_tasks_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
