"""
Users resource - /users

Every write is stamped with its author by AuditedRepository and
recorded in the secure audit log.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, status

from audit_backend.auth import get_audit_session, get_request_context
from audit_backend.database import Database, get_db
from audit_backend.models import (
    AuditSession,
    Event,
    LogOptions,
    RequestContext,
    UserCreate,
    UserFilter,
    UserPage,
    UserRecord,
    UserUpdate,
)
from audit_backend.repository import (
    AuditedRepository,
    Condition,
    PostgresRecordStore,
    RecordNotFound,
)
from audit_backend.routers.audit import get_audit_service
from audit_backend.services.audit_logs import AuditLogsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

USER_COLUMNS = ("name", "email", "organization_id", "created_by", "updated_by")


def get_user_repository(
    db: Database = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AuditedRepository:
    return AuditedRepository(PostgresRecordStore(db, "users", USER_COLUMNS), context)


def filter_conditions(query: UserFilter) -> List[Condition]:
    conditions: List[Condition] = []
    if query.id is not None:
        conditions.append(("id", "=", query.id))
    if query.organization_id is not None:
        conditions.append(("organization_id", "=", query.organization_id))
    if query.from_time is not None:
        conditions.append(("created_at", ">=", query.from_time))
    if query.to_time is not None:
        conditions.append(("created_at", "<=", query.to_time))
    if query.updated_from_time is not None:
        conditions.append(("updated_at", ">=", query.updated_from_time))
    if query.updated_to_time is not None:
        conditions.append(("updated_at", "<=", query.updated_to_time))
    return conditions


def _snapshot(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return UserRecord(**record).model_dump(mode="json") if record else None


async def _record(
    audit: AuditLogsService,
    session: AuditSession,
    action: str,
    target: Optional[str],
    old: Optional[Dict[str, Any]] = None,
    new: Optional[Dict[str, Any]] = None,
) -> None:
    event = Event(
        action=action,
        target=target,
        status="COMPLETED",
        message=action,
        old=_snapshot(old),
        new=_snapshot(new),
    )
    await audit.log(session, event, LogOptions(verbose=True))


@router.post("", response_model=UserRecord, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    repository: AuditedRepository = Depends(get_user_repository),
    session: AuditSession = Depends(get_audit_session),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """Create a user in the caller's organization."""
    try:
        record = await repository.create({
            **body.model_dump(),
            "organization_id": session.context.organization_id,
        })
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=409, detail="Email already registered")

    await _record(audit, session, "create_user", str(record["id"]), new=record)
    return UserRecord(**record)


@router.get("", response_model=UserPage)
async def list_users(
    query: UserFilter = Depends(),
    repository: AuditedRepository = Depends(get_user_repository),
    session: AuditSession = Depends(get_audit_session),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """List users, newest first unless order=ASC."""
    items, total = await repository.find_all(
        filter_conditions(query),
        descending=query.order == "DESC",
        offset=query.skip,
        limit=query.take,
    )
    await _record(audit, session, "find_all_users", "users")
    return UserPage(
        items=[UserRecord(**item) for item in items],
        count=total,
        skip=query.skip,
        take=query.take,
    )


@router.get("/{user_id}", response_model=UserRecord)
async def get_user(
    user_id: UUID,
    repository: AuditedRepository = Depends(get_user_repository),
):
    try:
        return UserRecord(**await repository.find_by_id_or_fail(user_id))
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="User not found")


@router.patch("/{user_id}", response_model=UserRecord)
async def update_user(
    user_id: UUID,
    body: UserUpdate,
    repository: AuditedRepository = Depends(get_user_repository),
    session: AuditSession = Depends(get_audit_session),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """Update a user; the audit event keeps the before and after state."""
    try:
        old = await repository.find_by_id_or_fail(user_id)
        record = await repository.update_by_id(
            user_id, body.model_dump(exclude_unset=True, exclude_none=True)
        )
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=409, detail="Email already registered")

    await _record(audit, session, "update_user", str(user_id), old=old, new=record)
    return UserRecord(**record)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: UUID,
    repository: AuditedRepository = Depends(get_user_repository),
    session: AuditSession = Depends(get_audit_session),
    audit: AuditLogsService = Depends(get_audit_service),
):
    old = await repository.find_by_id(user_id)
    if old is None or not await repository.soft_delete(user_id):
        raise HTTPException(status_code=404, detail="User not found")

    await _record(audit, session, "delete_user", str(user_id), old=old)
