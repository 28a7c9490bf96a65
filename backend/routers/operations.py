# routers/operations.py — Start compose operations and read the caller's operation logs
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agent_client import agent_call
from api_keys import APIKeyService
from auth import CurrentUser, get_current_user
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Forbidden, ok
from operations import OperationAuditService, OperationRequest, operation_to_dict, required_permission
from routers.stacks import stack_target

router = APIRouter(prefix="/api/v1", tags=["Operations"])

OPERATION_LOGS_SCOPE = "logs.operations.read"


@router.post("/servers/{server_id}/stacks/{stack_name}/operations")
async def start_operation(
    server_id: int,
    stack_name: str,
    body: OperationRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Hand a compose command to the agent. Output streams over the operations WebSocket."""
    server = await stack_target(db, user, server_id, stack_name, required_permission(body.command))
    result = await agent_call(container.operations.start(db, user, server, stack_name, body, request))
    return ok(result)


class BatchRequest(BaseModel):
    operations: List[OperationRequest] = Field(min_length=1, max_length=20)


@router.post("/servers/{server_id}/stacks/{stack_name}/operations/batch")
async def start_batch(
    server_id: int,
    stack_name: str,
    body: BatchRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Queue several commands on one stack. They run in order; a failure cancels the rest."""
    server = None
    for permission in sorted({required_permission(op.command) for op in body.operations}):
        server = await stack_target(db, user, server_id, stack_name, permission)
    result = await agent_call(
        container.operations.start_batch(db, user, server, stack_name, body.operations, request)
    )
    return ok(result)


async def _require_log_scope(db: AsyncSession, user: CurrentUser) -> None:
    if user.is_api_key and not await APIKeyService(db).has_scope_permission(user.api_key_id, OPERATION_LOGS_SCOPE):
        raise Forbidden(f"API key scope does not include {OPERATION_LOGS_SCOPE}", error="insufficient_scope")


@router.get("/operation-logs")
async def list_my_operation_logs(
    server_id: Optional[int] = None,
    stack_name: Optional[str] = None,
    command: Optional[str] = None,
    status: Optional[str] = Query(default=None, pattern="^(queued|running|completed|failed|timeout)$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_log_scope(db, user)
    rows, total = await OperationAuditService(db).list_logs(
        user_id=user.id, server_id=server_id, stack_name=stack_name,
        command=command, status=status, page=page, page_size=page_size,
    )
    return ok({
        "logs": [operation_to_dict(r) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    })


@router.get("/operation-logs/stats")
async def my_operation_stats(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_log_scope(db, user)
    return ok(await OperationAuditService(db).stats(user_id=user.id))


@router.get("/operation-logs/{log_id}")
async def get_my_operation_log(
    log_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_log_scope(db, user)
    audit = OperationAuditService(db)
    row = await audit.get(log_id, user_id=user.id)
    return ok(operation_to_dict(row, await audit.messages(row.id)))
