# routers/webhooks.py — Webhook management and the unauthenticated trigger endpoint
# Triggers carry the webhook secret in the body and act as the webhook's owner.
import asyncio
import logging
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from agent_client import agent_call
from auth import CurrentUser, require_interactive_user, require_permission
from compose_engine import ComposeError, ComposeService
from container import ServiceContainer, get_container
from database import get_db_session
from errors import APIError, ValidationFailed, ok
from operations import OperationAuditService, OperationRequest
from security_audit import SecurityAuditService, SecurityEvent
from webhooks import WebhookCreate, WebhookService, WebhookTrigger, WebhookUpdate, webhook_to_dict

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])
admin_router = APIRouter(prefix="/api/v1/admin/webhooks", tags=["Admin"])
logger = logging.getLogger("berth.webhooks")

WAIT_TIMEOUT_SECONDS = 300


@router.get("")
async def list_webhooks(
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
):
    return ok([webhook_to_dict(h) for h in await WebhookService(db).list_for_user(user.id)])


@router.post("")
async def create_webhook(
    body: WebhookCreate,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    hook, raw = await WebhookService(db).create(user.id, body)
    data = webhook_to_dict(hook)
    data["api_key"] = raw
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_CREATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="webhook",
        target_id=hook.id,
        target_name=hook.name,
        metadata={"stack_pattern": hook.stack_pattern, "server_ids": data["server_ids"]},
    )
    await db.commit()
    return ok(data, "Store this key now; it cannot be shown again")


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: int,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(webhook_to_dict(await WebhookService(db).get_for_user(user.id, webhook_id)))


@router.patch("/{webhook_id}")
async def update_webhook(
    webhook_id: int,
    body: WebhookUpdate,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    service = WebhookService(db)
    hook = await service.update(await service.get_for_user(user.id, webhook_id), body)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_UPDATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="webhook",
        target_id=hook.id,
        target_name=hook.name,
        metadata={"fields": sorted(body.model_dump(exclude_unset=True))},
    )
    await db.commit()
    return ok(webhook_to_dict(hook))


@router.post("/{webhook_id}/regenerate-key")
async def regenerate_webhook_key(
    webhook_id: int,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    service = WebhookService(db)
    hook = await service.get_for_user(user.id, webhook_id)
    raw = await service.regenerate(hook)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_KEY_REGENERATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="webhook",
        target_id=hook.id,
        target_name=hook.name,
    )
    await db.commit()
    data = webhook_to_dict(hook)
    data["api_key"] = raw
    return ok(data, "Store this key now; it cannot be shown again")


@router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: int,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    service = WebhookService(db)
    hook = await service.get_for_user(user.id, webhook_id)
    name = hook.name
    await service.delete(hook)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_DELETED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="webhook",
        target_id=webhook_id,
        target_name=name,
    )
    await db.commit()
    return ok(message="Webhook deleted")


# ============================================================
# TRIGGER
# ============================================================

async def _audit_trigger_failure(db, container, request, event, webhook_id, body, reason):
    await SecurityAuditService(db, container.outbox).log(
        event,
        request=request,
        success=False,
        target_type="webhook",
        target_id=webhook_id,
        target_name=body.stack_name,
        failure_reason=reason,
        server_id=body.server_id,
        stack_name=body.stack_name,
        metadata={"command": body.command},
    )
    await db.commit()


@router.post("/{webhook_id}/trigger")
async def trigger_webhook(
    webhook_id: int,
    body: WebhookTrigger,
    request: Request,
    wait: bool = Query(default=False),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Queue a compose command for CI. With ?wait=true, hold the request until it finishes."""
    service = WebhookService(db)
    try:
        hook = await service.authenticate(webhook_id, body.api_key)
    except APIError as e:
        await _audit_trigger_failure(
            db, container, request, SecurityEvent.WEBHOOK_AUTH_FAILED, webhook_id, body, e.message
        )
        raise
    try:
        server, owner = await service.authorize(hook, body.server_id, body.stack_name, body.command)
    except APIError as e:
        await _audit_trigger_failure(
            db, container, request, SecurityEvent.WEBHOOK_TRIGGER_FAILED, webhook_id, body, e.message
        )
        raise

    if body.compose_changes and body.compose_changes.service_image_updates:
        updates = [u.model_dump() for u in body.compose_changes.service_image_updates]
        try:
            await agent_call(
                ComposeService(container.agents).update_images(server, body.stack_name, updates, False)
            )
        except ComposeError as e:
            await _audit_trigger_failure(
                db, container, request, SecurityEvent.WEBHOOK_TRIGGER_FAILED, webhook_id, body, str(e)
            )
            raise ValidationFailed(str(e))

    await service.record_use(hook)
    await db.commit()
    operation = OperationRequest(command=body.command, options=body.options, services=body.services)
    result = await agent_call(
        container.operations.start(db, owner, server, body.stack_name, operation, request, webhook_id=hook.id)
    )
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_TRIGGERED,
        request=request,
        actor_user_id=owner.id,
        actor_username=owner.username,
        target_type="webhook",
        target_id=hook.id,
        target_name=hook.name,
        server_id=server.id,
        stack_name=body.stack_name,
        metadata={
            "command": body.command,
            "operation_id": result["operation_id"],
        },
    )
    await db.commit()
    logger.info(f"Webhook {hook.id} queued {body.command} on {server.name}/{body.stack_name}")
    if not wait:
        return ok(result)

    operation_id = result["operation_id"]
    try:
        await container.operations.wait(operation_id, timeout=WAIT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Webhook {hook.id} stopped waiting on {operation_id}")
    async with container.session_factory() as fresh:
        row = await OperationAuditService(fresh).find(operation_id)
    return ok({
        "operation_id": operation_id,
        "status": row.status.value if row else result["status"],
        "success": row.success if row else None,
        "exit_code": row.exit_code if row else None,
        "duration_ms": row.duration_ms if row else None,
    })


# ============================================================
# ADMIN
# ============================================================

@admin_router.get("")
async def admin_list_webhooks(
    user: CurrentUser = Depends(require_permission("admin.webhooks.manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return ok([webhook_to_dict(h) for h in await WebhookService(db).list_all()])


@admin_router.delete("/{webhook_id}")
async def admin_delete_webhook(
    webhook_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.webhooks.manage")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    service = WebhookService(db)
    hook = await service.get(webhook_id)
    name, owner_id = hook.name, hook.user_id
    await service.delete(hook)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.WEBHOOK_DELETED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="webhook",
        target_id=webhook_id,
        target_name=name,
        metadata={"owner_user_id": owner_id},
    )
    await db.commit()
    return ok(message="Webhook deleted")
