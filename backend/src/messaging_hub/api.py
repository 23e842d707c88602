from __future__ import annotations

import json

from fastapi import APIRouter, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from .channels import ChannelRecord, ChannelRepository, create_channel_repository
from .config import Settings, get_settings
from .conversations import ConversationRepository, create_conversation_repository
from .dispatch import ReplyDispatcher
from .errors import HubFault, ValidationFault
from .inbox import InboxService, to_message_item
from .ingestion import InboundIngestionPipeline
from .ledger import MessageLedger, create_message_ledger
from .models import (
    ChannelCreateRequest,
    ChannelItem,
    ChannelListResponse,
    ChannelUpdateRequest,
    ConversationListResponse,
    MessageItem,
    MessageListResponse,
    PrincipalResponse,
    SendReplyRequest,
    WebhookAck,
)
from .principal_tokens import Principal, PrincipalTokenError, decode_principal_token
from .providers import AdapterRegistry, build_adapter_registry
from .storage import is_object_id
from .webhook_security import TELEGRAM_SECRET_HEADER, header_value

router = APIRouter(tags=["hub"])

_settings: Settings
channel_repo: ChannelRepository
conversation_repo: ConversationRepository
message_ledger: MessageLedger
adapter_registry: AdapterRegistry
ingestion_pipeline: InboundIngestionPipeline
reply_dispatcher: ReplyDispatcher
inbox_service: InboxService

_REJECTION_STATUS = {
    "unsupported_provider": status.HTTP_400_BAD_REQUEST,
    "bad_channel_id": status.HTTP_400_BAD_REQUEST,
    "bad_payload": status.HTTP_400_BAD_REQUEST,
    "channel_not_found": status.HTTP_404_NOT_FOUND,
    "webhook_secret_missing": status.HTTP_401_UNAUTHORIZED,
    "webhook_secret_mismatch": status.HTTP_401_UNAUTHORIZED,
}


def configure_runtime(settings: Settings) -> None:
    """(Re)build the process-wide repositories and services from settings."""
    global _settings, channel_repo, conversation_repo, message_ledger, adapter_registry

    _settings = settings
    channel_repo = create_channel_repository(backend=settings.store_backend, database_url=settings.database_url)
    conversation_repo = create_conversation_repository(
        backend=settings.store_backend,
        database_url=settings.database_url,
    )
    message_ledger = create_message_ledger(backend=settings.store_backend, database_url=settings.database_url)
    adapter_registry = build_adapter_registry(settings)
    _wire_services()


def _wire_services() -> None:
    global ingestion_pipeline, reply_dispatcher, inbox_service

    ingestion_pipeline = InboundIngestionPipeline(
        channels=channel_repo,
        conversations=conversation_repo,
        ledger=message_ledger,
        dedup_enabled=_settings.inbound_dedup_enabled,
        webhook_secret_mode=_settings.webhook_secret_mode,
    )
    reply_dispatcher = ReplyDispatcher(
        channels=channel_repo,
        conversations=conversation_repo,
        ledger=message_ledger,
        adapters=adapter_registry,
    )
    inbox_service = InboxService(channels=channel_repo, conversations=conversation_repo, ledger=message_ledger)


def reset_runtime_state_for_tests() -> None:
    message_ledger.reset()
    conversation_repo.reset()
    channel_repo.reset()


configure_runtime(get_settings())


def _http_error(exc: HubFault) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"error": exc.code, "message": exc.message})


def _require_principal(request: Request) -> Principal:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(401, "missing or invalid Authorization header")
    token = header.removeprefix("Bearer ").strip()
    try:
        return decode_principal_token(token, secret=_settings.principal_token_secret)
    except PrincipalTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_tenant(request: Request, allowed_roles: tuple[str, ...]) -> str:
    principal = _require_principal(request)
    if principal.tenant_id is None:
        raise HTTPException(403, "principal is not bound to a tenant")
    if not principal.has_any_role(allowed_roles):
        raise HTTPException(403, "insufficient role")
    return principal.tenant_id


def _require_object_id(value: str, *, code: str) -> None:
    if not is_object_id(value):
        raise _http_error(ValidationFault(code, f"malformed identifier: {value}"))


def _to_channel_item(record: ChannelRecord) -> ChannelItem:
    return ChannelItem(
        id=record.id,
        provider_type=record.provider_type,
        display_name=record.display_name,
        external_id=record.external_id,
        credential_keys=sorted(record.credentials),
        is_active=record.is_active,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.get("/me", response_model=PrincipalResponse)
def get_me(request: Request) -> PrincipalResponse:
    principal = _require_principal(request)
    return PrincipalResponse(
        user_id=principal.user_id,
        email=principal.email,
        tenant_id=principal.tenant_id,
        roles=sorted(principal.roles),
    )


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks/{provider}/{channel_id}", response_model=WebhookAck, response_model_exclude_none=True)
async def ingest_webhook(provider: str, channel_id: str, request: Request) -> WebhookAck:
    raw = await request.body()
    try:
        body = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(400, {"error": "bad_payload", "message": "body is not valid JSON"}) from exc

    result = await run_in_threadpool(
        ingestion_pipeline.ingest,
        channel_id,
        provider.strip().lower(),
        body,
        secret_token=header_value(request.headers, TELEGRAM_SECRET_HEADER),
    )
    if result.status == "ignored":
        return WebhookAck(ok=True, ignored=True)
    if result.status == "rejected":
        reason = result.reason or "internal_error"
        code = _REJECTION_STATUS.get(reason, status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(code, {"error": reason})
    return WebhookAck(ok=True, duplicate=True if result.duplicate else None)


# ---------------------------------------------------------------------------
# Tenant channels
# ---------------------------------------------------------------------------


@router.get("/tenant/channels", response_model=ChannelListResponse)
def list_channels(request: Request) -> ChannelListResponse:
    tenant_id = _require_tenant(request, _settings.operator_roles)
    try:
        records = channel_repo.list_for_tenant(tenant_id)
    except HubFault as exc:
        raise _http_error(exc) from exc
    return ChannelListResponse(items=[_to_channel_item(value) for value in records])


@router.post("/tenant/channels", response_model=ChannelItem, status_code=status.HTTP_201_CREATED)
def create_channel(payload: ChannelCreateRequest, request: Request) -> ChannelItem:
    tenant_id = _require_tenant(request, _settings.channel_admin_roles)
    try:
        record = channel_repo.register(
            tenant_id=tenant_id,
            provider_type=payload.provider_type,
            display_name=payload.display_name,
            external_id=payload.external_id,
            credentials=payload.credentials,
        )
    except HubFault as exc:
        raise _http_error(exc) from exc
    return _to_channel_item(record)


@router.patch("/tenant/channels/{channel_id}", response_model=ChannelItem)
def update_channel(channel_id: str, payload: ChannelUpdateRequest, request: Request) -> ChannelItem:
    tenant_id = _require_tenant(request, _settings.channel_admin_roles)
    _require_object_id(channel_id, code="bad_channel_id")
    try:
        record = channel_repo.set_active(channel_id=channel_id, tenant_id=tenant_id, is_active=payload.is_active)
    except HubFault as exc:
        raise _http_error(exc) from exc
    return _to_channel_item(record)


# ---------------------------------------------------------------------------
# Tenant conversations
# ---------------------------------------------------------------------------


@router.get("/tenant/conversations", response_model=ConversationListResponse)
def list_conversations(request: Request, limit: int | None = None) -> ConversationListResponse:
    tenant_id = _require_tenant(request, _settings.operator_roles)
    try:
        return inbox_service.list_conversations(tenant_id=tenant_id, limit=limit)
    except HubFault as exc:
        raise _http_error(exc) from exc


@router.get("/tenant/conversations/{conversation_id}/messages", response_model=MessageListResponse)
def list_conversation_messages(
    conversation_id: str,
    request: Request,
    limit: int | None = None,
) -> MessageListResponse:
    tenant_id = _require_tenant(request, _settings.operator_roles)
    _require_object_id(conversation_id, code="bad_conversation_id")
    try:
        return inbox_service.list_messages(tenant_id=tenant_id, conversation_id=conversation_id, limit=limit)
    except HubFault as exc:
        raise _http_error(exc) from exc


@router.post(
    "/tenant/conversations/{conversation_id}/messages",
    response_model=MessageItem,
    status_code=status.HTTP_201_CREATED,
)
def send_reply(conversation_id: str, payload: SendReplyRequest, request: Request) -> MessageItem:
    tenant_id = _require_tenant(request, _settings.operator_roles)
    _require_object_id(conversation_id, code="bad_conversation_id")
    try:
        message = reply_dispatcher.dispatch_reply(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            text=payload.text,
        )
    except HubFault as exc:
        raise _http_error(exc) from exc
    return to_message_item(message)
