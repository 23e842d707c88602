from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from itertools import count
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .conversations import ConversationRecord, _ConversationRow
from .errors import StorageFault, ValidationFault
from .models import MessageDirection, ProviderType
from .storage import HubBase, as_utc, get_engine, new_object_id, now_utc, session_factory, storage_errors


@dataclass(frozen=True)
class MessageRecord:
    id: str
    seq: int
    tenant_id: str
    channel_id: str
    conversation_id: str
    direction: MessageDirection
    provider: ProviderType
    provider_message_id: str | None
    text: str
    raw: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class AppendResult:
    message: MessageRecord
    created: bool


def inbound_dedup_key(conversation: ConversationRecord, provider_message_id: str) -> str:
    # Telegram message ids repeat across chats, so the key carries the thread.
    return ":".join(
        (
            conversation.tenant_id,
            conversation.channel_id,
            conversation.external_thread_id,
            "inbound",
            provider_message_id,
        )
    )


def _cross_tenant(conversation_id: str) -> ValidationFault:
    return ValidationFault(
        "cross_tenant_message",
        f"conversation {conversation_id} does not belong to the message tenant",
    )


class MessageLedger(Protocol):
    def reset(self) -> None: ...

    def append(
        self,
        conversation: ConversationRecord,
        *,
        tenant_id: str,
        direction: MessageDirection,
        provider: ProviderType,
        provider_message_id: str | None,
        text: str,
        raw: dict[str, Any] | None,
        dedup_key: str | None = None,
    ) -> AppendResult: ...

    def list_messages(self, *, tenant_id: str, conversation_id: str, limit: int) -> list[MessageRecord]: ...

    def latest_per_conversation(
        self, *, tenant_id: str, conversation_ids: Iterable[str]
    ) -> dict[str, MessageRecord]: ...


class InMemoryMessageLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._seq = count(1)
        self._messages_by_conversation: dict[str, list[MessageRecord]] = defaultdict(list)
        self._by_dedup_key: dict[str, MessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._seq = count(1)
            self._messages_by_conversation.clear()
            self._by_dedup_key.clear()

    def append(
        self,
        conversation: ConversationRecord,
        *,
        tenant_id: str,
        direction: MessageDirection,
        provider: ProviderType,
        provider_message_id: str | None,
        text: str,
        raw: dict[str, Any] | None,
        dedup_key: str | None = None,
    ) -> AppendResult:
        if conversation.tenant_id != tenant_id:
            raise _cross_tenant(conversation.id)
        with self._lock:
            if dedup_key is not None:
                existing = self._by_dedup_key.get(dedup_key)
                if existing is not None:
                    return AppendResult(message=existing, created=False)
            message = MessageRecord(
                id=new_object_id(),
                seq=next(self._seq),
                tenant_id=tenant_id,
                channel_id=conversation.channel_id,
                conversation_id=conversation.id,
                direction=direction,
                provider=provider,
                provider_message_id=provider_message_id,
                text=text,
                raw=raw,
                created_at=now_utc(),
            )
            self._messages_by_conversation[conversation.id].append(message)
            if dedup_key is not None:
                self._by_dedup_key[dedup_key] = message
            return AppendResult(message=message, created=True)

    def list_messages(self, *, tenant_id: str, conversation_id: str, limit: int) -> list[MessageRecord]:
        with self._lock:
            messages = [
                value
                for value in self._messages_by_conversation.get(conversation_id, [])
                if value.tenant_id == tenant_id
            ]
        return messages[-limit:]

    def latest_per_conversation(
        self, *, tenant_id: str, conversation_ids: Iterable[str]
    ) -> dict[str, MessageRecord]:
        latest: dict[str, MessageRecord] = {}
        with self._lock:
            for conversation_id in set(conversation_ids):
                messages = self._messages_by_conversation.get(conversation_id)
                if messages and messages[-1].tenant_id == tenant_id:
                    latest[conversation_id] = messages[-1]
        return latest


class _MessageRow(HubBase):
    __tablename__ = "messages"

    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    id: Mapped[str] = mapped_column(String(24), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(24), nullable=False)
    conversation_id: Mapped[str] = mapped_column(
        String(24), ForeignKey("conversations.id"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    raw_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str | None] = mapped_column(String(768), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyMessageLedger:
    def __init__(self, engine: Engine) -> None:
        self._session_factory = session_factory(engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with storage_errors(), self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()

    def append(
        self,
        conversation: ConversationRecord,
        *,
        tenant_id: str,
        direction: MessageDirection,
        provider: ProviderType,
        provider_message_id: str | None,
        text: str,
        raw: dict[str, Any] | None,
        dedup_key: str | None = None,
    ) -> AppendResult:
        if conversation.tenant_id != tenant_id:
            raise _cross_tenant(conversation.id)
        if dedup_key is not None:
            existing = self._find_by_dedup_key(dedup_key)
            if existing is not None:
                return AppendResult(message=existing, created=False)
        try:
            with storage_errors(), self._session() as session:
                with session.begin():
                    owner = session.scalar(
                        select(_ConversationRow.tenant_id).where(_ConversationRow.id == conversation.id)
                    )
                    if owner != tenant_id:
                        raise _cross_tenant(conversation.id)
                    row = _MessageRow(
                        id=new_object_id(),
                        tenant_id=tenant_id,
                        channel_id=conversation.channel_id,
                        conversation_id=conversation.id,
                        direction=direction,
                        provider=provider,
                        provider_message_id=provider_message_id,
                        text=text,
                        raw_json=json.dumps(raw) if raw is not None else None,
                        dedup_key=dedup_key,
                        created_at=now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    return AppendResult(message=self._record(row), created=True)
        except IntegrityError as exc:
            # A concurrent redelivery committed first.
            existing = self._find_by_dedup_key(dedup_key) if dedup_key is not None else None
            if existing is None:
                raise StorageFault("message append violated a storage constraint") from exc
            return AppendResult(message=existing, created=False)

    def _find_by_dedup_key(self, dedup_key: str) -> MessageRecord | None:
        with storage_errors(), self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.dedup_key == dedup_key))
            return self._record(row) if row is not None else None

    def list_messages(self, *, tenant_id: str, conversation_id: str, limit: int) -> list[MessageRecord]:
        with storage_errors(), self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.tenant_id == tenant_id)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.desc(), _MessageRow.seq.desc())
                .limit(limit)
            ).all()
            return [self._record(row) for row in reversed(rows)]

    def latest_per_conversation(
        self, *, tenant_id: str, conversation_ids: Iterable[str]
    ) -> dict[str, MessageRecord]:
        wanted = list(set(conversation_ids))
        if not wanted:
            return {}
        latest_seq = (
            select(func.max(_MessageRow.seq).label("seq"))
            .where(_MessageRow.tenant_id == tenant_id)
            .where(_MessageRow.conversation_id.in_(wanted))
            .group_by(_MessageRow.conversation_id)
            .subquery()
        )
        with storage_errors(), self._session() as session:
            rows = session.scalars(
                select(_MessageRow).join(latest_seq, _MessageRow.seq == latest_seq.c.seq)
            ).all()
            return {row.conversation_id: self._record(row) for row in rows}

    @staticmethod
    def _record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            id=row.id,
            seq=row.seq,
            tenant_id=row.tenant_id,
            channel_id=row.channel_id,
            conversation_id=row.conversation_id,
            direction=row.direction,  # type: ignore[arg-type]
            provider=row.provider,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            text=row.text,
            raw=json.loads(row.raw_json) if row.raw_json is not None else None,
            created_at=as_utc(row.created_at),
        )


def create_message_ledger(*, backend: str, database_url: str) -> MessageLedger:
    normalized = backend.strip().lower()
    if normalized == "sql":
        return SqlAlchemyMessageLedger(get_engine(database_url))
    if normalized == "inmemory":
        return InMemoryMessageLedger()
    raise RuntimeError(f"unsupported HUB_STORE_BACKEND: {backend}")
