from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import Mapping, Protocol

from sqlalchemy import DateTime, String, Text, UniqueConstraint, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .errors import StorageFault
from .storage import HubBase, as_utc, get_engine, new_object_id, now_utc, session_factory, storage_errors

logger = logging.getLogger(__name__)

PARTICIPANT_FIELDS = ("externalUserId", "externalUsername")

# Compare-and-create attempts before giving up on a contended thread key.
_RESOLVE_ATTEMPTS = 3


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    tenant_id: str
    channel_id: str
    external_thread_id: str
    participants: dict[str, str]
    last_message_at: datetime
    created_at: datetime
    updated_at: datetime


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def resolve(
        self,
        *,
        tenant_id: str,
        channel_id: str,
        external_thread_id: str,
        participants_hint: Mapping[str, str | None],
    ) -> ConversationRecord: ...

    def get(self, conversation_id: str, tenant_id: str) -> ConversationRecord | None: ...

    def list_for_tenant(self, tenant_id: str, *, limit: int) -> list[ConversationRecord]: ...

    def touch(self, *, conversation_id: str, tenant_id: str, at: datetime) -> bool: ...


def clean_participants(hint: Mapping[str, str | None]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key in PARTICIPANT_FIELDS:
        value = hint.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            cleaned[key] = value
    return cleaned


def merge_participants(stored: Mapping[str, str], hint: Mapping[str, str | None]) -> dict[str, str]:
    """Last write wins per field; empty hint fields never clear a stored value."""
    return {**stored, **clean_participants(hint)}


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversations: dict[str, ConversationRecord] = {}
        self._by_thread_key: dict[tuple[str, str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversations.clear()
            self._by_thread_key.clear()

    def resolve(
        self,
        *,
        tenant_id: str,
        channel_id: str,
        external_thread_id: str,
        participants_hint: Mapping[str, str | None],
    ) -> ConversationRecord:
        key = (tenant_id, channel_id, external_thread_id)
        with self._lock:
            now = now_utc()
            existing_id = self._by_thread_key.get(key)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                updated = replace(
                    existing,
                    participants=merge_participants(existing.participants, participants_hint),
                    last_message_at=now,
                    updated_at=now,
                )
                self._conversations[existing_id] = updated
                return updated

            created = ConversationRecord(
                id=new_object_id(),
                tenant_id=tenant_id,
                channel_id=channel_id,
                external_thread_id=external_thread_id,
                participants=clean_participants(participants_hint),
                last_message_at=now,
                created_at=now,
                updated_at=now,
            )
            self._by_thread_key[key] = created.id
            self._conversations[created.id] = created
            return created

    def get(self, conversation_id: str, tenant_id: str) -> ConversationRecord | None:
        with self._lock:
            record = self._conversations.get(conversation_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    def list_for_tenant(self, tenant_id: str, *, limit: int) -> list[ConversationRecord]:
        with self._lock:
            records = [value for value in self._conversations.values() if value.tenant_id == tenant_id]
        ordered = sorted(records, key=lambda value: value.last_message_at, reverse=True)
        return ordered[:limit]

    def touch(self, *, conversation_id: str, tenant_id: str, at: datetime) -> bool:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None or current.tenant_id != tenant_id:
                return False
            self._conversations[conversation_id] = replace(current, last_message_at=at, updated_at=at)
            return True


class _ConversationRow(HubBase):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "external_thread_id", name="uq_conversations_thread_key"),
    )

    id: Mapped[str] = mapped_column(String(24), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(24), nullable=False, index=True)
    external_thread_id: Mapped[str] = mapped_column(String(256), nullable=False)
    participants_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    def __init__(self, engine: Engine) -> None:
        self._session_factory = session_factory(engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with storage_errors(), self._session() as session:
            with session.begin():
                session.query(_ConversationRow).delete()

    def resolve(
        self,
        *,
        tenant_id: str,
        channel_id: str,
        external_thread_id: str,
        participants_hint: Mapping[str, str | None],
    ) -> ConversationRecord:
        for attempt in range(1, _RESOLVE_ATTEMPTS + 1):
            try:
                return self._find_or_create(
                    tenant_id=tenant_id,
                    channel_id=channel_id,
                    external_thread_id=external_thread_id,
                    participants_hint=participants_hint,
                )
            except IntegrityError:
                # Another writer created the thread first; its row is visible on the next pass.
                logger.debug(
                    "conversation create lost race tenant=%s channel=%s thread=%s attempt=%d",
                    tenant_id,
                    channel_id,
                    external_thread_id,
                    attempt,
                )
        raise StorageFault(f"conversation resolve did not converge after {_RESOLVE_ATTEMPTS} attempts")

    def _find_or_create(
        self,
        *,
        tenant_id: str,
        channel_id: str,
        external_thread_id: str,
        participants_hint: Mapping[str, str | None],
    ) -> ConversationRecord:
        with storage_errors(), self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ConversationRow)
                    .where(_ConversationRow.tenant_id == tenant_id)
                    .where(_ConversationRow.channel_id == channel_id)
                    .where(_ConversationRow.external_thread_id == external_thread_id)
                    .with_for_update()
                )
                now = now_utc()
                if row is None:
                    row = _ConversationRow(
                        id=new_object_id(),
                        tenant_id=tenant_id,
                        channel_id=channel_id,
                        external_thread_id=external_thread_id,
                        participants_json=json.dumps(clean_participants(participants_hint), sort_keys=True),
                        last_message_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    stored = json.loads(row.participants_json or "{}")
                    row.participants_json = json.dumps(merge_participants(stored, participants_hint), sort_keys=True)
                    row.last_message_at = now
                    row.updated_at = now
                session.flush()
                return self._record(row)

    def get(self, conversation_id: str, tenant_id: str) -> ConversationRecord | None:
        with storage_errors(), self._session() as session:
            row = session.scalar(
                select(_ConversationRow)
                .where(_ConversationRow.id == conversation_id)
                .where(_ConversationRow.tenant_id == tenant_id)
            )
            return self._record(row) if row is not None else None

    def list_for_tenant(self, tenant_id: str, *, limit: int) -> list[ConversationRecord]:
        with storage_errors(), self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .where(_ConversationRow.tenant_id == tenant_id)
                .order_by(_ConversationRow.last_message_at.desc())
                .limit(limit)
            ).all()
            return [self._record(row) for row in rows]

    def touch(self, *, conversation_id: str, tenant_id: str, at: datetime) -> bool:
        with storage_errors(), self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ConversationRow)
                    .where(_ConversationRow.id == conversation_id)
                    .where(_ConversationRow.tenant_id == tenant_id)
                )
                if row is None:
                    return False
                row.last_message_at = at
                row.updated_at = at
                return True

    @staticmethod
    def _record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            channel_id=row.channel_id,
            external_thread_id=row.external_thread_id,
            participants=dict(json.loads(row.participants_json or "{}")),
            last_message_at=as_utc(row.last_message_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "sql":
        return SqlAlchemyConversationRepository(get_engine(database_url))
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported HUB_STORE_BACKEND: {backend}")
