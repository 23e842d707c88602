from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .errors import NotFoundFault, ValidationFault
from .models import ProviderType
from .storage import HubBase, as_utc, get_engine, new_object_id, now_utc, session_factory, storage_errors


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    tenant_id: str
    provider_type: ProviderType
    display_name: str
    external_id: str
    credentials: dict[str, str] = field(repr=False)
    is_active: bool
    created_at: datetime
    updated_at: datetime

    def credential(self, key: str) -> str | None:
        value = self.credentials.get(key)
        if value is None:
            return None
        value = value.strip()
        return value or None


class ChannelRepository(Protocol):
    def reset(self) -> None: ...

    def register(
        self,
        *,
        tenant_id: str,
        provider_type: ProviderType,
        display_name: str,
        external_id: str,
        credentials: dict[str, str],
    ) -> ChannelRecord: ...

    def get(self, channel_id: str) -> ChannelRecord | None: ...

    def get_for_tenant(self, channel_id: str, tenant_id: str) -> ChannelRecord | None: ...

    def get_many_for_tenant(self, tenant_id: str, channel_ids: Iterable[str]) -> dict[str, ChannelRecord]: ...

    def list_for_tenant(self, tenant_id: str) -> list[ChannelRecord]: ...

    def set_active(self, *, channel_id: str, tenant_id: str, is_active: bool) -> ChannelRecord: ...


def _channel_exists(provider_type: str, external_id: str) -> ValidationFault:
    return ValidationFault(
        "channel_exists",
        f"a {provider_type} channel with external id {external_id!r} is already registered",
    )


class InMemoryChannelRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._channels: dict[str, ChannelRecord] = {}
        self._by_external: dict[tuple[str, str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._channels.clear()
            self._by_external.clear()

    def register(
        self,
        *,
        tenant_id: str,
        provider_type: ProviderType,
        display_name: str,
        external_id: str,
        credentials: dict[str, str],
    ) -> ChannelRecord:
        key = (tenant_id, provider_type, external_id)
        with self._lock:
            if key in self._by_external:
                raise _channel_exists(provider_type, external_id)
            now = now_utc()
            record = ChannelRecord(
                id=new_object_id(),
                tenant_id=tenant_id,
                provider_type=provider_type,
                display_name=display_name,
                external_id=external_id,
                credentials=dict(credentials),
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self._channels[record.id] = record
            self._by_external[key] = record.id
            return record

    def get(self, channel_id: str) -> ChannelRecord | None:
        with self._lock:
            return self._channels.get(channel_id)

    def get_for_tenant(self, channel_id: str, tenant_id: str) -> ChannelRecord | None:
        record = self.get(channel_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    def get_many_for_tenant(self, tenant_id: str, channel_ids: Iterable[str]) -> dict[str, ChannelRecord]:
        wanted = set(channel_ids)
        with self._lock:
            return {
                channel_id: record
                for channel_id, record in self._channels.items()
                if channel_id in wanted and record.tenant_id == tenant_id
            }

    def list_for_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        with self._lock:
            records = [value for value in self._channels.values() if value.tenant_id == tenant_id]
        return sorted(records, key=lambda value: value.created_at)

    def set_active(self, *, channel_id: str, tenant_id: str, is_active: bool) -> ChannelRecord:
        with self._lock:
            current = self._channels.get(channel_id)
            if current is None or current.tenant_id != tenant_id:
                raise NotFoundFault("channel_not_found", f"channel not found: {channel_id}")
            updated = replace(current, is_active=is_active, updated_at=now_utc())
            self._channels[channel_id] = updated
            return updated


class _ChannelRow(HubBase):
    __tablename__ = "channels"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_type", "external_id", name="uq_channels_tenant_provider_external"),
    )

    id: Mapped[str] = mapped_column(String(24), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider_type: Mapped[str] = mapped_column(String(16), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    external_id: Mapped[str] = mapped_column(String(256), nullable=False)
    credentials_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyChannelRepository:
    def __init__(self, engine: Engine) -> None:
        self._session_factory = session_factory(engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with storage_errors(), self._session() as session:
            with session.begin():
                session.query(_ChannelRow).delete()

    def register(
        self,
        *,
        tenant_id: str,
        provider_type: ProviderType,
        display_name: str,
        external_id: str,
        credentials: dict[str, str],
    ) -> ChannelRecord:
        now = now_utc()
        row = _ChannelRow(
            id=new_object_id(),
            tenant_id=tenant_id,
            provider_type=provider_type,
            display_name=display_name,
            external_id=external_id,
            credentials_json=json.dumps(credentials, sort_keys=True),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        try:
            with storage_errors(), self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise _channel_exists(provider_type, external_id) from exc
        return self._record(row)

    def get(self, channel_id: str) -> ChannelRecord | None:
        with storage_errors(), self._session() as session:
            row = session.get(_ChannelRow, channel_id)
            return self._record(row) if row is not None else None

    def get_for_tenant(self, channel_id: str, tenant_id: str) -> ChannelRecord | None:
        with storage_errors(), self._session() as session:
            row = session.scalar(
                select(_ChannelRow)
                .where(_ChannelRow.id == channel_id)
                .where(_ChannelRow.tenant_id == tenant_id)
            )
            return self._record(row) if row is not None else None

    def get_many_for_tenant(self, tenant_id: str, channel_ids: Iterable[str]) -> dict[str, ChannelRecord]:
        wanted = list(set(channel_ids))
        if not wanted:
            return {}
        with storage_errors(), self._session() as session:
            rows = session.scalars(
                select(_ChannelRow)
                .where(_ChannelRow.tenant_id == tenant_id)
                .where(_ChannelRow.id.in_(wanted))
            ).all()
            return {row.id: self._record(row) for row in rows}

    def list_for_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        with storage_errors(), self._session() as session:
            rows = session.scalars(
                select(_ChannelRow)
                .where(_ChannelRow.tenant_id == tenant_id)
                .order_by(_ChannelRow.created_at.asc())
            ).all()
            return [self._record(row) for row in rows]

    def set_active(self, *, channel_id: str, tenant_id: str, is_active: bool) -> ChannelRecord:
        with storage_errors(), self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ChannelRow)
                    .where(_ChannelRow.id == channel_id)
                    .where(_ChannelRow.tenant_id == tenant_id)
                )
                if row is None:
                    raise NotFoundFault("channel_not_found", f"channel not found: {channel_id}")
                row.is_active = is_active
                row.updated_at = now_utc()
                session.flush()
                return self._record(row)

    @staticmethod
    def _record(row: _ChannelRow) -> ChannelRecord:
        credentials: dict[str, Any] = json.loads(row.credentials_json or "{}")
        return ChannelRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            provider_type=row.provider_type,  # type: ignore[arg-type]
            display_name=row.display_name,
            external_id=row.external_id,
            credentials={str(key): str(value) for key, value in credentials.items()},
            is_active=row.is_active,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def create_channel_repository(*, backend: str, database_url: str) -> ChannelRepository:
    normalized = backend.strip().lower()
    if normalized == "sql":
        return SqlAlchemyChannelRepository(get_engine(database_url))
    if normalized == "inmemory":
        return InMemoryChannelRepository()
    raise RuntimeError(f"unsupported HUB_STORE_BACKEND: {backend}")
