# /iqflow/services/snapshot_store.py

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis
from pydantic import TypeAdapter, ValidationError

from iqflow.config.settings import settings
from iqflow.models.flow import ChatMessage, OnboardingSnapshot
from iqflow.utils.metrics import snapshot_operations

# Persists the two onboarding records (context/resume-flag snapshot and the
# transcript) in Redis. Reads never raise: absent, unreachable or malformed
# records are reported as missing so the caller can cold-start.

logger = logging.getLogger(__name__)

_messages_adapter = TypeAdapter(List[ChatMessage])


class SnapshotStore:
    def __init__(self, client: redis.Redis, prefix: str = settings.redis_key_prefix, ttl: int = settings.snapshot_ttl_seconds):
        self.redis = client
        self.prefix = prefix
        self.ttl = ttl

    @classmethod
    def from_url(cls, redis_url: str) -> "SnapshotStore":
        pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
        return cls(redis.Redis(connection_pool=pool))

    def state_key(self, session_key: str) -> str:
        return f"{self.prefix}:onboarding_state:{session_key}"

    def messages_key(self, session_key: str) -> str:
        return f"{self.prefix}:onboarding_chat_messages:{session_key}"

    async def _read(self, key: str) -> Optional[bytes]:
        try:
            return await self.redis.get(key)
        except redis.RedisError as e:
            snapshot_operations.labels(operation="read", status="error").inc()
            logger.warning(f"Snapshot read failed for key {key}: {e}")
            return None

    async def _write(self, key: str, value: str) -> bool:
        try:
            await self.redis.setex(key, self.ttl, value)
            snapshot_operations.labels(operation="write", status="success").inc()
            return True
        except redis.RedisError as e:
            snapshot_operations.labels(operation="write", status="error").inc()
            logger.warning(f"Snapshot write failed for key {key}: {e}")
            return False

    async def _delete(self, key: str):
        try:
            await self.redis.delete(key)
            snapshot_operations.labels(operation="delete", status="success").inc()
        except redis.RedisError as e:
            snapshot_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Snapshot delete failed for key {key}: {e}")

    # ---------------- Context snapshot ---------------- #

    async def load_state(self, session_key: str) -> Optional[OnboardingSnapshot]:
        raw = await self._read(self.state_key(session_key))
        if raw is None:
            snapshot_operations.labels(operation="load_state", status="miss").inc()
            return None
        try:
            snapshot = OnboardingSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            snapshot_operations.labels(operation="load_state", status="malformed").inc()
            logger.warning(f"Malformed onboarding snapshot for {session_key}, ignoring it: {e}")
            return None
        snapshot_operations.labels(operation="load_state", status="hit").inc()
        return snapshot

    async def save_state(self, session_key: str, snapshot: OnboardingSnapshot) -> OnboardingSnapshot:
        """
        Writes the snapshot with its version bumped past the stored one.

        `snapshot.version` is the version the caller last read. A stored
        version newer than that means another writer saved in between; the
        write still goes through (last writer wins) and a warning is logged.
        """
        stored = await self.load_state(session_key)
        stored_version = stored.version if stored else 0
        if stored_version > snapshot.version:
            logger.warning(
                f"Snapshot version conflict for {session_key}: stored v{stored_version}, "
                f"writer last read v{snapshot.version}. Overwriting."
            )
            snapshot_operations.labels(operation="save_state", status="conflict").inc()

        saved = snapshot.model_copy(
            update={"version": max(stored_version, snapshot.version) + 1, "saved_at": datetime.now(timezone.utc)}
        )
        await self._write(self.state_key(session_key), saved.model_dump_json(by_alias=True))
        return saved

    async def clear_state(self, session_key: str):
        await self._delete(self.state_key(session_key))

    # ---------------- Transcript ---------------- #

    async def load_messages(self, session_key: str) -> List[ChatMessage]:
        raw = await self._read(self.messages_key(session_key))
        if raw is None:
            return []
        try:
            return _messages_adapter.validate_json(raw)
        except ValidationError as e:
            snapshot_operations.labels(operation="load_messages", status="malformed").inc()
            logger.warning(f"Malformed saved transcript for {session_key}, ignoring it: {e}")
            return []

    async def save_messages(self, session_key: str, messages: List[ChatMessage]) -> bool:
        payload = _messages_adapter.dump_json(messages).decode("utf-8")
        return await self._write(self.messages_key(session_key), payload)

    async def clear_messages(self, session_key: str):
        await self._delete(self.messages_key(session_key))

    async def close(self):
        await self.redis.aclose()
