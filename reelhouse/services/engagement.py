from __future__ import annotations

import logging
import threading

import redis

logger = logging.getLogger("reelhouse.engagement")

COUNTER_FIELDS = ("views", "likes", "comments")
REDIS_KEY_PREFIX = "reelhouse:engagement:"
REDIS_CONNECT_TIMEOUT_SECONDS = 2.0


class EngagementSink:
    """
    Per-video engagement counters. Redis hashes when a URL is configured,
    a process-local dict otherwise. Redis failures are logged and never
    propagate to the caller.
    """

    def __init__(self, redis_url: str = "", client: redis.Redis | None = None):
        self.redis_url = (redis_url or "").strip()
        self._client = client
        self._client_lock = threading.Lock()
        self._local: dict[str, dict[str, int]] = {}
        self._local_lock = threading.Lock()

    @property
    def uses_redis(self) -> bool:
        return self._client is not None or bool(self.redis_url)

    def _get_redis_client(self) -> redis.Redis | None:
        if self._client is not None:
            return self._client
        if not self.redis_url:
            return None
        with self._client_lock:
            if self._client is not None:
                return self._client
            try:
                client = redis.Redis.from_url(
                    self.redis_url,
                    socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
                    socket_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
                    decode_responses=True,
                )
                client.ping()
                self._client = client
            except Exception as exc:
                logger.warning("Redis unavailable: %s", exc)
                return None
        return self._client

    @staticmethod
    def _key(video_id: str) -> str:
        return f"{REDIS_KEY_PREFIX}{video_id}"

    def init(self, video_id: str) -> None:
        if self.uses_redis:
            client = self._get_redis_client()
            if not client:
                return
            try:
                client.hset(self._key(video_id), mapping={name: 0 for name in COUNTER_FIELDS})
            except Exception as exc:
                logger.warning("Redis engagement init failed: %s", exc, extra={"video_id": video_id})
            return
        with self._local_lock:
            self._local[video_id] = {name: 0 for name in COUNTER_FIELDS}

    def increment(self, video_id: str, field: str, amount: int = 1) -> int | None:
        if field not in COUNTER_FIELDS:
            raise ValueError(f"Unknown engagement counter: {field}")
        if self.uses_redis:
            client = self._get_redis_client()
            if not client:
                return None
            try:
                return int(client.hincrby(self._key(video_id), field, amount))
            except Exception as exc:
                logger.warning("Redis engagement increment failed: %s", exc, extra={"video_id": video_id})
                return None
        with self._local_lock:
            counters = self._local.setdefault(video_id, {name: 0 for name in COUNTER_FIELDS})
            counters[field] = max(0, counters[field] + amount)
            return counters[field]

    def get(self, video_id: str) -> dict[str, int]:
        counters = {name: 0 for name in COUNTER_FIELDS}
        if self.uses_redis:
            client = self._get_redis_client()
            if not client:
                return counters
            try:
                raw = client.hgetall(self._key(video_id)) or {}
            except Exception as exc:
                logger.warning("Redis engagement get failed: %s", exc, extra={"video_id": video_id})
                return counters
            for name in COUNTER_FIELDS:
                try:
                    counters[name] = int(raw.get(name, 0))
                except (TypeError, ValueError):
                    counters[name] = 0
            return counters
        with self._local_lock:
            counters.update(self._local.get(video_id, {}))
        return counters

    def delete(self, video_id: str) -> None:
        if self.uses_redis:
            client = self._get_redis_client()
            if not client:
                return
            try:
                client.delete(self._key(video_id))
            except Exception as exc:
                logger.warning("Redis engagement delete failed: %s", exc, extra={"video_id": video_id})
            return
        with self._local_lock:
            self._local.pop(video_id, None)

    def ping(self) -> bool:
        if not self.uses_redis:
            return True
        client = self._get_redis_client()
        if not client:
            return False
        try:
            return bool(client.ping())
        except Exception as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False
