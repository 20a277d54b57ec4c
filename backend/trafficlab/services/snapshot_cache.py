"""Share allocation snapshots between worker processes through Redis.

Each snapshot is stored as a single JSON document written with one SET,
so another worker reading the key gets either the previous document or
the new one. Redis is an optimization here: if it is unreachable the
service keeps using its local registry and the store.
"""
import json
import redis
from typing import Optional

from trafficlab.exceptions import ConfigurationError
from trafficlab.middleware.logging import get_logger
from trafficlab.services.snapshots import AllocationSnapshot

logger = get_logger()


class RedisSnapshotCache:
    """Redis-backed cache of the latest snapshot per experiment."""

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 3600):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    def _get_snapshot_key(self, experiment_id: str) -> str:
        """Get Redis key for an experiment's snapshot document."""
        return f"allocation:snapshot:{experiment_id}"

    def publish(self, snapshot: AllocationSnapshot) -> bool:
        """
        Write a snapshot for other workers.

        Returns:
            True if the write succeeded, False if Redis was unavailable
        """
        key = self._get_snapshot_key(snapshot.experiment_id)
        payload = json.dumps(snapshot.to_dict())
        try:
            self.redis.set(key, payload, ex=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(
                "snapshot_cache_write_failed",
                experiment_id=snapshot.experiment_id,
                version=snapshot.version,
                error=str(e),
            )
            return False
        return True

    def fetch(self, experiment_id: str) -> Optional[AllocationSnapshot]:
        """Read the shared snapshot, or None if missing, unreadable or Redis is down."""
        key = self._get_snapshot_key(experiment_id)
        try:
            raw = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(
                "snapshot_cache_read_failed",
                experiment_id=experiment_id,
                error=str(e),
            )
            return None

        if not raw:
            return None

        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return AllocationSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, ConfigurationError) as e:
            logger.warning(
                "snapshot_cache_corrupt",
                experiment_id=experiment_id,
                error=str(e),
            )
            return None

    def invalidate(self, experiment_id: str) -> None:
        """Drop the shared snapshot (e.g. when an experiment stops)."""
        try:
            self.redis.delete(self._get_snapshot_key(experiment_id))
        except redis.RedisError as e:
            logger.warning(
                "snapshot_cache_invalidate_failed",
                experiment_id=experiment_id,
                error=str(e),
            )
