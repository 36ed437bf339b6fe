"""
Redis-backed abort flags for running workflows.

Any worker may request an abort; the worker executing the run sees the flag at
its next step boundary.
"""
import redis
from typing import Optional

from ..core.config import settings
from ..core.logging_config import get_logger

logger = get_logger("abort_registry")


class AbortRegistry:
    """Stores `workflow:abort:<run_id>` keys with a TTL"""

    def __init__(self, redis_client=None, ttl_seconds: Optional[int] = None, key_prefix: str = "workflow:abort:"):
        self.redis_client = redis_client or redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30
        )
        self.ttl_seconds = ttl_seconds or settings.RUN_ABORT_TTL_SECONDS
        self.key_prefix = key_prefix

    def _key(self, run_id: str) -> str:
        return f"{self.key_prefix}{run_id}"

    def request_abort(self, run_id: str) -> bool:
        """Flag a run for abort. Returns False when Redis is unreachable."""
        try:
            self.redis_client.setex(self._key(run_id), self.ttl_seconds, "1")
            logger.info(f"Abort requested for run {run_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to store abort flag for run {run_id}: {e}")
            return False

    def is_aborted(self, run_id: str) -> bool:
        try:
            return bool(self.redis_client.exists(self._key(run_id)))
        except redis.RedisError as e:
            # An unreachable Redis must not fail healthy runs
            logger.warning(f"Could not read abort flag for run {run_id}: {e}")
            return False

    def clear(self, run_id: str):
        try:
            self.redis_client.delete(self._key(run_id))
        except redis.RedisError as e:
            logger.warning(f"Could not clear abort flag for run {run_id}: {e}")
