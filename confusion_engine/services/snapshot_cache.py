"""
Redis snapshot cache for weights and cohort baselines.

Mirrors the published WeightTable and the committed baseline snapshot into
Redis so a restarted engine can warm-start its weights, and so the admin /
analytics surface can read them without calling the engine.

Writes are fire-and-forget tasks; nothing on the scoring path awaits them.
Reads fail open: if Redis is unavailable the engine starts from defaults.
"""
from typing import Dict, List, Mapping, Optional, Set
import asyncio
import json
import logging

import redis.asyncio as redis

from confusion_engine.core.config import settings
from confusion_engine.core.metrics import increment_counter
from confusion_engine.adaptive.confusion.models import CohortBaseline, HeuristicWeight

logger = logging.getLogger(__name__)


class SnapshotCache:
    """
    Redis-backed mirror of engine snapshots.

    Keys:
        {prefix}:weights          hash  "heuristic:content_type" -> record JSON
        {prefix}:weights:version  string
        {prefix}:baselines        hash  segment_id -> record JSON
    """

    def __init__(self, redis_url: str = settings.REDIS_URL, prefix: str = settings.SNAPSHOT_CACHE_PREFIX):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client: Optional[redis.Redis] = None
        self._inflight: Set[asyncio.Task] = set()
        self._last_weights_version = -1
        self._weights_lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        if not self._client:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def close(self):
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ writes

    def schedule_weights(self, table) -> bool:
        """Queue a write of the weight table; returns False without a running loop"""
        return self._schedule(self.publish_weights(table))

    def schedule_baselines(self, snapshot: Mapping[str, CohortBaseline]) -> bool:
        return self._schedule(self.publish_baselines(snapshot))

    def _schedule(self, coro) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return False
        task = loop.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return True

    async def drain(self):
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def publish_weights(self, table) -> bool:
        # Serialized so an older table can never land after a newer one
        async with self._weights_lock:
            return await self._write_weights(table)

    async def _write_weights(self, table) -> bool:
        if table.version <= self._last_weights_version:
            return False
        mapping = {
            f"{r.heuristic_name.value}:{r.content_type.value}": json.dumps(r.to_dict())
            for r in table.records.values()
        }
        try:
            client = await self.get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(f"{self.prefix}:weights", mapping=mapping)
                pipe.set(f"{self.prefix}:weights:version", table.version)
                await pipe.execute()
            self._last_weights_version = table.version
            return True
        except Exception as e:
            logger.error(f"Snapshot cache weight write failed: {e}")
            increment_counter("confusion_snapshot_cache_errors_total", {"op": "write_weights"})
            return False

    async def publish_baselines(self, snapshot: Mapping[str, CohortBaseline]) -> bool:
        if not snapshot:
            return False
        mapping = {seg: json.dumps(_baseline_to_dict(b)) for seg, b in snapshot.items()}
        try:
            client = await self.get_client()
            await client.hset(f"{self.prefix}:baselines", mapping=mapping)
            return True
        except Exception as e:
            logger.error(f"Snapshot cache baseline write failed: {e}")
            increment_counter("confusion_snapshot_cache_errors_total", {"op": "write_baselines"})
            return False

    # ------------------------------------------------------------------- reads

    async def load_weights(self) -> List[HeuristicWeight]:
        try:
            client = await self.get_client()
            raw: Dict[str, str] = await client.hgetall(f"{self.prefix}:weights")
        except Exception as e:
            logger.warning(f"Snapshot cache unavailable, starting from default weights: {e}")
            increment_counter("confusion_snapshot_cache_errors_total", {"op": "read_weights"})
            return []

        records = []
        for field_name, value in (raw or {}).items():
            try:
                records.append(HeuristicWeight.from_dict(json.loads(value)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring malformed cached weight {field_name}: {e}")
        return records


def _baseline_to_dict(baseline: CohortBaseline) -> Dict:
    return {
        "segment_id": baseline.segment_id,
        "avg_dwell_time": baseline.avg_dwell_time,
        "std_dev_dwell_time": baseline.std_dev_dwell_time,
        "avg_rewind_count": baseline.avg_rewind_count,
        "sample_size": baseline.sample_size,
        "last_updated": baseline.last_updated.isoformat(),
        "content_type": baseline.content_type.value,
    }
