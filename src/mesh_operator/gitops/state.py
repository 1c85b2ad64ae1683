# ABOUTME: Change-set engine deciding which rendered objects changed since the last reconciliation
# ABOUTME: Keeps content-hash snapshots per object universe and persists them to Redis in the background

"""
Content-hash change-set engine with crash-recoverable snapshots.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every sync pass re-renders the complete desired state. Most of it is
identical to the previous pass, and re-applying all of it would hammer the
mesh control plane and the API server for nothing. This module answers one
question per pass:

    "Of these rendered objects, which ones changed, and which ones vanished?"

It tracks two independent universes:

1. MESH CONFIGURATION objects (clusters, listeners, routes, catalog entries
   ...), identified by ``zone + kind + id``.
2. WORKLOAD MANIFESTS (Deployments, Services ...), identified by
   ``namespace + group/version/kind + name``.

=============================================================================
SNAPSHOTS
=============================================================================

For each universe the engine keeps a snapshot: identity key -> ref, where a
ref carries the identity fields plus a content hash. After each diff the
snapshot is REPLACED with a brand-new read-only mapping, never edited in
place, so anything reading the old reference keeps a consistent view.

=============================================================================
PERSISTENCE
=============================================================================

    diff pass ──put_nowait──▶ [queue, maxsize=1] ──▶ drain task ──SET──▶ Redis

A diff pass never waits on Redis. It drops a "dirty" token into a one-slot
queue; if a token is already waiting, the new one is discarded, because the
drain task always writes the CURRENT snapshot. A burst of passes therefore
costs at most one pending write per universe.

On startup the engine connects to Redis (retrying every 30 seconds for as
long as it takes) and loads both snapshots. A missing or unreadable snapshot
only empties that one universe, which means "everything counts as changed
once".
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog
from pydantic import TypeAdapter, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_never, wait_fixed

from mesh_operator.wellknown import kind_key, zone_key

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from tenacity import RetryCallState

    from mesh_operator.config import StateSettings

logger = structlog.get_logger(__name__)


# =============================================================================
# CONTENT HASHING
# =============================================================================


def _digest(data: bytes) -> int:
    return int.from_bytes(hashlib.blake2b(data, digest_size=8).digest(), "big")


def content_hash(value: Any) -> int:
    """
    Structural 64-bit hash of a JSON-like value.

    The value is serialized as canonical JSON (sorted keys, no whitespace)
    before hashing, so two objects that differ only in key order or
    formatting hash identically. Raw bytes are parsed as JSON first; bytes
    that are not JSON are hashed as-is.

    Example:
        >>> content_hash(b'{"a": 1, "b": 2}') == content_hash(b'{"b":2,"a":1}')
        True
    """
    if isinstance(value, bytes | bytearray):
        try:
            value = json.loads(value)
        except ValueError:
            return _digest(bytes(value))
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return _digest(canonical.encode())


def _field(body: Any, name: str) -> str:
    if not isinstance(body, dict):
        return ""
    value = body.get(name)
    if value is None:
        return ""
    return value if isinstance(value, str) else json.dumps(value)


# =============================================================================
# OBJECT REFS
# =============================================================================


@dataclass(frozen=True)
class ConfigObjectRef:
    """
    Enough information about a mesh configuration object to tell whether it
    changed, and to delete it once it disappears from the desired state.
    """

    zone: str
    # cluster, listener, domain, route, proxy, zone or catalogservice
    kind: str
    # Value of the kind's key field (cluster_key, service_id ...)
    id: str
    hash: int

    @property
    def key(self) -> str:
        return f"{self.zone}-{self.kind}-{self.id}"

    @classmethod
    def from_object(cls, data: bytes, kind: str) -> ConfigObjectRef:
        """
        Build a ref from a serialized mesh object.

        Missing identity fields become empty strings. The object is still
        tracked, under a degenerate key, so it keeps being diffed.
        """
        try:
            body = json.loads(data)
        except ValueError:
            body = None
        zone = _field(body, zone_key(kind))
        object_id = _field(body, kind_key(kind))
        if not zone or not object_id:
            logger.warning(
                "Mesh object is missing identity fields",
                kind=kind,
                zone=zone,
                id=object_id,
                object=data[:200].decode(errors="replace"),
            )
        return cls(
            zone=zone,
            kind=kind,
            id=object_id,
            hash=content_hash(body) if body is not None else _digest(data),
        )


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    def __str__(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}, Kind={self.kind}"
        return f"{self.version}, Kind={self.kind}"

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any]) -> GroupVersionKind:
        group, _, version = str(manifest.get("apiVersion") or "").rpartition("/")
        return cls(group=group, version=version, kind=str(manifest.get("kind") or ""))


@dataclass(frozen=True)
class WorkloadObjectRef:
    """Identity and content hash of a rendered Kubernetes manifest."""

    namespace: str
    kind: GroupVersionKind
    name: str
    hash: int

    @property
    def key(self) -> str:
        return f"{self.namespace}-{self.kind}-{self.name}"

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any]) -> WorkloadObjectRef:
        metadata = manifest.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            kind=GroupVersionKind.from_manifest(manifest),
            name=metadata.get("name") or "",
            hash=content_hash(dict(manifest)),
        )


class ConfigDelta(NamedTuple):
    changed: list[bytes]
    changed_kinds: list[str]
    deleted: list[ConfigObjectRef]


class WorkloadDelta(NamedTuple):
    changed: list[dict[str, Any]]
    deleted: list[WorkloadObjectRef]


class Universe(str, Enum):
    CONFIG = "config"
    WORKLOAD = "workload"


_CONFIG_SNAPSHOT = TypeAdapter(dict[str, ConfigObjectRef])
_WORKLOAD_SNAPSHOT = TypeAdapter(dict[str, WorkloadObjectRef])

_ADAPTERS: dict[Universe, TypeAdapter[Any]] = {
    Universe.CONFIG: _CONFIG_SNAPSHOT,
    Universe.WORKLOAD: _WORKLOAD_SNAPSHOT,
}


def _make_redis(settings: StateSettings) -> Redis:
    password = settings.redis_password.get_secret_value() if settings.redis_password else None
    return Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=password,
    )


# =============================================================================
# SYNC STATE
# =============================================================================


class SyncState:
    """
    The change-set engine.

    LIFECYCLE:
    ----------
    1. state = SyncState(settings)
    2. await state.load_initial()             # one immediate connect + load attempt
    3. state.start()                          # background retry if needed, then drain
    4. state.compute_config_delta(...)        # any time, even before Redis is up
    5. await state.close()                    # final persist, then disconnect

    Diffing works before the store is reachable. Persistence simply catches
    up once the connection succeeds, since pending dirty tokens wait in their
    queues. A diff pass that runs before the snapshots are loaded cannot see
    deletions made while the process was down, so callers make the initial
    attempt before their first diff.
    """

    def __init__(
        self,
        settings: StateSettings,
        redis_factory: Callable[[], Redis] | None = None,
    ) -> None:
        """
        Args:
            settings: Store location, snapshot keys and retry interval.
            redis_factory: Builds the Redis client. Tests pass a fake.
        """
        self._settings = settings
        self._redis_factory = redis_factory or (lambda: _make_redis(settings))
        self._redis: Redis | None = None
        # Client built but not yet answering; close() must still release it
        self._connecting: Redis | None = None
        self._keys = {
            Universe.CONFIG: settings.config_key,
            Universe.WORKLOAD: settings.workload_key,
        }

        self._snapshots: dict[Universe, Mapping[str, Any]] = {
            Universe.CONFIG: MappingProxyType({}),
            Universe.WORKLOAD: MappingProxyType({}),
        }
        self._signals: dict[Universe, asyncio.Queue[None]] = {
            u: asyncio.Queue(maxsize=1) for u in Universe
        }
        self._dirty: set[Universe] = set()
        self._diffed: set[Universe] = set()
        self._accepting = True
        self._closed = False
        self._task: asyncio.Task[None] | None = None

        # Set once the store is connected and snapshots are loaded
        self.ready = asyncio.Event()

    # =========================================================================
    # DIFFING
    # =========================================================================

    def compute_config_delta(self, candidates: Iterable[tuple[bytes, str]]) -> ConfigDelta:
        """
        Filter rendered mesh objects down to what must be applied or deleted.

        Args:
            candidates: (serialized object, kind) pairs for the whole desired state.

        Returns:
            ConfigDelta with changed objects (in candidate order), their kinds,
            and refs for objects present last time but absent now.
        """
        previous = self._snapshots[Universe.CONFIG]
        fresh: dict[str, ConfigObjectRef] = {}
        changed: list[bytes] = []
        changed_kinds: list[str] = []

        for data, kind in candidates:
            ref = ConfigObjectRef.from_object(data, kind)
            fresh[ref.key] = ref
            prior = previous.get(ref.key)
            if prior is None or prior.hash != ref.hash:
                changed.append(data)
                changed_kinds.append(ref.kind)

        deleted = [ref for key, ref in previous.items() if key not in fresh]

        self._replace(Universe.CONFIG, fresh)
        logger.debug(
            "Computed mesh config delta",
            total=len(fresh),
            changed=len(changed),
            deleted=len(deleted),
        )
        return ConfigDelta(changed, changed_kinds, deleted)

    def compute_workload_delta(self, candidates: Iterable[Mapping[str, Any]]) -> WorkloadDelta:
        """
        Filter rendered workload manifests down to what must be applied or deleted.

        Same algorithm as ``compute_config_delta`` over the manifest universe.
        """
        previous = self._snapshots[Universe.WORKLOAD]
        fresh: dict[str, WorkloadObjectRef] = {}
        changed: list[dict[str, Any]] = []

        for manifest in candidates:
            ref = WorkloadObjectRef.from_manifest(manifest)
            fresh[ref.key] = ref
            prior = previous.get(ref.key)
            if prior is None or prior.hash != ref.hash:
                changed.append(dict(manifest))

        deleted = [ref for key, ref in previous.items() if key not in fresh]

        self._replace(Universe.WORKLOAD, fresh)
        logger.debug(
            "Computed workload delta",
            total=len(fresh),
            changed=len(changed),
            deleted=len(deleted),
        )
        return WorkloadDelta(changed, deleted)

    def _replace(self, universe: Universe, fresh: dict[str, Any]) -> None:
        self._snapshots[universe] = MappingProxyType(fresh)
        self._diffed.add(universe)
        self._signal(universe)

    def _signal(self, universe: Universe) -> None:
        if not self._accepting:
            logger.debug("Snapshot changed after shutdown began; not persisting", universe=universe.value)
            return
        self._dirty.add(universe)
        with contextlib.suppress(asyncio.QueueFull):
            # A token is already waiting; the drain writes the latest snapshot anyway
            self._signals[universe].put_nowait(None)

    def pending_signals(self, universe: Universe) -> int:
        """Number of unconsumed dirty tokens for ``universe`` (never more than 1)."""
        return self._signals[universe].qsize()

    def snapshot_keys(self, universe: Universe) -> frozenset[str]:
        """Identity keys of the current snapshot."""
        return frozenset(self._snapshots[universe])

    # =========================================================================
    # BACKGROUND PERSISTENCE
    # =========================================================================

    def start(self) -> asyncio.Task[None]:
        """Launch the background connect/load/drain task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="sync-state-persistence")
        return self._task

    async def load_initial(self) -> bool:
        """
        Try once to connect and load the persisted snapshots.

        Call before the first diff pass and before ``start()``.

        Returns:
            True when the snapshots are loaded. False when Redis did not
            answer; ``start()`` then keeps retrying in the background.
        """
        if self.ready.is_set():
            return True
        client = self._client()
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning("Redis unavailable at startup, retrying in background", error=str(e))
            return False
        self._set_connected(client)
        await self._load_snapshots()
        self.ready.set()
        return True

    async def _run(self) -> None:
        if not self.ready.is_set():
            await self._connect()
            await self._load_snapshots()
            self.ready.set()
        async with asyncio.TaskGroup() as tg:
            for universe in Universe:
                tg.create_task(self._drain(universe), name=f"persist-{universe.value}")

    def _client(self) -> Redis:
        if self._connecting is None:
            self._connecting = self._redis_factory()
        return self._connecting

    async def _connect(self) -> None:
        client = self._client()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RedisError, OSError)),
            wait=wait_fixed(self._settings.retry_interval),
            stop=stop_never,
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                await client.ping()
        self._set_connected(client)

    def _set_connected(self, client: Redis) -> None:
        self._redis = client
        self._connecting = None
        logger.info(
            "Connected to Redis for state backup",
            host=self._settings.redis_host,
            port=self._settings.redis_port,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "Waiting for Redis availability",
            retry_in=self._settings.retry_interval,
            attempt=retry_state.attempt_number,
            error=str(error),
        )

    async def _load_snapshots(self) -> None:
        for universe in Universe:
            if universe in self._diffed:
                # A diff pass ran while we were waiting for Redis; memory is newer
                logger.info("Keeping in-memory snapshot newer than persisted copy", universe=universe.value)
                continue
            self._snapshots[universe] = MappingProxyType(await self._load(universe))

    async def _load(self, universe: Universe) -> dict[str, Any]:
        key = self._keys[universe]
        if self._redis is None:
            logger.warning("Not connected to Redis, skipping snapshot load", universe=universe.value, key=key)
            return {}
        try:
            raw = await self._redis.get(key)
        except RedisError as e:
            logger.error("Failed to read snapshot from Redis", universe=universe.value, key=key, error=str(e))
            return {}
        if raw is None:
            logger.info("No persisted snapshot found", universe=universe.value, key=key)
            return {}
        try:
            loaded: dict[str, Any] = _ADAPTERS[universe].validate_json(raw)
        except ValidationError as e:
            logger.error(
                "Problem deserializing snapshot from Redis",
                universe=universe.value,
                key=key,
                error=str(e),
            )
            return {}
        logger.info("Loaded snapshot from Redis", universe=universe.value, key=key, objects=len(loaded))
        return loaded

    async def _drain(self, universe: Universe) -> None:
        queue = self._signals[universe]
        while True:
            await queue.get()
            await self._persist(universe)

    async def _persist(self, universe: Universe) -> None:
        if self._redis is None:
            return
        self._dirty.discard(universe)
        # Serialize whatever snapshot is current at write time
        snapshot = self._snapshots[universe]
        key = self._keys[universe]
        payload = _ADAPTERS[universe].dump_json(dict(snapshot))
        try:
            await self._redis.set(key, payload)
        except asyncio.CancelledError:
            # Shutdown interrupted the write; the final drain retries it
            self._dirty.add(universe)
            raise
        except RedisError as e:
            self._dirty.add(universe)
            logger.error(
                "Failed to save snapshot to Redis",
                universe=universe.value,
                key=key,
                objects=len(snapshot),
                error=str(e),
            )
            return
        logger.debug("Persisted snapshot", universe=universe.value, key=key, objects=len(snapshot))

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def close(self) -> None:
        """
        Stop persistence and release the Redis connection.

        Order matters:
        1. Stop accepting dirty signals, so a late diff pass cannot enqueue
           into a loop that is going away.
        2. Stop the drain task.
        3. Final drain: persist any universe still dirty.
        4. Close the connection.

        Idempotent, and safe when Redis was never reached.
        """
        if self._closed:
            return
        self._closed = True
        self._accepting = False

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        if self._redis is not None:
            for universe in Universe:
                if universe in self._dirty:
                    await self._persist(universe)
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis state backup connection")
        elif self._connecting is not None:
            await self._connecting.aclose()
            self._connecting = None
            logger.info("Released unconnected Redis client")
