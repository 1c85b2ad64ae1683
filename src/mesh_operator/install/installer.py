# ABOUTME: Installer owning the desired-state description, the sync callback and the reconciliation loop
# ABOUTME: Applies rendered deltas to the cluster and mesh, and periodically repairs live workloads

"""
Installer: desired state in, cluster and mesh writes out.

=============================================================================
TWO ENTRY POINTS, ONE LOCK
=============================================================================

1. apply_desired_state()   called at startup and whenever the repository
                           head moves. Renders, diffs, applies the deltas.
2. dispatch_loop()         every 30 seconds, scans watched namespaces and
                           runs the registered reconcilers on what it finds.

The watched-namespace list is the piece of desired state both share. The
dispatch loop holds the READ side of an RWLock for a whole scan; replacing
the list takes the WRITE side, so a scan never sees the list change halfway.

=============================================================================
BACKGROUND SIDECAR CONFIGURATION
=============================================================================

The label reconciler asks for sidecar mesh config without waiting for it.
Requests go on a bounded queue served by a fixed number of workers, so a
pass that labels a hundred workloads cannot start a hundred renders at once.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog

from mesh_operator.install.evaluator import EvaluatorError
from mesh_operator.install.reconcilers import default_registry
from mesh_operator.meshapi.commands import apply_all, delete_all_by_refs
from mesh_operator.utils.kube import ApplyMode, ClusterError, object_ref
from mesh_operator.utils.locks import RWLock
from mesh_operator.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mesh_operator.config import OperatorSettings
    from mesh_operator.gitops.state import SyncState, WorkloadObjectRef
    from mesh_operator.install.evaluator import ConfigEvaluator, SidecarFragment
    from mesh_operator.install.reconcilers import ReconcilerRegistry, ResourceReconciler
    from mesh_operator.meshapi.client import MeshClient
    from mesh_operator.meshapi.commands import Command
    from mesh_operator.utils.kube import ClusterClient
    from mesh_operator.utils.logging import AuditLogger
    from mesh_operator.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)

# Pending sidecar configuration requests per worker
SIDECAR_QUEUE_DEPTH = 8


class Installer:
    """
    Applies desired state and runs the reconciliation dispatch loop.

    LIFECYCLE:
    ----------
        installer = Installer(settings, cluster=..., mesh=..., ...)
        await installer.start()                 # initial apply + loop + workers
        sync = RepositorySync(..., on_revision_changed=installer.apply_desired_state)
        ...
        await installer.close()
    """

    def __init__(
        self,
        settings: OperatorSettings,
        *,
        cluster: ClusterClient,
        mesh: MeshClient,
        evaluator: ConfigEvaluator,
        sync_state: SyncState,
        guard: SafetyGuard,
        audit: AuditLogger,
        registry: ReconcilerRegistry | None = None,
    ) -> None:
        self.mesh_name = settings.mesh_name
        self.image_pull_secret = settings.reconcile.image_pull_secret
        # Cluster labels last sent in the ingress allowlist, sorted
        self.sidecar_list: list[str] = []
        self.registry = registry or default_registry(settings.reconcile.mtls_enabled)

        self._cluster = cluster
        self._mesh = mesh
        self._evaluator = evaluator
        self._state = sync_state
        self._guard = guard
        self._audit = audit

        self._watch_namespaces: tuple[str, ...] = tuple(settings.watch_namespaces)
        self._interval = settings.reconcile.interval
        self._workers = settings.reconcile.sidecar_workers

        self._lock = RWLock()
        self._apply_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._sidecar_requests: asyncio.Queue[str] = asyncio.Queue(maxsize=self._workers * SIDECAR_QUEUE_DEPTH)
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def watch_namespaces(self) -> tuple[str, ...]:
        return self._watch_namespaces

    async def set_watch_namespaces(self, namespaces: Sequence[str]) -> None:
        """Replace the watched namespaces once no reconciliation scan is running."""
        async with self._lock.write():
            self._watch_namespaces = tuple(namespaces)
        logger.info("Updated watched namespaces", namespaces=list(namespaces))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.apply_desired_state()
        self._tasks.append(asyncio.create_task(self.dispatch_loop(), name="reconciliation-dispatch"))
        for n in range(self._workers):
            self._tasks.append(asyncio.create_task(self._sidecar_worker(), name=f"sidecar-config-{n}"))

    async def close(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # =========================================================================
    # CLUSTER AND MESH WRITES
    # =========================================================================

    async def apply_resource(self, obj: dict[str, Any], action: str = "reconcile_workload") -> bool:
        """
        Create-or-update ``obj`` in the cluster, guarded and audited.

        Returns:
            True if the object was written.
        """
        target = f"{obj.get('kind')}/{object_ref(obj)}"
        blocked = self._guard.check_write_operation(action)
        if blocked:
            logger.warning("Cluster write blocked", target=target, reason=blocked.reason, setting=blocked.setting)
            self._audit.log_blocked(action, target, blocked.reason)
            return False
        try:
            await self._cluster.apply(obj, ApplyMode.CREATE_OR_UPDATE)
        except ClusterError as e:
            logger.error("Failed to apply object", target=target, error=str(e))
            self._audit.log_error(action, target, str(e))
            return False
        self._audit.log_applied(action, target)
        return True

    async def delete_resource(self, ref: WorkloadObjectRef) -> bool:
        """Delete a manifest removed from the desired state, guarded and audited."""
        action = "delete_manifest"
        target = f"{ref.kind.kind}/{ref.namespace}/{ref.name}" if ref.namespace else f"{ref.kind.kind}/{ref.name}"
        blocked = self._guard.check_destructive_operation(action)
        if blocked:
            logger.warning("Cluster delete blocked", target=target, reason=blocked.reason, setting=blocked.setting)
            self._audit.log_blocked(action, target, blocked.reason)
            return False
        try:
            await self._cluster.delete(ref.kind.api_version, ref.kind.kind, ref.name, ref.namespace or None)
        except ClusterError as e:
            logger.error("Failed to delete object", target=target, error=str(e))
            self._audit.log_error(action, target, str(e))
            return False
        self._audit.log_deleted(action, target)
        return True

    def submit_mesh(self, command: Command) -> None:
        self._mesh.submit(command)

    async def render_sidecar_for(self, cluster_label: str) -> SidecarFragment:
        return await asyncio.to_thread(self._evaluator.render_sidecar_for, cluster_label)

    async def render_allowlist(self, cluster_labels: Sequence[str]) -> bytes:
        return await asyncio.to_thread(self._evaluator.render_allowlist, cluster_labels)

    # =========================================================================
    # DESIRED STATE
    # =========================================================================

    async def apply_desired_state(self) -> None:
        """
        Render the desired state and apply only what changed.

        Order: workload manifests (create-or-update, then deletes), then mesh
        config (applies, then deletes), then the watched-namespace list.
        A render failure skips the whole pass; the snapshots stay as they
        were, so the next pass diffs against the last applied state.
        """
        async with self._apply_lock:
            new_correlation_id()
            logger.info("Applying desired state")
            try:
                rendered = await asyncio.to_thread(self._evaluator.render_all)
            except EvaluatorError as e:
                logger.error("Failed to render desired state", source=e.source, error=e.message)
                return

            workloads = self._state.compute_workload_delta(rendered.manifests)
            for manifest in workloads.changed:
                await self.apply_resource(manifest, action="apply_manifest")
            for ref in workloads.deleted:
                await self.delete_resource(ref)

            config = self._state.compute_config_delta(rendered.config_objects)
            applied = apply_all(self._mesh, config.changed, config.changed_kinds)
            deleted = delete_all_by_refs(self._mesh, config.deleted)

            if rendered.watch_namespaces is not None and tuple(rendered.watch_namespaces) != self._watch_namespaces:
                await self.set_watch_namespaces(rendered.watch_namespaces)

            logger.info(
                "Desired state applied",
                manifests_changed=len(workloads.changed),
                manifests_deleted=len(workloads.deleted),
                mesh_applied=applied,
                mesh_deleted=deleted,
            )

    # =========================================================================
    # SIDECAR CONFIGURATION WORKERS
    # =========================================================================

    def configure_sidecar(self, cluster_label: str) -> None:
        """Queue mesh configuration for a sidecar. Best effort; never blocks."""
        try:
            self._sidecar_requests.put_nowait(cluster_label)
        except asyncio.QueueFull:
            logger.warning("Sidecar configuration queue full, dropping request", cluster=cluster_label)

    async def _sidecar_worker(self) -> None:
        while True:
            cluster_label = await self._sidecar_requests.get()
            try:
                objects = await asyncio.to_thread(self._evaluator.render_sidecar_config, cluster_label)
            except EvaluatorError as e:
                logger.error("Unable to render sidecar configuration", cluster=cluster_label, error=str(e))
                continue
            sent = apply_all(self._mesh, [data for data, _ in objects], [kind for _, kind in objects])
            logger.info("Configured sidecar", cluster=cluster_label, commands=sent)

    # =========================================================================
    # RECONCILIATION DISPATCH LOOP
    # =========================================================================

    def _stopping(self) -> bool:
        return self._stop.is_set() or self._mesh.closed.is_set()

    async def dispatch_loop(self) -> None:
        """Run a reconciliation pass every interval until stopped or the mesh client closes."""
        logger.info(
            "Beginning reconciliation loop for pods, deployments and statefulsets",
            interval=self._interval,
        )
        while not self._stopping():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            if self._stopping():
                break
            async with self._lock.read():
                await self.reconcile_once()
        logger.info("Mesh client closed or operator stopping, reconciliation loop ended")

    async def reconcile_once(self) -> None:
        """One scan of every watched namespace."""
        new_correlation_id()
        all_pods: list[dict[str, Any]] = []
        pods_complete = True

        for namespace in self._watch_namespaces:
            log = logger.bind(namespace=namespace)

            try:
                pods = await self._cluster.list_pods(namespace)
            except ClusterError as e:
                log.error("Failed to list pods for reconciliation", error=str(e))
                pods_complete = False
            else:
                all_pods.extend(pods)
                await self._dispatch(pods, self.registry.pods)

            try:
                deployments = await self._cluster.list_deployments(namespace)
            except ClusterError as e:
                log.error("Failed to list deployments for reconciliation", error=str(e))
            else:
                await self._dispatch(deployments, self.registry.deployments)

            try:
                statefulsets = await self._cluster.list_statefulsets(namespace)
            except ClusterError as e:
                log.error("Failed to list statefulsets for reconciliation", error=str(e))
            else:
                await self._dispatch(statefulsets, self.registry.statefulsets)

        if not self.registry.passes:
            return
        if not pods_complete:
            logger.warning("Pod listing incomplete, skipping pass-level reconcilers")
            return
        for reconciler in self.registry.passes:
            try:
                await reconciler(all_pods, self)
            except Exception:
                logger.exception("Pass reconciler failed", reconciler=reconciler.__name__)

    async def _dispatch(self, resources: list[dict[str, Any]], reconcilers: Sequence[ResourceReconciler]) -> None:
        for resource in resources:
            for reconciler in reconcilers:
                try:
                    await reconciler(resource, self)
                except Exception:
                    logger.exception(
                        "Reconciler failed",
                        reconciler=reconciler.__name__,
                        kind=resource.get("kind"),
                        ref=object_ref(resource),
                    )
