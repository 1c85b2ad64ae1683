# ABOUTME: Process entry point wiring the sync controller, change-set engine, mesh client and installer
# ABOUTME: Starts every long-running loop, waits for SIGINT/SIGTERM, then shuts down in order

"""Mesh GitOps operator entry point."""

from __future__ import annotations

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from mesh_operator import __version__
from mesh_operator.config import load_settings
from mesh_operator.gitops.state import SyncState
from mesh_operator.gitops.sync import RepositoryError, RepositorySync
from mesh_operator.install.evaluator import JsonTreeEvaluator
from mesh_operator.install.installer import Installer
from mesh_operator.meshapi.client import MeshClient
from mesh_operator.utils.kube import ClusterClient
from mesh_operator.utils.logging import AuditLogger, configure_logging
from mesh_operator.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from mesh_operator.config import OperatorSettings

logger = structlog.get_logger(__name__)


@dataclass
class Operator:
    """Running components, as yielded by ``lifespan``."""

    settings: OperatorSettings
    state: SyncState
    sync: RepositorySync
    mesh: MeshClient
    installer: Installer
    watch_task: asyncio.Task[None]


@asynccontextmanager
async def lifespan(settings: OperatorSettings, cluster: ClusterClient | None = None) -> AsyncIterator[Operator]:
    """Start all components; on exit stop them in reverse order."""
    guard = SafetyGuard(settings.safety)
    audit = AuditLogger(settings.safety.audit_log)
    if guard.read_only:
        logger.warning("Operator running in read-only mode; no cluster or mesh writes will be made")

    if cluster is None:
        cluster = await asyncio.to_thread(ClusterClient.from_environment)

    state = SyncState(settings.state)
    mesh = MeshClient(
        settings.mesh_cli,
        settings.mesh_cli_args,
        guard=guard,
        audit=audit,
        requeue_delay=settings.requeue_delay,
    )
    installer = Installer(
        settings,
        cluster=cluster,
        mesh=mesh,
        evaluator=JsonTreeEvaluator(settings.content_root),
        sync_state=state,
        guard=guard,
        audit=audit,
    )
    sync = RepositorySync.from_settings(
        settings.sync,
        on_revision_changed=installer.apply_desired_state,
        sync_state=state,
        fallback_root=settings.config_root,
    )

    watch_task: asyncio.Task[None] | None = None
    try:
        # Snapshots must be loaded before the first diff pass sees the bundled tree
        await state.load_initial()
        state.start()
        await sync.bootstrap()
        mesh.start()
        await installer.start()
        watch_task = asyncio.create_task(sync.watch(), name="repository-watch")
        logger.info("Operator started", mesh=settings.mesh_name, namespaces=list(installer.watch_namespaces))

        yield Operator(settings, state, sync, mesh, installer, watch_task)
    finally:
        # Closing the sync controller also closes the change-set engine
        await sync.close()
        if watch_task is not None:
            await watch_task
        await installer.close()
        await mesh.close()
        logger.info("Operator stopped")


async def run(settings: OperatorSettings) -> None:
    """Run until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with lifespan(settings):
        await stop.wait()
        logger.info("Shutdown signal received")


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the mesh GitOps operator."""
    try:
        settings = load_settings()
    except ValidationError as e:
        configure_logging(level="INFO")
        logger.error("Invalid configuration", error=str(e))
        sys.exit(2)

    configure_logging(level=settings.log_level, json_output=settings.json_logs)
    logger.info("Mesh GitOps operator starting", version=__version__)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Operator interrupted")
        sys.exit(0)
    except RepositoryError as e:
        logger.error("Repository bootstrap failed", step=e.step, error=e.message)
        sys.exit(1)
    except Exception as e:
        logger.error("Operator error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
