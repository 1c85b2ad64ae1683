# ABOUTME: Pytest fixtures and configuration for mesh GitOps operator tests
# ABOUTME: Provides settings, faked collaborators and workload builders for unit and integration tests

import asyncio
import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from mesh_operator.config import (
    OperatorSettings,
    ReconcileSettings,
    SafetySettings,
    StateSettings,
    SyncSettings,
)
from mesh_operator.gitops.state import SyncState
from mesh_operator.install.evaluator import JsonTreeEvaluator, RenderedState, SidecarFragment
from mesh_operator.install.installer import Installer
from mesh_operator.meshapi.client import MeshClient
from mesh_operator.utils.kube import ClusterClient
from mesh_operator.utils.logging import AuditLogger
from mesh_operator.utils.safety import SafetyGuard
from mesh_operator.wellknown import (
    ANNOTATION_INJECT_SIDECAR_TO_PORT,
    LABEL_CLUSTER,
    LABEL_WORKLOAD,
    PROXY_PORT_NAME,
)


@pytest.fixture
def state_settings() -> StateSettings:
    """Create state store settings with a short retry interval."""
    return StateSettings(retry_interval=0.01)


@pytest.fixture
def mock_safety_settings() -> SafetySettings:
    """Create permissive safety settings for testing."""
    return SafetySettings(read_only=False, disable_destructive=False, audit_log=None)


@pytest.fixture
def read_only_safety_settings() -> SafetySettings:
    """Create read-only safety settings for testing."""
    return SafetySettings(read_only=True, disable_destructive=True, audit_log=None)


@pytest.fixture
def safety_guard(mock_safety_settings: SafetySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_safety_settings)


@pytest.fixture
def read_only_safety_guard(read_only_safety_settings: SafetySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_safety_settings)


@pytest.fixture
def operator_settings(tmp_path, state_settings, mock_safety_settings) -> OperatorSettings:
    """Create operator settings pointing at a temporary bundled tree."""
    return OperatorSettings(
        mesh_name="mesh-sample",
        watch_namespaces=["apps"],
        config_root=tmp_path / "config",
        sync=SyncSettings(remote=""),
        state=state_settings,
        reconcile=ReconcileSettings(interval=0.01, mtls_enabled=True, sidecar_workers=1),
        safety=mock_safety_settings,
    )


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Create a fake async Redis client with an empty store."""
    redis = AsyncMock()
    redis.ping.return_value = True
    redis.get.return_value = None
    redis.set.return_value = True
    return redis


@pytest.fixture
def sync_state(state_settings: StateSettings, fake_redis: AsyncMock) -> SyncState:
    """Create a change-set engine backed by the fake Redis client."""
    return SyncState(state_settings, redis_factory=lambda: fake_redis)


@pytest.fixture
def mock_cluster() -> AsyncMock:
    """Create a mock cluster client with empty namespaces."""
    cluster = AsyncMock(spec=ClusterClient)
    cluster.list_pods.return_value = []
    cluster.list_deployments.return_value = []
    cluster.list_statefulsets.return_value = []
    cluster.apply.side_effect = lambda obj, mode=None: obj
    return cluster


@pytest.fixture
def mock_mesh() -> MagicMock:
    """Create a mock mesh client recording submitted commands."""
    mesh = MagicMock(spec=MeshClient)
    mesh.closed = asyncio.Event()
    return mesh


@pytest.fixture
def mock_evaluator() -> MagicMock:
    """Create a mock evaluator rendering an empty desired state."""
    evaluator = MagicMock(spec=JsonTreeEvaluator)
    evaluator.render_all.return_value = RenderedState(config_objects=[], manifests=[])
    evaluator.render_sidecar_for.return_value = SidecarFragment(
        container={"name": "sidecar", "ports": [{"name": PROXY_PORT_NAME, "containerPort": 10808}]},
        volumes=[{"name": "spire-socket", "emptyDir": {}}],
    )
    evaluator.render_allowlist.return_value = b'{"listener_key":"redis-ingress"}'
    evaluator.render_sidecar_config.return_value = []
    return evaluator


@pytest.fixture
def mock_audit() -> MagicMock:
    """Create a mock audit logger."""
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def installer(
    operator_settings,
    mock_cluster,
    mock_mesh,
    mock_evaluator,
    sync_state,
    safety_guard,
    mock_audit,
) -> Installer:
    """Create an installer wired to mocked collaborators."""
    return Installer(
        operator_settings,
        cluster=mock_cluster,
        mesh=mock_mesh,
        evaluator=mock_evaluator,
        sync_state=sync_state,
        guard=safety_guard,
        audit=mock_audit,
    )


def make_deployment(
    name: str = "web",
    namespace: str = "apps",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    containers: list[dict[str, Any]] | None = None,
    kind: str = "Deployment",
) -> dict[str, Any]:
    """Build a live workload dict as returned by the cluster client."""
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": "1"},
        "spec": {
            "template": {
                "metadata": {"labels": dict(labels or {}), "annotations": dict(annotations or {})},
                "spec": {"containers": containers or [{"name": name, "image": f"{name}:latest"}]},
            },
        },
    }


def make_pod(name: str, cluster: str | None = None, sidecar: bool = False) -> dict[str, Any]:
    """Build a live pod dict, optionally carrying a sidecar proxy port."""
    containers = [{"name": "app", "ports": [{"name": "http", "containerPort": 8080}]}]
    if sidecar:
        containers.append({"name": "sidecar", "ports": [{"name": PROXY_PORT_NAME, "containerPort": 10808}]})
    labels = {LABEL_CLUSTER: cluster} if cluster else {}
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": "apps", "labels": labels},
        "spec": {"containers": containers},
    }


@pytest.fixture
def labelled_injectable_deployment() -> dict[str, Any]:
    """Create a labelled deployment requesting sidecar injection."""
    return make_deployment(
        labels={LABEL_CLUSTER: "web", LABEL_WORKLOAD: "mesh-sample.web"},
        annotations={ANNOTATION_INJECT_SIDECAR_TO_PORT: "8080"},
    )


@pytest.fixture
def deployment_factory():
    """Factory building live workload dicts."""
    return make_deployment


@pytest.fixture
def pod_factory():
    """Factory building live pod dicts."""
    return make_pod


# Integration test fixtures


@pytest.fixture
def redis_url() -> str | None:
    """Get Redis URL from environment."""
    return os.environ.get("MESH_OPERATOR_TEST_REDIS_URL")
