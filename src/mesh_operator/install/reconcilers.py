# ABOUTME: Reconciler functions repairing live workloads: label stamping, sidecar injection, ingress allowlist
# ABOUTME: Each reconciler is idempotent and decides on its own whether to act on a resource

"""
Reconcilers run by the reconciliation dispatch loop.

Resource reconcilers receive one live resource (a dict as returned by the
cluster client) and the installer. They mutate the resource only when they
act, and re-apply it through ``installer.apply_resource``. Pass reconcilers
receive every pod of the pass at once.

All marker labels and annotations are read from the pod template
(``spec.template.metadata``), never from the workload's own metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from mesh_operator.install.evaluator import EvaluatorError
from mesh_operator.meshapi.commands import make_apply
from mesh_operator.wellknown import (
    ANNOTATION_CONFIGURE_SIDECAR,
    ANNOTATION_INJECT_SIDECAR_TO_PORT,
    LABEL_CLUSTER,
    LABEL_WORKLOAD,
    PROXY_PORT_NAME,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from mesh_operator.install.installer import Installer

    ResourceReconciler = Callable[[dict[str, Any], Installer], Awaitable[None]]
    PassReconciler = Callable[[list[dict[str, Any]], Installer], Awaitable[None]]

logger = structlog.get_logger(__name__)


def _template_metadata(resource: dict[str, Any]) -> dict[str, Any]:
    template = (resource.get("spec") or {}).get("template") or {}
    return template.get("metadata") or {}


def has_proxy_port(containers: Sequence[dict[str, Any]]) -> bool:
    """True when any container already exposes the sidecar's proxy port."""
    return any(
        port.get("name") == PROXY_PORT_NAME
        for container in containers
        for port in container.get("ports") or []
    )


async def reconcile_labels(resource: dict[str, Any], installer: Installer) -> None:
    """
    Stamp mesh identity labels on a workload's pod template.

    Adds the cluster label (the workload name, used for service discovery)
    and the workload label (``<mesh>.<cluster>``, matched against mTLS
    subjects). A template that already has the workload label is left alone.
    If the template requests a sidecar, its mesh configuration is queued in
    the background; a failure there does not undo the labels.
    """
    if LABEL_WORKLOAD in (_template_metadata(resource).get("labels") or {}):
        return

    name = resource["metadata"]["name"]
    logger.info("Reconciling workload labels", kind=resource.get("kind"), name=name)

    metadata = resource.setdefault("spec", {}).setdefault("template", {}).setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels[LABEL_CLUSTER] = name
    labels[LABEL_WORKLOAD] = f"{installer.mesh_name}.{name}"
    metadata["labels"] = labels

    annotations = metadata.get("annotations") or {}
    if ANNOTATION_INJECT_SIDECAR_TO_PORT in annotations or annotations.get(ANNOTATION_CONFIGURE_SIDECAR) == "true":
        installer.configure_sidecar(name)

    await installer.apply_resource(resource)


async def inject_sidecar(resource: dict[str, Any], installer: Installer) -> None:
    """
    Append the mesh sidecar to a workload that asks for one.

    No-op unless the template carries a non-empty inject-sidecar-to
    annotation and a cluster label, and no container already exposes the
    proxy port.
    """
    metadata = _template_metadata(resource)
    name = (resource.get("metadata") or {}).get("name")
    if not (metadata.get("annotations") or {}).get(ANNOTATION_INJECT_SIDECAR_TO_PORT):
        return
    cluster = (metadata.get("labels") or {}).get(LABEL_CLUSTER)
    if not cluster:
        logger.info("Workload has no cluster label, skipping sidecar injection", name=name)
        return
    pod_spec = resource["spec"]["template"].get("spec") or {}
    containers = pod_spec.get("containers") or []
    if has_proxy_port(containers):
        return

    try:
        fragment = await installer.render_sidecar_for(cluster)
    except EvaluatorError as e:
        logger.error("Unable to render sidecar for injection", name=name, cluster=cluster, error=str(e))
        return

    pod_spec["containers"] = [*containers, fragment.container]
    pod_spec["volumes"] = [*(pod_spec.get("volumes") or []), *fragment.volumes]
    secrets = pod_spec.get("imagePullSecrets") or []
    if not any(secret.get("name") == installer.image_pull_secret for secret in secrets):
        secrets.append({"name": installer.image_pull_secret})
    pod_spec["imagePullSecrets"] = secrets
    resource["spec"]["template"]["spec"] = pod_spec

    logger.info(
        "Injecting sidecar",
        kind=resource.get("kind"),
        name=name,
        namespace=resource["metadata"].get("namespace"),
        cluster=cluster,
    )
    await installer.apply_resource(resource)


async def reconcile_allowlist(pods: list[dict[str, Any]], installer: Installer) -> None:
    """
    Keep the ingress listener's allowed subjects equal to the live sidecars.

    Collects the cluster label of every pod exposing the proxy port. Only
    when the sorted set differs from the last one sent is a new listener
    rendered and applied, so a steady mesh causes no mesh traffic.
    """
    found = set()
    for pod in pods:
        if not has_proxy_port((pod.get("spec") or {}).get("containers") or []):
            continue
        cluster = ((pod.get("metadata") or {}).get("labels") or {}).get(LABEL_CLUSTER)
        if cluster:
            found.add(cluster)

    sidecars = sorted(found)
    if not sidecars or sidecars == installer.sidecar_list:
        return

    logger.info("Sidecars in the environment changed, updating ingress allowlist", sidecars=sidecars)
    try:
        listener = await installer.render_allowlist(sidecars)
    except EvaluatorError as e:
        logger.error("Unable to render ingress allowlist", error=str(e))
        return
    installer.sidecar_list = sidecars
    installer.submit_mesh(make_apply("listener", listener))


@dataclass
class ReconcilerRegistry:
    """Reconcilers per resource kind, run in registration order."""

    pods: list[ResourceReconciler] = field(default_factory=list)
    deployments: list[ResourceReconciler] = field(default_factory=list)
    statefulsets: list[ResourceReconciler] = field(default_factory=list)
    passes: list[PassReconciler] = field(default_factory=list)


def default_registry(mtls_enabled: bool) -> ReconcilerRegistry:
    registry = ReconcilerRegistry(
        deployments=[reconcile_labels, inject_sidecar],
        statefulsets=[reconcile_labels],
    )
    if mtls_enabled:
        registry.passes.append(reconcile_allowlist)
    return registry
