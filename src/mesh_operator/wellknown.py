# ABOUTME: Well-known labels, annotations, and mesh object kinds shared across the operator
# ABOUTME: These strings are a wire contract with workloads and the mesh CLI; do not rename

"""Well-known marker strings and mesh object kind tables."""

from __future__ import annotations

# Pod-template labels stamped by the label reconciler.
LABEL_CLUSTER = "greymatter.io/cluster"
LABEL_WORKLOAD = "greymatter.io/workload"

# Pod-template annotations that request mesh participation.
ANNOTATION_INJECT_SIDECAR_TO_PORT = "greymatter.io/inject-sidecar-to"
ANNOTATION_CONFIGURE_SIDECAR = "greymatter.io/configure-sidecar"

# Container port name that marks an already-injected sidecar.
PROXY_PORT_NAME = "proxy"

CATALOG_KIND = "catalogservice"

# Field in each mesh object body that carries its ID.
KIND_KEY_NAMES: dict[str, str] = {
    "cluster": "cluster_key",
    "listener": "listener_key",
    "domain": "domain_key",
    "route": "route_key",
    "proxy": "proxy_key",
    "zone": "zone_key",
    CATALOG_KIND: "service_id",
}


def kind_key(kind: str) -> str:
    """Return the body field holding the ID for ``kind`` (``cluster`` -> ``cluster_key``)."""
    return KIND_KEY_NAMES.get(kind, f"{kind}_key")


def kind_flag(kind: str) -> str:
    """Return the CLI flag name identifying an object of ``kind`` on delete."""
    if kind == CATALOG_KIND:
        return "service-id"
    return f"{kind}-key"


def zone_key(kind: str) -> str:
    """Return the body field holding the zone; catalog entries store the mesh ID instead."""
    return "mesh_id" if kind == CATALOG_KIND else "zone_key"
