# ABOUTME: Configuration evaluator interface and a pre-rendered JSON tree implementation
# ABOUTME: Renders mesh config objects, workload manifests, sidecar fragments and the ingress allowlist

"""
Configuration evaluator.

The operator never interprets configuration schemas itself. It asks an
evaluator for rendered output and diffs that. ``ConfigEvaluator`` is the
interface; ``JsonTreeEvaluator`` reads output that an upstream build step has
already rendered to JSON.

TREE LAYOUT:
------------
    <content root>/
        operator.json          {"watch_namespaces": [...]}          optional
        mesh/**/*.json         mesh config objects (object or list)
        k8s/**/*.json          manifests (object, list, or kind: List)
        sidecar.json           {"container": {...}, "volumes": [...]}
        sidecar-config/*.json  mesh objects configuring one sidecar
        allowlist.json         listener object for the ingress allowlist

``{{cluster}}`` inside sidecar templates is replaced by the cluster label. A
value that is exactly ``"{{allowed_subjects}}"`` in allowlist.json is
replaced by the list of cluster labels.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from mesh_operator.wellknown import CATALOG_KIND

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = structlog.get_logger(__name__)

CLUSTER_PLACEHOLDER = "{{cluster}}"
SUBJECTS_PLACEHOLDER = "{{allowed_subjects}}"

# Most specific first: a route also carries domain_key and zone_key
_KIND_BY_FIELD: tuple[tuple[str, str], ...] = (
    ("service_id", CATALOG_KIND),
    ("route_key", "route"),
    ("listener_key", "listener"),
    ("proxy_key", "proxy"),
    ("cluster_key", "cluster"),
    ("domain_key", "domain"),
    ("zone_key", "zone"),
)


class EvaluatorError(Exception):
    """Rendering failed; the desired state for this pass is unusable."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class SidecarFragment(BaseModel):
    container: dict[str, Any]
    volumes: list[dict[str, Any]] = Field(default_factory=list)


class OperatorOverrides(BaseModel):
    watch_namespaces: list[str] | None = None


class RenderedState(NamedTuple):
    config_objects: list[tuple[bytes, str]]
    manifests: list[dict[str, Any]]
    # None leaves the current watched namespaces alone
    watch_namespaces: list[str] | None = None


class ConfigEvaluator(Protocol):
    """What the operator needs from a configuration evaluator. Methods may block."""

    def render_all(self) -> RenderedState: ...

    def render_sidecar_for(self, cluster_label: str) -> SidecarFragment: ...

    def render_allowlist(self, cluster_labels: Sequence[str]) -> bytes: ...

    def render_sidecar_config(self, cluster_label: str) -> list[tuple[bytes, str]]: ...


def infer_kind(body: Any) -> str:
    """Mesh object kind from its identity field, or ``""`` when unrecognizable."""
    if not isinstance(body, dict):
        return ""
    for field_name, kind in _KIND_BY_FIELD:
        if field_name in body:
            return kind
    return ""


def substitute(value: Any, placeholder: str, replacement: Any) -> Any:
    """
    Replace ``placeholder`` throughout a JSON-like value.

    A string equal to the placeholder becomes ``replacement`` itself (which
    may be a list); a string merely containing it gets a text substitution.
    """
    if isinstance(value, str):
        if value == placeholder:
            return replacement
        if placeholder in value and isinstance(replacement, str):
            return value.replace(placeholder, replacement)
        return value
    if isinstance(value, list):
        return [substitute(v, placeholder, replacement) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, placeholder, replacement) for k, v in value.items()}
    return value


def _encode(body: Any) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode()


class JsonTreeEvaluator:
    """Evaluator over a directory of pre-rendered JSON."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _read(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except OSError as e:
            raise EvaluatorError(str(path), f"unreadable: {e}") from e
        except ValueError as e:
            raise EvaluatorError(str(path), f"invalid JSON: {e}") from e

    def _documents(self, directory: str) -> Iterator[tuple[Path, Any]]:
        base = self.root / directory
        if not base.is_dir():
            return
        for path in sorted(base.rglob("*.json")):
            yield path, self._read(path)

    def _mesh_objects(self, directory: str, cluster_label: str | None = None) -> list[tuple[bytes, str]]:
        objects: list[tuple[bytes, str]] = []
        for path, document in self._documents(directory):
            if cluster_label is not None:
                document = substitute(document, CLUSTER_PLACEHOLDER, cluster_label)
            for body in document if isinstance(document, list) else [document]:
                kind = infer_kind(body)
                if not kind:
                    logger.warning("Unrecognized mesh object", path=str(path))
                objects.append((_encode(body), kind))
        return objects

    def _manifests(self) -> list[dict[str, Any]]:
        manifests: list[dict[str, Any]] = []
        for path, document in self._documents("k8s"):
            if isinstance(document, dict) and document.get("kind") == "List":
                document = document.get("items") or []
            for manifest in document if isinstance(document, list) else [document]:
                if not isinstance(manifest, dict) or not manifest.get("kind"):
                    raise EvaluatorError(str(path), "manifest without a kind")
                manifests.append(manifest)
        return manifests

    def render_all(self) -> RenderedState:
        """Render the complete desired state."""
        watch_namespaces = None
        overrides_path = self.root / "operator.json"
        if overrides_path.is_file():
            try:
                overrides = OperatorOverrides.model_validate(self._read(overrides_path))
            except ValidationError as e:
                raise EvaluatorError(str(overrides_path), str(e)) from e
            watch_namespaces = overrides.watch_namespaces

        state = RenderedState(
            config_objects=self._mesh_objects("mesh"),
            manifests=self._manifests(),
            watch_namespaces=watch_namespaces,
        )
        logger.info(
            "Rendered desired state",
            root=str(self.root),
            config_objects=len(state.config_objects),
            manifests=len(state.manifests),
        )
        return state

    def render_sidecar_for(self, cluster_label: str) -> SidecarFragment:
        """Sidecar container and volumes for one cluster."""
        path = self.root / "sidecar.json"
        document = substitute(self._read(path), CLUSTER_PLACEHOLDER, cluster_label)
        try:
            return SidecarFragment.model_validate(document)
        except ValidationError as e:
            raise EvaluatorError(str(path), str(e)) from e

    def render_allowlist(self, cluster_labels: Sequence[str]) -> bytes:
        """Ingress listener allowing the given cluster labels."""
        path = self.root / "allowlist.json"
        document = substitute(self._read(path), SUBJECTS_PLACEHOLDER, list(cluster_labels))
        return _encode(document)

    def render_sidecar_config(self, cluster_label: str) -> list[tuple[bytes, str]]:
        """Mesh config objects that route traffic through one cluster's sidecar."""
        return self._mesh_objects("sidecar-config", cluster_label)
