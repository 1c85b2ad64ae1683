# ABOUTME: Translates mesh configuration objects and refs into mesh control-plane CLI commands
# ABOUTME: Derives object identity keys and routes catalog entries to their own command queue

"""Command dispatch for the mesh control plane."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import structlog

from mesh_operator.wellknown import CATALOG_KIND, kind_flag, kind_key

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from mesh_operator.gitops.state import ConfigObjectRef

logger = structlog.get_logger(__name__)


class CommandQueue(str, Enum):
    CONTROL = "control"
    CATALOG = "catalog"


class Operation(str, Enum):
    APPLY = "mesh_apply"
    DELETE = "mesh_delete"


@dataclass(frozen=True)
class Command:
    """
    One CLI invocation against the mesh control plane.

    ``args`` is the argument string after the CLI name; ``stdin`` is piped
    in when set. ``result_logger(output, error)`` is called exactly once
    per execution attempt, with ``error`` None on success.
    """

    target_queue: CommandQueue
    args: str
    operation: Operation
    kind: str
    key: str
    stdin: bytes | None = None
    requeue: bool = False
    result_logger: Callable[[str, str | None], None] | None = field(default=None, compare=False)

    @property
    def target(self) -> str:
        """``kind/key`` label for logs and the audit trail."""
        return f"{self.kind}/{self.key}"

    @property
    def destructive(self) -> bool:
        return self.operation is Operation.DELETE


class CommandSink(Protocol):
    def submit(self, command: Command) -> None: ...


def object_key(kind: str, data: bytes) -> str:
    """
    Extract the identity of a serialized mesh object.

    A missing key field is logged and yields ``""`` so the command is still
    issued and its log lines still show the kind.
    """
    field_name = kind_key(kind)
    try:
        body = json.loads(data)
    except ValueError:
        body = None
    value = body.get(field_name) if isinstance(body, dict) else None
    if value is None:
        logger.error(
            "No object key",
            kind=kind,
            field=field_name,
            object=data[:200].decode(errors="replace"),
        )
        return ""
    return value if isinstance(value, str) else json.dumps(value)


def route(kind: str) -> CommandQueue | None:
    """Queue for ``kind``: catalog entries go to CATALOG, other kinds to CONTROL, empty to nowhere."""
    if kind == CATALOG_KIND:
        return CommandQueue.CATALOG
    if kind:
        return CommandQueue.CONTROL
    return None


def _result_logger(operation: Operation, kind: str, key: str) -> Callable[[str, str | None], None]:
    verb = "apply" if operation is Operation.APPLY else "delete"

    def log_result(output: str, error: str | None) -> None:
        if error is not None:
            logger.error(f"Failed {verb}", kind=kind, key=key, error=error, output=output)
        else:
            logger.info(verb.capitalize(), kind=kind, key=key)

    return log_result


def _delete_args(kind: str, object_id: str, zone: str) -> str:
    args = f"delete {kind} --{kind_flag(kind)} {object_id}"
    if kind == CATALOG_KIND:
        # A catalog entry's zone is its mesh ID
        args += f" --mesh-id {zone}"
    return args


# =============================================================================
# BUILDERS
# =============================================================================


def make_apply(kind: str, data: bytes) -> Command:
    """Apply ``data`` by piping it to ``apply --kind <kind> -f -``; failures are requeued."""
    key = object_key(kind, data)
    return Command(
        target_queue=route(kind) or CommandQueue.CONTROL,
        args=f"apply --kind {kind} -f -",
        operation=Operation.APPLY,
        kind=kind,
        key=key,
        stdin=data,
        # Ordering dependencies (route before its cluster) resolve on a later attempt
        requeue=True,
        result_logger=_result_logger(Operation.APPLY, kind, key),
    )


def make_delete_by_ref(ref: ConfigObjectRef) -> Command:
    """Delete an object that no longer exists in the desired state, from its ref alone."""
    return Command(
        target_queue=route(ref.kind) or CommandQueue.CONTROL,
        args=_delete_args(ref.kind, ref.id, ref.zone),
        operation=Operation.DELETE,
        kind=ref.kind,
        key=ref.id,
        result_logger=_result_logger(Operation.DELETE, ref.kind, ref.id),
    )


# =============================================================================
# BATCH DISPATCH
# =============================================================================


def apply_all(sink: CommandSink, objects: Sequence[bytes], kinds: Sequence[str]) -> int:
    """Submit one apply per object. Returns the number of commands submitted."""
    sent = 0
    for data, kind in zip(objects, kinds, strict=True):
        if route(kind) is None:
            logger.error(
                "Loaded unexpected object, not recognizable as mesh config; ignoring",
                object=data[:200].decode(errors="replace"),
            )
            continue
        sink.submit(make_apply(kind, data))
        sent += 1
    return sent


def delete_all_by_refs(sink: CommandSink, refs: Iterable[ConfigObjectRef]) -> int:
    """Submit one delete per ref. Returns the number of commands submitted."""
    sent = 0
    for ref in refs:
        if route(ref.kind) is None:
            logger.error("Ref has no kind, not recognizable as mesh config; ignoring", key=ref.key)
            continue
        sink.submit(make_delete_by_ref(ref))
        sent += 1
    return sent
