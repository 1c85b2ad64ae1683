# ABOUTME: Mesh control-plane client consuming two command queues and executing the mesh CLI
# ABOUTME: Guards every command with safety checks, audits results, and requeues failed applies

"""
Mesh control-plane client.

=============================================================================
HOW COMMANDS FLOW
=============================================================================

    apply_all(...) ──submit──▶ [control queue] ──consumer──▶ greymatter apply ...
                          └──▶ [catalog queue] ──consumer──▶ greymatter delete catalogservice ...

Two queues, one consumer each. Catalog entries get their own queue so a slow
or failing catalog never holds up the control-plane configuration, and the
other way around. Within a queue, commands run strictly one at a time, in
submission order.

A failed command with ``requeue`` set goes back on its queue after
``requeue_delay`` seconds. Apply failures are usually ordering problems (a
route referencing a cluster that is still queued) that fix themselves.
"""

from __future__ import annotations

import asyncio
import shlex
from typing import TYPE_CHECKING

import structlog

from mesh_operator.meshapi.commands import CommandQueue

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mesh_operator.meshapi.commands import Command
    from mesh_operator.utils.logging import AuditLogger
    from mesh_operator.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


class MeshClient:
    """
    Executes mesh commands through the mesh CLI.

    LIFECYCLE:
    ----------
        client = MeshClient("greymatter", [], guard=guard, audit=audit)
        client.start()
        client.submit(make_apply("cluster", data))
        ...
        await client.close()      # sets ``closed``, stops consumers
    """

    def __init__(
        self,
        cli: str,
        cli_args: Sequence[str] = (),
        *,
        guard: SafetyGuard,
        audit: AuditLogger,
        requeue_delay: float = 10.0,
    ) -> None:
        self._cli = cli
        self._cli_args = list(cli_args)
        self._guard = guard
        self._audit = audit
        self._requeue_delay = requeue_delay

        self._queues: dict[CommandQueue, asyncio.Queue[Command]] = {q: asyncio.Queue() for q in CommandQueue}
        self._consumers: list[asyncio.Task[None]] = []
        self._requeues: set[asyncio.Task[None]] = set()

        # Observed by long-running loops that must stop with the mesh client
        self.closed = asyncio.Event()

    def pending(self, queue: CommandQueue) -> int:
        return self._queues[queue].qsize()

    def submit(self, command: Command) -> None:
        """Queue a command on its target queue. Never blocks."""
        if self.closed.is_set():
            logger.warning("Mesh client closed, dropping command", target=command.target, args=command.args)
            return
        self._queues[command.target_queue].put_nowait(command)

    def start(self) -> None:
        if self._consumers:
            return
        for queue in CommandQueue:
            self._consumers.append(asyncio.create_task(self._consume(queue), name=f"mesh-{queue.value}-commands"))
        logger.info("Mesh command consumers started", cli=self._cli)

    async def _consume(self, queue: CommandQueue) -> None:
        commands = self._queues[queue]
        while True:
            command = await commands.get()
            try:
                await self.execute(command)
            except Exception:
                logger.exception("Mesh command failed", queue=queue.value, target=command.target)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, command: Command) -> bool:
        """
        Run one command now.

        Returns:
            True when the CLI exited successfully.
        """
        operation = command.operation.value
        if command.destructive:
            blocked = self._guard.check_destructive_operation(operation)
        else:
            blocked = self._guard.check_write_operation(operation)
        if blocked:
            logger.warning(
                "Mesh command blocked",
                target=command.target,
                args=command.args,
                reason=blocked.reason,
                setting=blocked.setting,
            )
            self._audit.log_blocked(operation, command.target, blocked.reason)
            return False

        output, error = await self._run(command)
        if command.result_logger is not None:
            command.result_logger(output, error)

        if error is None:
            if command.destructive:
                self._audit.log_deleted(operation, command.target)
            else:
                self._audit.log_applied(operation, command.target)
            return True

        self._audit.log_error(operation, command.target, error)
        if command.requeue:
            self._schedule_requeue(command)
        return False

    async def _run(self, command: Command) -> tuple[str, str | None]:
        argv = [self._cli, *self._cli_args, *shlex.split(command.args)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if command.stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return "", f"failed to start {self._cli}: {e}"

        stdout, stderr = await proc.communicate(command.stdin)
        output = stdout.decode(errors="replace")
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            return output, message or f"exit status {proc.returncode}"
        return output, None

    def _schedule_requeue(self, command: Command) -> None:
        task = asyncio.create_task(self._requeue(command))
        self._requeues.add(task)
        task.add_done_callback(self._requeues.discard)

    async def _requeue(self, command: Command) -> None:
        await asyncio.sleep(self._requeue_delay)
        logger.debug("Requeueing failed command", target=command.target)
        self.submit(command)

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def close(self) -> None:
        """Stop consumers and pending requeues. Queued commands are dropped. Idempotent."""
        if self.closed.is_set():
            return
        self.closed.set()
        tasks = [*self._consumers, *self._requeues]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumers.clear()
        dropped = sum(q.qsize() for q in self._queues.values())
        logger.info("Mesh client closed", dropped_commands=dropped)
