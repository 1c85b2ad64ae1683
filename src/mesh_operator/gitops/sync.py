# ABOUTME: Repository sync controller polling a remote git repository for desired-state changes
# ABOUTME: Clones, fetches, checks out a branch or tag, and fires a callback when the head moves

"""
Repository sync controller.

=============================================================================
STATE MACHINE
=============================================================================

    IDLE ──bootstrap()──▶ CLONING ──▶ WATCHING ──interval──▶ FETCHING
                                         ▲                      │
                                         └──── CHECKED_OUT ◀────┘

    close() from any state ──▶ CLOSED

Each FETCHING step runs in a worker thread (GitPython shells out to git and
blocks). Whatever happens inside it, the loop comes back to WATCHING: a
network partition costs one interval, never the loop.

=============================================================================
WHEN DOES THE CALLBACK FIRE?
=============================================================================

Only when the head commit after checkout differs from the head seen on the
previous successful iteration. The first iteration only records the head:

    iteration 1: head=a1f  (nothing known yet)     -> no callback
    iteration 2: head=a1f  (unchanged)             -> no callback
    iteration 3: head=9c2  (changed)               -> callback once
    iteration 4: fetch fails                       -> logged, head stays 9c2
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
import shlex
import stat
import tempfile
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from mesh_operator.config import BranchRef, TagRef
from mesh_operator.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pydantic import SecretStr

    from mesh_operator.config import SyncSettings
    from mesh_operator.gitops.state import SyncState

logger = structlog.get_logger(__name__)

PASSPHRASE_ENV = "MESH_OPERATOR_SSH_PASSPHRASE"


class SyncPhase(str, Enum):
    IDLE = "idle"
    CLONING = "cloning"
    WATCHING = "watching"
    FETCHING = "fetching"
    CHECKED_OUT = "checked_out"
    CLOSED = "closed"


class RepositoryError(Exception):
    """A git transport or working-tree operation failed."""

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(f"git {step} failed: {message}")


def _describe(e: GitCommandError) -> str:
    stderr = e.stderr.strip() if isinstance(e.stderr, str) else ""
    return stderr or str(e)


class RepositorySync:
    """
    Keeps ``local_path`` mirroring one branch or tag of ``remote``.

    An empty ``remote`` means the bundled local tree is the source of truth:
    ``bootstrap()`` and ``watch()`` return immediately and ``content_root``
    points at that tree.
    """

    def __init__(
        self,
        remote: str,
        ref: BranchRef | TagRef,
        local_path: Path,
        *,
        on_revision_changed: Callable[[], Awaitable[None] | None],
        ssh_key_path: Path | None = None,
        ssh_passphrase: SecretStr | None = None,
        interval: float = 10,
        sync_state: SyncState | None = None,
        fallback_root: Path | None = None,
    ) -> None:
        self._remote = remote
        self._ref = ref
        self._local_path = local_path
        self._on_revision_changed = on_revision_changed
        self._ssh_key_path = ssh_key_path
        self._ssh_passphrase = ssh_passphrase.get_secret_value() if ssh_passphrase else ""
        self._interval = interval
        self._sync_state = sync_state
        self._fallback_root = fallback_root

        self._stop = asyncio.Event()
        self._closed = False
        self._askpass: Path | None = None

        self.phase = SyncPhase.IDLE
        self.last_head: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        on_revision_changed: Callable[[], Awaitable[None] | None],
        sync_state: SyncState | None = None,
        fallback_root: Path | None = None,
    ) -> RepositorySync:
        """Build a controller from validated settings (branch/tag already checked)."""
        return cls(
            remote=settings.remote,
            ref=settings.ref,
            local_path=settings.local_path,
            on_revision_changed=on_revision_changed,
            ssh_key_path=settings.ssh_key_path,
            ssh_passphrase=settings.ssh_passphrase,
            interval=settings.interval,
            sync_state=sync_state,
            fallback_root=fallback_root,
        )

    @property
    def content_root(self) -> Path:
        """Directory holding the current desired-state tree."""
        if not self._remote and self._fallback_root is not None:
            return self._fallback_root
        return self._local_path

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _git_env(self) -> dict[str, str]:
        """Environment for git subprocesses: key-based SSH when a key is configured."""
        if self._ssh_key_path is None:
            return {}
        env = {
            "GIT_SSH_COMMAND": (
                f"ssh -i {shlex.quote(str(self._ssh_key_path))} "
                "-o IdentitiesOnly=yes -o StrictHostKeyChecking=no"
            ),
        }
        if self._ssh_passphrase:
            env.update(
                {
                    "SSH_ASKPASS": str(self._askpass_script()),
                    "SSH_ASKPASS_REQUIRE": "force",
                    PASSPHRASE_ENV: self._ssh_passphrase,
                }
            )
        return env

    def _askpass_script(self) -> Path:
        # The passphrase stays in the environment; the script only echoes it
        if self._askpass is None:
            fd, name = tempfile.mkstemp(prefix="mesh-operator-askpass-", suffix=".sh")
            with os.fdopen(fd, "w") as f:
                f.write(f'#!/bin/sh\nprintf "%s\\n" "${PASSPHRASE_ENV}"\n')
            path = Path(name)
            path.chmod(stat.S_IRWXU)
            self._askpass = path
        return self._askpass

    # =========================================================================
    # BOOTSTRAP
    # =========================================================================

    async def bootstrap(self) -> None:
        """
        Clone the remote into ``local_path`` with all submodules.

        An existing checkout at ``local_path`` is reused, so a restarted
        operator picks up where it left off and the next watch iteration
        brings it up to date.

        Raises:
            RepositoryError: If the clone fails.
        """
        if not self._remote:
            logger.info("No GitOps remote configured, using bundled configuration", root=str(self.content_root))
            return
        self.phase = SyncPhase.CLONING
        await asyncio.to_thread(self._clone)
        self.phase = SyncPhase.WATCHING

    def _clone(self) -> None:
        log = logger.bind(remote=self._remote, ref=self._ref.name, path=str(self._local_path))
        try:
            Repo(self._local_path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            pass
        else:
            log.info("Reusing existing checkout")
            return

        log.info("Cloning repository")
        try:
            Repo.clone_from(
                self._remote,
                self._local_path,
                env=self._git_env() or None,
                branch=self._ref.name,
                recurse_submodules=True,
            )
        except GitCommandError as e:
            raise RepositoryError("clone", _describe(e)) from e
        log.info("Cloned repository")

    # =========================================================================
    # WATCH LOOP
    # =========================================================================

    def _update(self) -> str:
        """
        One fetch/checkout cycle. Runs in a worker thread.

        Returns:
            The head commit hexsha after checkout.

        Raises:
            RepositoryError: On any git failure.
        """
        try:
            repo = Repo(self._local_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryError("open", str(e)) from e

        with repo.git.custom_environment(**self._git_env()):
            step = "fetch"
            try:
                # "Already up to date" exits 0
                repo.git.fetch("origin", tags=True, force=True)

                if isinstance(self._ref, BranchRef):
                    branch = self._ref.name
                    step = "checkout"
                    try:
                        repo.git.checkout("-b", branch, f"origin/{branch}")
                    except GitCommandError as e:
                        if "already exists" not in _describe(e):
                            raise
                    repo.git.checkout(branch, force=True)
                    step = "pull"
                    repo.git.pull("origin", branch, force=True, recurse_submodules=True)
                else:
                    step = "checkout"
                    try:
                        commit = repo.tags[self._ref.name].commit
                    except IndexError as e:
                        raise RepositoryError(step, f"tag {self._ref.name!r} not found") from e
                    repo.git.checkout(commit.hexsha, force=True)
                    step = "submodule"
                    repo.git.submodule("update", "--init", "--recursive")

                step = "clean"
                repo.git.clean("-f", "-d")
            except GitCommandError as e:
                raise RepositoryError(step, _describe(e)) from e

        return repo.head.commit.hexsha

    async def _poll(self) -> str:
        return await asyncio.to_thread(self._update)

    async def _notify(self, head: str) -> None:
        logger.info("Repository revision changed", previous=self.last_head, head=head)
        try:
            result = self._on_revision_changed()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Revision-changed callback failed", head=head)

    async def watch(self) -> None:
        """
        Poll the remote until ``stop()`` or ``close()`` is called.

        Never raises for git failures; they are logged and retried on the
        next interval.
        """
        if not self._remote:
            logger.info("No GitOps remote configured, not watching")
            return

        log = logger.bind(remote=self._remote, ref=self._ref.name, interval=self._interval)
        log.info("Watching repository")

        while not self._stop.is_set():
            new_correlation_id()
            self.phase = SyncPhase.FETCHING
            try:
                head = await self._poll()
            except RepositoryError as e:
                log.warning("Repository update failed", step=e.step, error=e.message)
            else:
                self.phase = SyncPhase.CHECKED_OUT
                log.debug("Checked out", head=head)
                if self.last_head is not None and head != self.last_head:
                    await self._notify(head)
                self.last_head = head

            self.phase = SyncPhase.WATCHING
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)

        if self._closed:
            self.phase = SyncPhase.CLOSED
        log.info("Stopped watching repository")

    def stop(self) -> None:
        """Ask the watch loop to exit after the current iteration."""
        self._stop.set()

    async def close(self) -> None:
        """
        Stop watching and release the snapshot store connection.

        Idempotent; safe when ``bootstrap`` or ``watch`` never ran and when
        the store was never reached.
        """
        if self._closed:
            return
        self._closed = True
        self.stop()
        self.phase = SyncPhase.CLOSED

        if self._askpass is not None:
            self._askpass.unlink(missing_ok=True)
            self._askpass = None

        if self._sync_state is not None:
            await self._sync_state.close()
