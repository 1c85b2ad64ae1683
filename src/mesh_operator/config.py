# ABOUTME: Configuration management for the mesh GitOps operator
# ABOUTME: Handles environment variables, repository references, state store and safety settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the operator. It:

1. READS environment variables (like GITOPS_REMOTE, STATE_REDIS_HOST)
2. VALIDATES them (a branch AND a tag is rejected, intervals are integers)
3. PROVIDES typed access to settings throughout the application

Configuration errors surface here, at startup, before any loop is running.

=============================================================================
ARCHITECTURE: ONE CONTAINER, FOUR NESTED GROUPS
=============================================================================

1. SyncSettings: Where desired state comes from (GITOPS_* prefix)
   - Remote URL, branch OR tag, local checkout path, SSH credentials
   - Poll interval

2. StateSettings: Where change-set snapshots are persisted (STATE_* prefix)
   - Redis connection and the two well-known snapshot keys

3. ReconcileSettings: The live-workload repair loop (RECONCILE_* prefix)
   - Interval, mTLS allowlist maintenance, image pull secret

4. SafetySettings: Write guards and audit trail (OPERATOR_* prefix)

5. OperatorSettings: Main container (MESH_OPERATOR_* prefix)
   - Mesh name, watched namespaces, mesh CLI, logging
   - Contains the four groups above as nested objects

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Repository sync:
    GITOPS_REMOTE           -> Remote repository URL (empty = bundled local tree)
    GITOPS_BRANCH           -> Branch to track (mutually exclusive with tag)
    GITOPS_TAG              -> Tag to track (mutually exclusive with branch)
    GITOPS_LOCAL_PATH       -> Working tree location
    GITOPS_SSH_KEY_PATH     -> Private key for SSH transport
    GITOPS_SSH_PASSPHRASE   -> Optional key passphrase
    GITOPS_INTERVAL         -> Poll interval in seconds (default: 10)

State store:
    STATE_REDIS_HOST / STATE_REDIS_PORT / STATE_REDIS_DB / STATE_REDIS_PASSWORD
    STATE_CONFIG_KEY / STATE_WORKLOAD_KEY
    STATE_RETRY_INTERVAL    -> Seconds between connection attempts (default: 30)
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BRANCH = "main"

# =============================================================================
# REPOSITORY REFERENCE
# =============================================================================


class BranchRef(BaseModel):
    """Track the tip of a branch; every poll pulls new commits."""

    model_config = {"frozen": True}

    type: Literal["branch"] = "branch"
    name: str


class TagRef(BaseModel):
    """
    Track an immutable tag.

    Tags never move, so a tag-tracking watch loop only ever checks out the
    same commit. Re-pointing a tag upstream is still picked up because the
    fetch pulls tags with force.
    """

    model_config = {"frozen": True}

    type: Literal["tag"] = "tag"
    name: str


# A reference is exactly one of the two. There is no state in which both a
# branch and a tag are selected.
RepoRef = Annotated[BranchRef | TagRef, Field(discriminator="type")]


# =============================================================================
# REPOSITORY SYNC SETTINGS
# =============================================================================


class SyncSettings(BaseSettings):
    """
    Where the declarative source of truth lives.

    WHY BRANCH AND TAG AS SEPARATE FIELDS?
    --------------------------------------
    Environment variables are flat strings, so the operator reads GITOPS_BRANCH
    and GITOPS_TAG independently. The validator below rejects the combination,
    and the ``ref`` property turns whichever one is set into a RepoRef variant.
    Everything past this class only ever sees the variant.
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_", extra="ignore")

    remote: str = Field(default="", description="Remote repository URL")
    # Empty means "use the bundled local tree"; bootstrap and watch are no-ops.

    branch: str | None = Field(default=None, description="Branch to track")
    tag: str | None = Field(default=None, description="Tag to track")

    local_path: Path = Field(
        default=Path("/tmp/mesh-operator/checkout"),
        description="Local working tree for the checked-out repository",
    )

    ssh_key_path: Path | None = Field(default=None, description="SSH private key path")
    ssh_passphrase: SecretStr = Field(default=SecretStr(""), description="SSH key passphrase")

    interval: int = Field(default=10, ge=1, description="Poll interval in seconds")

    @model_validator(mode="after")
    def check_branch_or_tag(self) -> SyncSettings:
        """Reject configurations that name both a branch and a tag."""
        if self.branch and self.tag:
            raise ValueError(
                f"specify a branch OR a tag for GitOps, not both "
                f"(branch={self.branch!r}, tag={self.tag!r})"
            )
        return self

    @property
    def ref(self) -> BranchRef | TagRef:
        """The tracked reference; defaults to the ``main`` branch."""
        if self.tag:
            return TagRef(name=self.tag)
        return BranchRef(name=self.branch or DEFAULT_BRANCH)


# =============================================================================
# STATE STORE SETTINGS
# =============================================================================


class StateSettings(BaseSettings):
    """Redis connection used to persist change-set snapshots."""

    model_config = SettingsConfigDict(env_prefix="STATE_", extra="ignore")

    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database index")
    redis_password: SecretStr | None = Field(default=None, description="Redis password")

    config_key: str = Field(
        default="gitops-state-mesh-config",
        description="Key holding the mesh-configuration snapshot",
    )
    workload_key: str = Field(
        default="gitops-state-workloads",
        description="Key holding the workload-manifest snapshot",
    )

    retry_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait between store connection attempts",
    )


# =============================================================================
# RECONCILIATION SETTINGS
# =============================================================================


class ReconcileSettings(BaseSettings):
    """Live workload repair loop."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_", extra="ignore")

    interval: float = Field(default=30.0, gt=0, description="Seconds between passes")

    mtls_enabled: bool = Field(
        default=False,
        description="Maintain the ingress allowlist from live sidecars",
    )
    # When True the ingress-allowlist reconciler is registered. It is the only
    # reconciler that talks to the mesh control plane every pass.

    image_pull_secret: str = Field(
        default="gm-docker-secret",
        description="Image pull secret referenced by injected sidecars",
    )

    sidecar_workers: int = Field(
        default=4,
        ge=1,
        description="Concurrent background sidecar configuration calls",
    )


# =============================================================================
# SAFETY SETTINGS
# =============================================================================


class SafetySettings(BaseSettings):
    """
    Write guards.

    Unlike an interactive tool, an operator exists to write, so both guards
    default to off. Turning ``read_only`` on runs the operator as an observer:
    every diff and reconcile decision is logged and audited, nothing is sent.
    """

    model_config = SettingsConfigDict(env_prefix="OPERATOR_", extra="ignore")

    read_only: bool = Field(default=False, description="Block all cluster and mesh writes")
    disable_destructive: bool = Field(
        default=False,
        description="Block deletes of removed manifests and mesh objects",
    )
    audit_log: Path | None = Field(default=None, description="Path to audit log file")


# =============================================================================
# MAIN OPERATOR SETTINGS
# =============================================================================


class OperatorSettings(BaseSettings):
    """
    Main operator configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.sync.ref               # BranchRef(name="main")
        settings.state.redis_host       # "localhost"
        settings.watch_namespaces       # ["apps"]
    """

    model_config = SettingsConfigDict(
        env_prefix="MESH_OPERATOR_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    mesh_name: str = Field(default="mesh-sample", description="Name of the managed mesh")

    watch_namespaces: list[str] = Field(
        default_factory=list,
        description="Namespaces whose workloads are reconciled",
    )
    # Set as JSON: MESH_OPERATOR_WATCH_NAMESPACES='["apps", "data"]'
    # This is only the initial value; a rendered desired state may replace it.

    config_root: Path = Field(
        default=Path("/app/config"),
        description="Bundled configuration tree used when no remote is configured",
    )

    mesh_cli: str = Field(default="greymatter", description="Mesh control-plane CLI")
    mesh_cli_args: list[str] = Field(
        default_factory=list,
        description="Arguments prepended to every mesh CLI invocation",
    )
    requeue_delay: float = Field(
        default=10.0,
        ge=0,
        description="Seconds before a failed apply command is requeued",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    sync: SyncSettings = Field(default_factory=SyncSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)

    @property
    def content_root(self) -> Path:
        """Directory the evaluator renders from: the checkout, or the bundled tree."""
        if self.sync.remote:
            return self.sync.local_path
        return self.config_root


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> OperatorSettings:
    """
    Load settings from environment with validation.

    If MESH_OPERATOR_ENV_FILE is set, additional variables are read from that
    file. Useful for local development.

    Raises:
        pydantic.ValidationError: If configuration is invalid, including a
            branch and a tag both being set.
    """
    return OperatorSettings(
        _env_file=os.environ.get("MESH_OPERATOR_ENV_FILE"),
    )
