# ABOUTME: Unit tests for configuration management
# ABOUTME: Tests settings defaults, environment prefixes, branch/tag validation and content roots

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mesh_operator.config import (
    BranchRef,
    OperatorSettings,
    ReconcileSettings,
    SafetySettings,
    StateSettings,
    SyncSettings,
    TagRef,
    load_settings,
)


@pytest.mark.unit
class TestSyncSettings:
    """Tests for SyncSettings configuration."""

    def test_default_ref_is_main_branch(self):
        """Test that no branch or tag means the main branch."""
        settings = SyncSettings()

        assert settings.ref == BranchRef(name="main")

    def test_branch_ref(self):
        """Test branch selection."""
        assert SyncSettings(branch="release").ref == BranchRef(name="release")

    def test_tag_ref(self):
        """Test tag selection."""
        ref = SyncSettings(tag="v1.4.0").ref

        assert isinstance(ref, TagRef)
        assert ref.name == "v1.4.0"

    def test_branch_and_tag_rejected(self):
        """Test that naming both a branch and a tag is a configuration error."""
        with pytest.raises(ValidationError, match="branch OR a tag"):
            SyncSettings(branch="main", tag="v1.0.0")

    def test_env_prefix(self):
        """Test environment variable prefix."""
        with patch.dict(os.environ, {"GITOPS_REMOTE": "git@example.com:mesh.git", "GITOPS_TAG": "v2"}):
            settings = SyncSettings()

        assert settings.remote == "git@example.com:mesh.git"
        assert settings.ref == TagRef(name="v2")

    def test_interval_must_be_positive(self):
        """Test that a zero poll interval is rejected."""
        with pytest.raises(ValidationError):
            SyncSettings(interval=0)

    def test_passphrase_is_secret(self):
        """Test that the passphrase does not leak through repr."""
        settings = SyncSettings(ssh_passphrase="hunter2")

        assert "hunter2" not in repr(settings)
        assert settings.ssh_passphrase.get_secret_value() == "hunter2"


@pytest.mark.unit
class TestStateSettings:
    """Tests for StateSettings configuration."""

    def test_defaults(self):
        """Test default snapshot keys and retry interval."""
        settings = StateSettings()

        assert settings.config_key == "gitops-state-mesh-config"
        assert settings.workload_key == "gitops-state-workloads"
        assert settings.retry_interval == 30.0

    def test_env_prefix(self):
        """Test environment variable prefix."""
        with patch.dict(os.environ, {"STATE_REDIS_HOST": "redis.mesh", "STATE_REDIS_PORT": "6380"}):
            settings = StateSettings()

        assert settings.redis_host == "redis.mesh"
        assert settings.redis_port == 6380


@pytest.mark.unit
class TestReconcileAndSafetySettings:
    """Tests for ReconcileSettings and SafetySettings."""

    def test_reconcile_defaults(self):
        """Test default reconciliation settings."""
        settings = ReconcileSettings()

        assert settings.interval == 30.0
        assert settings.mtls_enabled is False
        assert settings.image_pull_secret == "gm-docker-secret"
        assert settings.sidecar_workers == 4

    def test_mtls_from_env(self):
        """Test enabling mTLS from the environment."""
        with patch.dict(os.environ, {"RECONCILE_MTLS_ENABLED": "true"}):
            assert ReconcileSettings().mtls_enabled is True

    def test_safety_defaults_allow_writes(self):
        """Test that an operator writes by default."""
        settings = SafetySettings()

        assert settings.read_only is False
        assert settings.disable_destructive is False
        assert settings.audit_log is None

    def test_safety_env_prefix(self):
        """Test environment variable prefix."""
        with patch.dict(os.environ, {"OPERATOR_READ_ONLY": "true"}):
            assert SafetySettings().read_only is True


@pytest.mark.unit
class TestOperatorSettings:
    """Tests for OperatorSettings configuration."""

    def test_defaults(self):
        """Test default operator settings."""
        settings = OperatorSettings()

        assert settings.mesh_name == "mesh-sample"
        assert settings.log_level == "INFO"
        assert settings.mesh_cli == "greymatter"
        assert isinstance(settings.sync, SyncSettings)

    def test_watch_namespaces_from_json_env(self):
        """Test that watched namespaces are read as a JSON list."""
        with patch.dict(os.environ, {"MESH_OPERATOR_WATCH_NAMESPACES": '["apps", "data"]'}):
            settings = OperatorSettings()

        assert settings.watch_namespaces == ["apps", "data"]

    def test_invalid_log_level(self):
        """Test that an unknown log level is rejected."""
        with pytest.raises(ValidationError):
            OperatorSettings(log_level="LOUD")

    def test_content_root_without_remote(self, tmp_path):
        """Test that the bundled tree is used when no remote is set."""
        settings = OperatorSettings(config_root=tmp_path / "bundled", sync=SyncSettings(remote=""))

        assert settings.content_root == tmp_path / "bundled"

    def test_content_root_with_remote(self, tmp_path):
        """Test that the checkout is used when a remote is set."""
        settings = OperatorSettings(
            sync=SyncSettings(remote="git@example.com:mesh.git", local_path=tmp_path / "checkout"),
        )

        assert settings.content_root == tmp_path / "checkout"

    def test_load_settings_reads_env_file(self, tmp_path: Path):
        """Test that MESH_OPERATOR_ENV_FILE points at an extra dotenv file."""
        env_file = tmp_path / "operator.env"
        env_file.write_text("MESH_OPERATOR_MESH_NAME=mesh-prod\n")

        with patch.dict(os.environ, {"MESH_OPERATOR_ENV_FILE": str(env_file)}):
            settings = load_settings()

        assert settings.mesh_name == "mesh-prod"
