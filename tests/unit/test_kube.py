# ABOUTME: Unit tests for the Kubernetes cluster client wrapper
# ABOUTME: Tests error mapping, retry classification, upsert modes and listing

from unittest.mock import AsyncMock, MagicMock

import pytest
import urllib3
from kubernetes.client.exceptions import ApiException

from mesh_operator.utils.kube import ApplyMode, ClusterClient, ClusterError, _is_transient, object_ref

SERVICE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "edge", "namespace": "apps"},
    "spec": {"ports": [{"port": 10808}]},
}


@pytest.fixture
def cluster() -> ClusterClient:
    """Create a cluster client that never talks to a real API server."""
    return ClusterClient(api_client=MagicMock())


@pytest.mark.unit
class TestClusterError:
    """Tests for ClusterError."""

    def test_str_includes_details(self):
        """Test the error message format."""
        error = ClusterError(409, "Conflict", "object has been modified")

        assert str(error) == "Kubernetes API error (409): Conflict - object has been modified"

    def test_is_not_found(self):
        """Test not-found detection."""
        assert ClusterError(404, "Not Found").is_not_found
        assert not ClusterError(403, "Forbidden").is_not_found

    def test_from_api_exception(self):
        """Test mapping a client exception."""
        exc = ApiException(status=422, reason="Unprocessable Entity")
        exc.body = b'{"message": "spec.replicas: Invalid value"}'

        error = ClusterError.from_api_exception(exc)

        assert error.code == 422
        assert error.message == "Unprocessable Entity"
        assert "Invalid value" in error.details


@pytest.mark.unit
class TestTransientClassification:
    """Tests for which failures are retried."""

    @pytest.mark.parametrize("status", [0, 429, 500, 503])
    def test_transient_statuses(self, status):
        """Test that throttling and server errors are retried."""
        assert _is_transient(ApiException(status=status))

    @pytest.mark.parametrize("status", [400, 403, 404, 409, 422])
    def test_client_errors_are_not_retried(self, status):
        """Test that 4xx responses are final."""
        assert not _is_transient(ApiException(status=status))

    def test_connection_errors_are_retried(self):
        """Test that dropped connections are retried."""
        assert _is_transient(urllib3.exceptions.ProtocolError("connection reset"))

    def test_other_errors_are_not_retried(self):
        """Test that programming errors propagate immediately."""
        assert not _is_transient(KeyError("name"))


@pytest.mark.unit
class TestObjectRef:
    """Tests for object_ref."""

    def test_namespaced(self):
        """Test namespace/name formatting."""
        assert object_ref(SERVICE) == "apps/edge"

    def test_cluster_scoped(self):
        """Test that cluster-scoped objects have no namespace prefix."""
        assert object_ref({"metadata": {"name": "mesh-admin"}}) == "mesh-admin"


@pytest.mark.unit
class TestApply:
    """Tests for create-or-update and get-or-create."""

    async def test_missing_object_is_created(self, cluster):
        """Test that a 404 on get leads to a create."""
        cluster.get = AsyncMock(side_effect=ClusterError(404, "Not Found"))
        cluster.create = AsyncMock(side_effect=lambda obj: obj)
        cluster.update = AsyncMock()

        await cluster.apply(dict(SERVICE))

        cluster.create.assert_awaited_once()
        cluster.update.assert_not_awaited()

    async def test_existing_object_is_replaced_with_live_version(self, cluster):
        """Test that an update carries the live resourceVersion."""
        cluster.get = AsyncMock(return_value={"metadata": {"name": "edge", "resourceVersion": "42"}})
        cluster.update = AsyncMock(side_effect=lambda obj: obj)
        obj = {**SERVICE, "metadata": dict(SERVICE["metadata"])}

        result = await cluster.apply(obj, ApplyMode.CREATE_OR_UPDATE)

        assert result["metadata"]["resourceVersion"] == "42"
        cluster.update.assert_awaited_once_with(obj)

    async def test_get_or_create_leaves_live_object(self, cluster):
        """Test that get-or-create returns an existing object untouched."""
        live = {"metadata": {"name": "edge", "resourceVersion": "42"}, "spec": {"ports": []}}
        cluster.get = AsyncMock(return_value=live)
        cluster.update = AsyncMock()

        result = await cluster.apply(dict(SERVICE), ApplyMode.GET_OR_CREATE)

        assert result is live
        cluster.update.assert_not_awaited()

    async def test_get_or_create_creates_when_missing(self, cluster):
        """Test that get-or-create creates an absent object."""
        cluster.get = AsyncMock(side_effect=ClusterError(404, "Not Found"))
        cluster.create = AsyncMock(side_effect=lambda obj: obj)

        await cluster.apply(dict(SERVICE), ApplyMode.GET_OR_CREATE)

        cluster.create.assert_awaited_once()

    async def test_other_get_errors_propagate(self, cluster):
        """Test that only not-found falls through to create."""
        cluster.get = AsyncMock(side_effect=ClusterError(403, "Forbidden"))
        cluster.create = AsyncMock()

        with pytest.raises(ClusterError):
            await cluster.apply(dict(SERVICE))

        cluster.create.assert_not_awaited()


@pytest.mark.unit
class TestPrimitiveOperations:
    """Tests for list and delete."""

    async def test_list_fills_api_version_and_kind(self, cluster):
        """Test that list items come back as complete manifests."""
        resource = MagicMock()
        resource.get.return_value.to_dict.return_value = {"items": [{"metadata": {"name": "web-1"}}]}
        cluster._resource = MagicMock(return_value=resource)

        pods = await cluster.list_pods("apps")

        cluster._resource.assert_called_once_with("v1", "Pod")
        resource.get.assert_called_once_with(namespace="apps")
        assert pods == [{"metadata": {"name": "web-1"}, "apiVersion": "v1", "kind": "Pod"}]

    async def test_api_exception_becomes_cluster_error(self, cluster):
        """Test that client exceptions surface as ClusterError."""
        resource = MagicMock()
        resource.get.side_effect = ApiException(status=403, reason="Forbidden")
        cluster._resource = MagicMock(return_value=resource)

        with pytest.raises(ClusterError) as exc_info:
            await cluster.list_deployments("apps")

        assert exc_info.value.code == 403

    async def test_delete_ignores_not_found(self, cluster):
        """Test that deleting an absent object succeeds."""
        cluster._run = AsyncMock(side_effect=ClusterError(404, "Not Found"))

        await cluster.delete("apps/v1", "Deployment", "old", "apps")

    async def test_delete_propagates_other_errors(self, cluster):
        """Test that other delete failures are raised."""
        cluster._run = AsyncMock(side_effect=ClusterError(403, "Forbidden"))

        with pytest.raises(ClusterError):
            await cluster.delete("apps/v1", "Deployment", "old", "apps")
