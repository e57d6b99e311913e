from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as api_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import compute_v1
from tenacity import wait_none

from buildfleet import ConfigurationError, InstanceConfiguration, ProvisioningError
from buildfleet.client.gce import (
    GCEClient,
    build_instance_resource,
    resolve_project,
    to_instance_state,
)

PROJECT = "test-project"
ZONE = "us-central1-a"
TARGET = f"https://www.googleapis.com/compute/v1/projects/{PROJECT}/zones/{ZONE}/instances"


def _config(**kwargs) -> InstanceConfiguration:
    kwargs.setdefault("name_prefix", "agent")
    kwargs.setdefault("zone", ZONE)
    return InstanceConfiguration(**kwargs)


def _operation(error_code: str | None = None, message: str = "") -> MagicMock:
    op = MagicMock()
    op.result.return_value = None
    op.error_code = error_code
    op.error_message = message
    op.warnings = []
    return op


@pytest.fixture
def instances() -> MagicMock:
    return MagicMock()


@pytest.fixture
def operations() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gce(instances: MagicMock, operations: MagicMock):
    pool = ThreadPoolExecutor(max_workers=2)
    yield GCEClient(instances, operations, PROJECT, pool, operation_timeout=30.0)
    pool.shutdown(wait=True)


class TestBuildInstanceResource:
    def test_preemptible_scheduling(self):
        resource = build_instance_resource(_config(preemptible=True), "agent-1", {})
        assert resource.scheduling.preemptible
        assert not resource.scheduling.automatic_restart
        assert resource.scheduling.on_host_maintenance == "TERMINATE"

    def test_on_demand_scheduling(self):
        resource = build_instance_resource(_config(), "agent-1", {})
        assert not resource.scheduling.preemptible
        assert resource.scheduling.on_host_maintenance == "MIGRATE"

    def test_inline_fields(self):
        config = _config(
            machine_type="e2-standard-4",
            startup_script="#!/bin/sh\necho hi",
            boot_disk_size_gb=50,
            network_tags=("ci", "agents"),
            service_account_email="agents@test-project.iam.gserviceaccount.com",
        )
        resource = build_instance_resource(config, "agent-1", {"team": "ci"})

        assert resource.name == "agent-1"
        assert resource.machine_type == f"zones/{ZONE}/machineTypes/e2-standard-4"
        assert dict(resource.labels) == {"team": "ci"}
        assert resource.disks[0].boot
        assert resource.disks[0].initialize_params.disk_size_gb == 50
        assert resource.disks[0].initialize_params.disk_type == f"zones/{ZONE}/diskTypes/pd-balanced"
        assert resource.metadata.items[0].key == "startup-script"
        assert resource.metadata.items[0].value == "#!/bin/sh\necho hi"
        assert list(resource.tags.items) == ["ci", "agents"]
        assert resource.service_accounts[0].email.startswith("agents@")

    def test_network(self):
        resource = build_instance_resource(_config(subnetwork="build"), "agent-1", {})
        iface = resource.network_interfaces[0]
        assert iface.network == "global/networks/default"
        assert iface.subnetwork == "regions/us-central1/subnetworks/build"
        assert iface.access_configs[0].type_ == "ONE_TO_ONE_NAT"

    def test_qualified_network_kept(self):
        network = f"projects/{PROJECT}/global/networks/ci"
        resource = build_instance_resource(_config(network=network), "agent-1", {})
        assert resource.network_interfaces[0].network == network

    def test_no_external_address(self):
        resource = build_instance_resource(_config(external_address=False), "agent-1", {})
        assert len(resource.network_interfaces[0].access_configs) == 0

    def test_template_sets_only_name_and_labels(self):
        config = _config(template="global/instanceTemplates/agent", preemptible=True)
        resource = build_instance_resource(config, "agent-1", {"team": "ci"})
        assert resource.name == "agent-1"
        assert dict(resource.labels) == {"team": "ci"}
        assert len(resource.disks) == 0


class TestToInstanceState:
    def test_running_preemptible(self):
        inst = compute_v1.Instance(
            name="agent-1",
            id=1234,
            status="RUNNING",
            labels={"team": "ci"},
            scheduling=compute_v1.Scheduling(preemptible=True),
            network_interfaces=[
                compute_v1.NetworkInterface(
                    access_configs=[compute_v1.AccessConfig(nat_i_p="34.1.2.3")],
                ),
            ],
        )
        state = to_instance_state(inst, ZONE)

        assert state.running
        assert state.preemptible
        assert state.ip == "34.1.2.3"
        assert state.id == "1234"
        assert state.labels == {"team": "ci"}

    def test_spot_counts_as_preemptible(self):
        inst = compute_v1.Instance(
            name="agent-1",
            status="TERMINATED",
            scheduling=compute_v1.Scheduling(provisioning_model="SPOT"),
        )
        state = to_instance_state(inst, ZONE)
        assert state.preemptible
        assert state.terminal

    def test_defaults(self):
        state = to_instance_state(compute_v1.Instance(name="agent-1"), ZONE)
        assert state.status == "PROVISIONING"
        assert not state.preemptible
        assert state.ip is None
        assert state.id is None


@pytest.mark.asyncio
class TestGCEClient:
    async def test_insert(self, gce, instances):
        op = _operation()
        instances.insert.return_value = op

        await gce.insert_instance(
            PROJECT, _config(google_labels={"team": "ci"}), "agent-1", {"buildfleet-cloud": "gce"},
        )

        request = instances.insert.call_args.kwargs["request"]
        assert request.zone == ZONE
        assert request.instance_resource.name == "agent-1"
        assert dict(request.instance_resource.labels) == {"team": "ci", "buildfleet-cloud": "gce"}
        op.result.assert_called_once_with(timeout=30.0)

    async def test_insert_from_template(self, gce, instances):
        instances.insert.return_value = _operation()
        config = _config(template="global/instanceTemplates/agent")

        await gce.insert_instance(PROJECT, config, "agent-1", {})

        request = instances.insert.call_args.kwargs["request"]
        assert request.source_instance_template == "global/instanceTemplates/agent"

    async def test_insert_operation_error(self, gce, instances):
        instances.insert.return_value = _operation("QUOTA_EXCEEDED", "Quota 'CPUS' exceeded")

        with pytest.raises(ProvisioningError, match="QUOTA_EXCEEDED") as exc_info:
            await gce.insert_instance(PROJECT, _config(), "agent-1", {})
        assert exc_info.value.instance == "agent-1"

    async def test_insert_api_error(self, gce, instances):
        instances.insert.side_effect = api_exceptions.Forbidden("permission denied")

        with pytest.raises(ProvisioningError, match="permission denied"):
            await gce.insert_instance(PROJECT, _config(), "agent-1", {})

    async def test_transient_errors_are_retried(self, gce, instances, monkeypatch):
        monkeypatch.setattr(GCEClient._call.retry, "wait", wait_none())
        instances.insert.side_effect = [
            api_exceptions.ServiceUnavailable("backend unavailable"),
            _operation(),
        ]

        await gce.insert_instance(PROJECT, _config(), "agent-1", {})
        assert instances.insert.call_count == 2

    async def test_get_missing_instance(self, gce, instances):
        instances.get.side_effect = api_exceptions.NotFound("agent-1")
        assert await gce.get_instance(PROJECT, ZONE, "agent-1") is None

    async def test_get_instance(self, gce, instances):
        instances.get.return_value = compute_v1.Instance(name="agent-1", status="STAGING")

        state = await gce.get_instance(PROJECT, ZONE, "agent-1")

        assert state.status == "STAGING"
        assert instances.get.call_args.kwargs["request"].instance == "agent-1"

    async def test_start(self, gce, instances):
        op = _operation()
        instances.start.return_value = op

        await gce.start_instance(PROJECT, ZONE, "agent-1")

        request = instances.start.call_args.kwargs["request"]
        assert (request.project, request.zone, request.instance) == (PROJECT, ZONE, "agent-1")
        op.result.assert_called_once_with(timeout=30.0)

    async def test_start_missing_instance(self, gce, instances):
        instances.start.side_effect = api_exceptions.NotFound("agent-1")

        with pytest.raises(ProvisioningError, match="Start of agent-1 failed"):
            await gce.start_instance(PROJECT, ZONE, "agent-1")

    async def test_start_operation_error(self, gce, instances):
        instances.start.return_value = _operation("RESOURCE_EXHAUSTED", "zone out of capacity")

        with pytest.raises(ProvisioningError, match="RESOURCE_EXHAUSTED"):
            await gce.start_instance(PROJECT, ZONE, "agent-1")

    async def test_delete(self, gce, instances):
        op = _operation()
        instances.delete.return_value = op

        await gce.delete_instance(PROJECT, ZONE, "agent-1")
        op.result.assert_called_once()

    async def test_delete_missing_instance(self, gce, instances):
        instances.delete.side_effect = api_exceptions.NotFound("agent-1")
        await gce.delete_instance(PROJECT, ZONE, "agent-1")

    async def test_list_filters_by_labels(self, gce, instances):
        instances.list.return_value = [
            compute_v1.Instance(name="run-1", labels={"it": "abc"}),
            compute_v1.Instance(name="stray", labels={"it": "xyz"}),
        ]

        states = await gce.list_instances(PROJECT, ZONE, {"it": "abc"})

        assert [s.name for s in states] == ["run-1"]
        assert instances.list.call_args.kwargs["request"].filter == 'labels.it = "abc"'

    async def test_simulate_maintenance_event(self, gce, instances):
        instances.simulate_maintenance_event.return_value = _operation()

        await gce.simulate_maintenance_event(PROJECT, ZONE, "agent-1")

        request = instances.simulate_maintenance_event.call_args.kwargs["request"]
        assert request.instance == "agent-1"

    async def test_preempted_instances(self, gce, operations):
        operations.list.return_value = [
            compute_v1.Operation(
                operation_type="compute.instances.preempted",
                target_link=f"{TARGET}/agent-1",
            ),
            compute_v1.Operation(
                operation_type="compute.instances.preempted",
                target_link=f"{TARGET}/agent-2",
            ),
        ]

        assert await gce.preempted_instances(PROJECT, ZONE) == {"agent-1", "agent-2"}
        request = operations.list.call_args.kwargs["request"]
        assert request.filter == 'operationType = "compute.instances.preempted"'


class TestResolveProject:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
        monkeypatch.delenv("GCLOUD_PROJECT", raising=False)

    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "from-env")
        assert resolve_project("explicit") == "explicit"

    def test_env_precedence(self, monkeypatch):
        monkeypatch.setenv("GCLOUD_PROJECT", "gcloud")
        assert resolve_project(None) == "gcloud"
        monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "google")
        assert resolve_project(None) == "google"

    def test_application_default_credentials(self, monkeypatch):
        monkeypatch.setattr("google.auth.default", lambda: (object(), "adc-project"))
        assert resolve_project(None) == "adc-project"

    def test_nothing_found(self, monkeypatch):
        def no_credentials():
            raise DefaultCredentialsError("no credentials")

        monkeypatch.setattr("google.auth.default", no_credentials)
        with pytest.raises(ConfigurationError, match="No GCP project found"):
            resolve_project(None)
