"""Compute Engine client.

Implements the ComputeClient protocol with the sync google-cloud-compute
clients dispatched to a dedicated thread pool. Transient API errors are
retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from buildfleet.api.model import InstanceConfiguration, InstanceState
from buildfleet.core.exceptions import ConfigurationError, ProvisioningError
from buildfleet.labels import label_filter

log = logger.bind(component="gce")

PREEMPTED_OPERATION = "compute.instances.preempted"

_TRANSIENT = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.TooManyRequests,
    api_exceptions.InternalServerError,
)

_api_retry = retry(
    retry=retry_if_exception_type(_TRANSIENT),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(5),
    reraise=True,
)


class GCEClient:
    """Compute Engine client. Holds only the sync API clients and a pool."""

    def __init__(
        self,
        instances_client: Any,
        operations_client: Any,
        project: str,
        thread_pool: ThreadPoolExecutor,
        operation_timeout: float = 300.0,
    ) -> None:
        self._instances = instances_client
        self._operations = operations_client
        self._project = project
        self._pool = thread_pool
        self._operation_timeout = operation_timeout

    @property
    def project(self) -> str:
        return self._project

    @classmethod
    async def create(
        cls,
        project: str | None = None,
        *,
        thread_pool_size: int = 8,
        operation_timeout: float = 300.0,
    ) -> GCEClient:
        resolved = resolve_project(project)
        log.info("Resolved GCP project: {project}", project=resolved)

        return cls(
            instances_client=compute_v1.InstancesClient(),
            operations_client=compute_v1.ZoneOperationsClient(),
            project=resolved,
            thread_pool=ThreadPoolExecutor(
                max_workers=thread_pool_size,
                thread_name_prefix="gce-io",
            ),
            operation_timeout=operation_timeout,
        )

    async def _run[T](self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(self._pool, lambda: fn(*args, **kwargs))
        return await loop.run_in_executor(self._pool, fn, *args)

    @_api_retry
    async def _call(self, fn: Callable[..., Any], request: object) -> Any:
        return await self._run(fn, request=request)

    async def insert_instance(
        self,
        project: str,
        configuration: InstanceConfiguration,
        name: str,
        labels: Mapping[str, str],
    ) -> None:
        all_labels = {**configuration.google_labels, **labels}
        request = compute_v1.InsertInstanceRequest(
            project=project,
            zone=configuration.zone,
            instance_resource=build_instance_resource(configuration, name, all_labels),
        )
        if configuration.template:
            request.source_instance_template = configuration.template

        log.info(
            "Inserting instance {name} (zone={zone}, preemptible={preemptible})",
            name=name, zone=configuration.zone, preemptible=configuration.preemptible,
        )
        try:
            operation = await self._call(self._instances.insert, request)
        except api_exceptions.GoogleAPICallError as e:
            raise ProvisioningError(f"Insert of {name} failed: {e}", instance=name) from e

        await self._wait_for_operation(operation, f"insert of {name}", name)

    async def get_instance(self, project: str, zone: str, name: str) -> InstanceState | None:
        try:
            gce_inst = await self._call(
                self._instances.get,
                compute_v1.GetInstanceRequest(project=project, zone=zone, instance=name),
            )
        except api_exceptions.NotFound:
            return None
        return to_instance_state(gce_inst, zone)

    async def start_instance(self, project: str, zone: str, name: str) -> None:
        try:
            operation = await self._call(
                self._instances.start,
                compute_v1.StartInstanceRequest(project=project, zone=zone, instance=name),
            )
        except api_exceptions.GoogleAPICallError as e:
            raise ProvisioningError(f"Start of {name} failed: {e}", instance=name) from e
        log.info("Requested start of instance {name}", name=name)
        await self._wait_for_operation(operation, f"start of {name}", name)

    async def delete_instance(self, project: str, zone: str, name: str) -> None:
        try:
            operation = await self._call(
                self._instances.delete,
                compute_v1.DeleteInstanceRequest(project=project, zone=zone, instance=name),
            )
        except api_exceptions.NotFound:
            log.debug("Instance {name} already gone", name=name)
            return
        log.info("Requested deletion of instance {name}", name=name)
        await self._wait_for_operation(operation, f"delete of {name}", name)

    async def list_instances(
        self, project: str, zone: str, labels: Mapping[str, str],
    ) -> list[InstanceState]:
        request = compute_v1.ListInstancesRequest(project=project, zone=zone)
        if labels:
            request.filter = label_filter(labels)

        pager = await self._call(self._instances.list, request)
        gce_instances = await self._run(_collect_pager, pager)
        states = [to_instance_state(inst, zone) for inst in gce_instances]
        return [s for s in states if _has_labels(s, labels)]

    async def simulate_maintenance_event(self, project: str, zone: str, name: str) -> None:
        log.info("Simulating maintenance event on {name}", name=name)
        operation = await self._call(
            self._instances.simulate_maintenance_event,
            compute_v1.SimulateMaintenanceEventInstanceRequest(
                project=project, zone=zone, instance=name,
            ),
        )
        await self._wait_for_operation(operation, f"maintenance event on {name}", name)

    async def preempted_instances(self, project: str, zone: str) -> frozenset[str]:
        pager = await self._call(
            self._operations.list,
            compute_v1.ListZoneOperationsRequest(
                project=project,
                zone=zone,
                filter=f'operationType = "{PREEMPTED_OPERATION}"',
            ),
        )
        operations = await self._run(_collect_pager, pager)
        return frozenset(
            _target_name(op.target_link)
            for op in operations
            if getattr(op, "operation_type", PREEMPTED_OPERATION) == PREEMPTED_OPERATION
            and getattr(op, "target_link", "")
        )

    async def close(self) -> None:
        self._pool.shutdown(wait=False)

    async def _wait_for_operation(self, operation: object, description: str, name: str) -> None:
        result = getattr(operation, "result", None)
        if callable(result):
            try:
                await self._run(result, timeout=self._operation_timeout)
            except Exception as e:
                raise ProvisioningError(f"{description} failed: {e}", instance=name) from e

        if error_code := getattr(operation, "error_code", None):
            message = getattr(operation, "error_message", "") or "unknown error"
            raise ProvisioningError(
                f"{description} failed: [{error_code}] {message}", instance=name,
            )

        for warning in getattr(operation, "warnings", None) or ():
            log.warning(
                "{description}: {code} {message}",
                description=description,
                code=getattr(warning, "code", ""),
                message=getattr(warning, "message", ""),
            )


# =============================================================================
# Pure helper functions (no API calls)
# =============================================================================


def build_instance_resource(
    configuration: InstanceConfiguration,
    name: str,
    labels: Mapping[str, str],
) -> compute_v1.Instance:
    """Build the Compute Engine instance resource for a configuration.

    With a template, only the name and labels are set; everything else
    comes from the template.
    """
    if configuration.template:
        return compute_v1.Instance(name=name, labels=dict(labels))

    zone = configuration.zone

    disk = compute_v1.AttachedDisk(
        auto_delete=configuration.boot_disk_auto_delete,
        boot=True,
        initialize_params=compute_v1.AttachedDiskInitializeParams(
            source_image=configuration.boot_disk_image,
            disk_size_gb=configuration.boot_disk_size_gb,
            disk_type=f"zones/{zone}/diskTypes/{configuration.boot_disk_type}",
        ),
    )

    network_interface = compute_v1.NetworkInterface(
        network=_qualify(configuration.network, "global/networks"),
    )
    if configuration.subnetwork:
        network_interface.subnetwork = _qualify(
            configuration.subnetwork, f"regions/{configuration.region}/subnetworks",
        )
    if configuration.external_address:
        network_interface.access_configs = [
            compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT"),
        ]

    items = []
    if configuration.startup_script:
        items.append(compute_v1.Items(key="startup-script", value=configuration.startup_script))

    if configuration.preemptible:
        scheduling = compute_v1.Scheduling(
            preemptible=True,
            automatic_restart=False,
            on_host_maintenance="TERMINATE",
        )
    else:
        scheduling = compute_v1.Scheduling(
            on_host_maintenance="MIGRATE",
            automatic_restart=True,
        )

    instance = compute_v1.Instance(
        name=name,
        description=configuration.description,
        machine_type=f"zones/{zone}/machineTypes/{configuration.machine_type}",
        disks=[disk],
        network_interfaces=[network_interface],
        metadata=compute_v1.Metadata(items=items),
        scheduling=scheduling,
        labels=dict(labels),
    )

    if configuration.network_tags:
        instance.tags = compute_v1.Tags(items=list(configuration.network_tags))

    if configuration.service_account_email:
        instance.service_accounts = [
            compute_v1.ServiceAccount(
                email=configuration.service_account_email,
                scopes=["https://www.googleapis.com/auth/cloud-platform"],
            ),
        ]

    return instance


def to_instance_state(gce_inst: Any, zone: str) -> InstanceState:
    """Convert a compute_v1.Instance into an InstanceState."""
    return InstanceState(
        name=gce_inst.name,
        zone=zone,
        status=getattr(gce_inst, "status", "") or "PROVISIONING",
        preemptible=_is_preemptible(gce_inst),
        labels=dict(getattr(gce_inst, "labels", None) or {}),
        ip=_extract_external_ip(gce_inst),
        id=str(gce_inst.id) if getattr(gce_inst, "id", None) else None,
    )


def resolve_project(explicit: str | None) -> str:
    """Resolve GCP project: explicit > env > ADC."""
    if explicit:
        return explicit

    if env_project := os.environ.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := os.environ.get("GCLOUD_PROJECT"):
        return env_project

    try:
        import google.auth

        _, project = google.auth.default()
        if project:
            return project
    except Exception as e:
        log.debug("Application Default Credentials unavailable: {err}", err=e)

    raise ConfigurationError(
        "No GCP project found. Set GOOGLE_CLOUD_PROJECT env var, "
        "pass project=, or configure Application Default Credentials."
    )


def _qualify(value: str, collection: str) -> str:
    return value if "/" in value else f"{collection}/{value}"


def _collect_pager(pager: object) -> list[Any]:
    return list(pager)  # type: ignore[arg-type]


def _target_name(target_link: str) -> str:
    return target_link.rstrip("/").rsplit("/", 1)[-1]


def _has_labels(state: InstanceState, labels: Mapping[str, str]) -> bool:
    return all(state.labels.get(k) == v for k, v in labels.items())


def _is_preemptible(gce_inst: object) -> bool:
    scheduling = getattr(gce_inst, "scheduling", None)
    if not scheduling:
        return False
    return bool(getattr(scheduling, "preemptible", False)) or (
        getattr(scheduling, "provisioning_model", "") == "SPOT"
    )


def _extract_external_ip(instance: object) -> str | None:
    for iface in getattr(instance, "network_interfaces", None) or ():
        for config in getattr(iface, "access_configs", None) or ():
            if ip := getattr(config, "nat_i_p", None):
                return str(ip)
    return None


__all__ = ["GCEClient", "build_instance_resource", "resolve_project", "to_instance_state"]
