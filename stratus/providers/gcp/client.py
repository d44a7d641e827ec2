"""Compute Engine client used by a Stratus cloud.

Wraps the sync ``google-cloud-compute`` clients and dispatches every call
to a dedicated thread pool so the controller loop never blocks on HTTP.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from loguru import logger

from stratus.core.exceptions import ConfigurationError, ProvisioningError

from .instances import resource_name

log = logger.bind(component="gcp")


class ComputeClient:
    """Async facade over the Compute Engine API for one project."""

    def __init__(
        self,
        project: str,
        *,
        instances_client: Any,
        regions_client: Any,
        zones_client: Any,
        machines_client: Any,
        disk_types_client: Any,
        images_client: Any,
        accelerators_client: Any,
        networks_client: Any,
        subnetworks_client: Any,
        thread_pool: ThreadPoolExecutor,
    ) -> None:
        self.project = project
        self._instances = instances_client
        self._regions = regions_client
        self._zones = zones_client
        self._machines = machines_client
        self._disk_types = disk_types_client
        self._images = images_client
        self._accelerators = accelerators_client
        self._networks = networks_client
        self._subnetworks = subnetworks_client
        self._pool = thread_pool

    @classmethod
    def create(
        cls,
        project: str,
        credentials_file: str | None = None,
        thread_pool_size: int = 8,
    ) -> ComputeClient:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        credentials = _load_credentials(credentials_file)
        kwargs: dict[str, Any] = {"credentials": credentials} if credentials else {}

        log.info("Creating Compute Engine client for project {project}", project=project)
        return cls(
            project,
            instances_client=compute_v1.InstancesClient(**kwargs),
            regions_client=compute_v1.RegionsClient(**kwargs),
            zones_client=compute_v1.ZonesClient(**kwargs),
            machines_client=compute_v1.MachineTypesClient(**kwargs),
            disk_types_client=compute_v1.DiskTypesClient(**kwargs),
            images_client=compute_v1.ImagesClient(**kwargs),
            accelerators_client=compute_v1.AcceleratorTypesClient(**kwargs),
            networks_client=compute_v1.NetworksClient(**kwargs),
            subnetworks_client=compute_v1.SubnetworksClient(**kwargs),
            thread_pool=ThreadPoolExecutor(
                max_workers=thread_pool_size,
                thread_name_prefix="gce-io",
            ),
        )

    async def _run[T](self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(
                self._pool, lambda: fn(*args, **kwargs),
            )
        return await loop.run_in_executor(self._pool, fn, *args)

    async def _list(self, method: Callable[..., object], request: object) -> list[Any]:
        return await self._run(lambda: _collect_pager(method(request=request)))

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def insert_instance(
        self, zone: str, instance: Any, template: str = "",
    ) -> Any:
        """Insert an instance and return the zonal operation."""
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        request = compute_v1.InsertInstanceRequest(
            project=self.project,
            zone=resource_name(zone),
            instance_resource=instance,
        )
        if template:
            request.source_instance_template = template

        return await self._run(self._instances.insert, request=request)

    async def wait_for_operation(self, operation: Any) -> None:
        """Wait off-loop for a zonal operation; raise if it finished with an error."""
        result = getattr(operation, "result", None)
        if callable(result):
            await self._run(result)
        raise_for_operation(operation)

    async def get_instance(self, zone: str, name: str) -> Any:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._run(
            self._instances.get,
            request=compute_v1.GetInstanceRequest(
                project=self.project, zone=resource_name(zone), instance=name,
            ),
        )

    async def delete_instance(self, zone: str, name: str) -> Any:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        log.info("Requested deletion of instance {name}", name=name)
        return await self._run(
            self._instances.delete,
            request=compute_v1.DeleteInstanceRequest(
                project=self.project, zone=resource_name(zone), instance=name,
            ),
        )

    async def list_instances_by_label(self, key: str, value: str) -> list[Any]:
        """All instances in the project carrying ``key=value``, across zones."""
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        scoped = await self._list(
            self._instances.aggregated_list,
            compute_v1.AggregatedListInstancesRequest(
                project=self.project,
                filter=f'labels.{key} = "{value}"',
            ),
        )
        return [
            inst
            for _zone, scoped_list in scoped
            for inst in getattr(scoped_list, "instances", None) or []
        ]

    # -------------------------------------------------------------------------
    # Catalog (configuration-time validation)
    # -------------------------------------------------------------------------

    async def get_regions(self) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._list(
            self._regions.list,
            compute_v1.ListRegionsRequest(project=self.project),
        )

    async def get_zones(self, region: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        zones = await self._list(
            self._zones.list,
            compute_v1.ListZonesRequest(project=self.project),
        )
        wanted = resource_name(region)
        return [z for z in zones if resource_name(getattr(z, "region", "")) == wanted]

    async def get_machine_types(self, zone: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._list(
            self._machines.list,
            compute_v1.ListMachineTypesRequest(
                project=self.project, zone=resource_name(zone),
            ),
        )

    async def get_disk_types(self, zone: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        disk_types = await self._list(
            self._disk_types.list,
            compute_v1.ListDiskTypesRequest(
                project=self.project, zone=resource_name(zone),
            ),
        )
        # local-ssd cannot back a boot disk
        return [d for d in disk_types if getattr(d, "name", "") != "local-ssd"]

    async def get_images(self, project: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        images = await self._list(
            self._images.list,
            compute_v1.ListImagesRequest(project=project),
        )
        return [i for i in images if not getattr(i, "deprecated", None)]

    async def get_image(self, project: str, name: str) -> Any:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._run(
            self._images.get,
            request=compute_v1.GetImageRequest(project=project, image=name),
        )

    async def get_accelerator_types(self, zone: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._list(
            self._accelerators.list,
            compute_v1.ListAcceleratorTypesRequest(
                project=self.project, zone=resource_name(zone),
            ),
        )

    async def get_networks(self) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._list(
            self._networks.list,
            compute_v1.ListNetworksRequest(project=self.project),
        )

    async def get_subnetworks(self, network: str, region: str) -> list[Any]:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        subnets = await self._list(
            self._subnetworks.list,
            compute_v1.ListSubnetworksRequest(
                project=self.project, region=resource_name(region),
            ),
        )
        wanted = resource_name(network)
        return [s for s in subnets if resource_name(getattr(s, "network", "")) == wanted]


# =============================================================================
# Pure helper functions (no GCP API calls)
# =============================================================================


def _collect_pager(pager: object) -> list[Any]:
    """Collect all items from a sync GCP pager into a list."""
    return list(pager)  # type: ignore[arg-type]


def raise_for_operation(operation: object) -> None:
    """Raise ``ProvisioningError`` if a completed operation reports an error."""
    code = getattr(operation, "error_code", None)
    if not code:
        return
    message = getattr(operation, "error_message", None) or "no error message"
    raise ProvisioningError(
        f"Operation {getattr(operation, 'name', '?')} failed ({code}): {message}"
    )


def _load_credentials(credentials_file: str | None) -> Any:
    """Service account credentials from a key file, or ``None`` for ADC."""
    if not credentials_file:
        return None

    path = os.path.expanduser(credentials_file)
    if not os.path.isfile(path):
        raise ConfigurationError(f"Credentials file not found: {credentials_file}")

    from google.oauth2 import service_account  # type: ignore[reportMissingImports]

    return service_account.Credentials.from_service_account_file(
        path, scopes=["https://www.googleapis.com/auth/cloud-platform"],
    )


def resolve_project(explicit: str | None) -> str:
    """Resolve GCP project: explicit > env > ADC."""
    if explicit:
        return explicit

    if env_project := os.environ.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := os.environ.get("GCLOUD_PROJECT"):
        return env_project

    import google.auth  # type: ignore[reportMissingImports]
    from google.auth.exceptions import DefaultCredentialsError

    try:
        _, project = google.auth.default()
    except DefaultCredentialsError as e:
        raise ConfigurationError(f"No GCP credentials available: {e}") from e
    if project:
        return project

    raise ConfigurationError(
        "No GCP project found. Set GOOGLE_CLOUD_PROJECT env var, "
        "set project_id on the cloud, or configure Application Default Credentials."
    )
