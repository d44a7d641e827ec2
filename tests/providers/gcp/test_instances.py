from __future__ import annotations

from types import SimpleNamespace

from fakes import make_config

from stratus.configuration import AcceleratorConfiguration, BootDisk, NetworkConfiguration
from stratus.providers.gcp.instances import (
    build_instance,
    disk_type_path,
    image_path,
    machine_type_path,
    network_path,
    resource_name,
    select_address,
    subnetwork_path,
    zone_to_region,
)

ZONE_URL = "https://www.googleapis.com/compute/v1/projects/p/zones/us-west1-b"


def _instance(internal: str | None = "10.0.0.2", nat: str | None = "34.1.2.3") -> SimpleNamespace:
    access = [SimpleNamespace(type_="ONE_TO_ONE_NAT", nat_i_p=nat)] if nat else []
    return SimpleNamespace(
        network_interfaces=[SimpleNamespace(network_i_p=internal, access_configs=access)],
    )


class TestPaths:
    def test_resource_name_of_url(self):
        assert resource_name(ZONE_URL) == "us-west1-b"

    def test_zone_to_region(self):
        assert zone_to_region("us-central1-a") == "us-central1"
        assert zone_to_region(ZONE_URL) == "us-west1"

    def test_machine_type_from_name(self):
        assert machine_type_path(ZONE_URL, "n1-standard-1") == "zones/us-west1-b/machineTypes/n1-standard-1"

    def test_urls_pass_through(self):
        url = "projects/p/zones/us-west1-b/diskTypes/pd-ssd"
        assert disk_type_path("us-west1-b", url) == url
        assert network_path("projects/p/global/networks/ci") == "projects/p/global/networks/ci"

    def test_image_lookup(self):
        assert image_path("debian-12", "debian-cloud") == "projects/debian-cloud/global/images/debian-12"
        assert image_path("my-image") == "global/images/my-image"
        family = "projects/debian-cloud/global/images/family/debian-12"
        assert image_path(family, "ignored") == family

    def test_subnetwork_uses_region(self):
        assert subnetwork_path("builders", "us-central1") == "regions/us-central1/subnetworks/builders"


class TestSelectAddress:
    def test_prefers_nat(self):
        assert select_address(_instance(), use_internal=False) == "34.1.2.3"

    def test_internal_when_requested(self):
        assert select_address(_instance(), use_internal=True) == "10.0.0.2"

    def test_falls_back_to_internal(self):
        assert select_address(_instance(nat=None), use_internal=False) == "10.0.0.2"

    def test_no_interface_yet(self):
        assert select_address(SimpleNamespace(network_interfaces=[]), use_internal=False) is None
        assert select_address(_instance(internal=None, nat=None), use_internal=False) is None


class TestBuildInstance:
    def test_basic_instance(self):
        config = make_config()
        instance = build_instance(
            config,
            name="linux-1",
            labels={"stratus_cloud_id": "c1"},
            metadata={"ssh-keys": "ci:ssh-rsa AAAA ci"},
        )

        assert instance.name == "linux-1"
        assert instance.machine_type == "zones/us-central1-a/machineTypes/n1-standard-1"
        assert dict(instance.labels) == {"stratus_cloud_id": "c1"}
        assert [(i.key, i.value) for i in instance.metadata.items] == [("ssh-keys", "ci:ssh-rsa AAAA ci")]
        disk = instance.disks[0]
        assert disk.boot and disk.auto_delete
        assert disk.initialize_params.disk_type == "zones/us-central1-a/diskTypes/pd-standard"
        nic = instance.network_interfaces[0]
        assert nic.network == "global/networks/default"
        assert nic.access_configs[0].type_ == "ONE_TO_ONE_NAT"
        assert instance.scheduling.automatic_restart
        assert not instance.scheduling.preemptible

    def test_preemptible_scheduling(self):
        instance = build_instance(make_config(preemptible=True), name="n", labels={}, metadata={})
        assert instance.scheduling.preemptible
        assert not instance.scheduling.automatic_restart
        assert instance.scheduling.on_host_maintenance == "TERMINATE"

    def test_accelerator_terminates_on_maintenance(self):
        config = make_config(accelerator=AcceleratorConfiguration("nvidia-tesla-t4", 2))
        instance = build_instance(config, name="n", labels={}, metadata={})

        accel = instance.guest_accelerators[0]
        assert accel.accelerator_type == "zones/us-central1-a/acceleratorTypes/nvidia-tesla-t4"
        assert accel.accelerator_count == 2
        assert instance.scheduling.on_host_maintenance == "TERMINATE"

    def test_private_subnetwork(self):
        config = make_config(
            network=NetworkConfiguration(subnetwork="builders", tags=("ssh",), external_address=False),
        )
        instance = build_instance(config, name="n", labels={}, metadata={})

        nic = instance.network_interfaces[0]
        assert nic.subnetwork == "regions/us-central1/subnetworks/builders"
        assert list(nic.access_configs) == []
        assert list(instance.tags.items) == ["ssh"]

    def test_service_account_and_disk(self):
        config = make_config(
            boot_disk=BootDisk("img", "proj", type="pd-ssd", size_gb=64, auto_delete=False),
            service_account_email="ci@p.iam.gserviceaccount.com",
            min_cpu_platform="Intel Skylake",
        )
        instance = build_instance(config, name="n", labels={}, metadata={})

        assert instance.service_accounts[0].email == "ci@p.iam.gserviceaccount.com"
        assert instance.min_cpu_platform == "Intel Skylake"
        params = instance.disks[0].initialize_params
        assert (params.source_image, params.disk_size_gb) == ("projects/proj/global/images/img", 64)
        assert not instance.disks[0].auto_delete
