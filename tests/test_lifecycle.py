from pathlib import Path
from typing import Any, cast

import pytest

from fake_hypervisor.config import FakeHypervisorSettings
from fake_hypervisor.hypervisor import FakeHypervisor
from provisioner.clients.prlctl import HypervisorCommandFailure
from provisioner.config import Settings
from provisioner.errors import NoSourceSpecified, ProvisioningCancelled, ToolingUnavailable
from provisioner.metrics import metrics
from provisioner.models import LifecycleState, ProvisionOutcome, SeedMedia, VmStatus
from provisioner.schemas import (
    CloudInitConfig,
    IsoInstallSource,
    PvmImportSource,
    SnapshotSource,
    TemplateSource,
    VmSpec,
)
from provisioner.services.lifecycle import VmLifecycle
from provisioner.services.readiness import ReadinessPoller


TEMPLATE = "ubuntu-22.04-template"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeSeedBuilder:
    def __init__(self) -> None:
        self.built: list[str] = []
        self.destroyed: list[str] = []

    def build(self, name: str, user_data: str, meta_data: str) -> SeedMedia:
        self.built.append(name)
        return SeedMedia(path=f"/seed/cloud-init-{name}.iso", content_fingerprint="f00d")

    def destroy(self, media: SeedMedia) -> None:
        self.destroyed.append(media.path)

    def destroy_for(self, name: str) -> None:
        self.destroyed.append(name)


class MissingToolingSeedBuilder(FakeSeedBuilder):
    def build(self, name: str, user_data: str, meta_data: str) -> SeedMedia:
        raise ToolingUnavailable(["xorriso", "genisoimage", "mkisofs"])


class CancelledPoller:
    def await_ready(self, name: str, timeout: float, interval: float):
        raise ProvisioningCancelled("cancelled while waiting for guest readiness")


def setup_function() -> None:
    metrics.reset()


def _hypervisor() -> FakeHypervisor:
    return FakeHypervisor(FakeHypervisorSettings(templates_csv=TEMPLATE))


def _lifecycle(
    tmp_path: Path, hypervisor: FakeHypervisor, seed_builder=None, poller=None
) -> VmLifecycle:
    settings = Settings(
        seed_media_dir=str(tmp_path / "output"),
        status_dir=str(tmp_path / "output" / "status"),
        start_settle_sec=0,
        ready_timeout_sec=30,
        ready_poll_interval_sec=10,
    )
    clock = FakeClock()
    poller = poller or ReadinessPoller(
        hypervisor, settings.guest_marker_path, clock=clock, sleep=clock.sleep
    )
    return VmLifecycle(
        cast(Any, hypervisor),
        settings,
        seed_builder=cast(Any, seed_builder or FakeSeedBuilder()),
        poller=poller,
    )


def test_template_clone_reaches_ready(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    started: list[str] = []
    spec = VmSpec(
        name="web",
        cpus=2,
        memory_mib=2048,
        template=TemplateSource(name=TEMPLATE, linked_clone=True),
    )

    result = lifecycle.provision(spec, on_started=started.append)

    assert result.outcome == ProvisionOutcome.READY
    assert result.status == VmStatus.RUNNING
    assert result.ip == "10.211.55.10"
    assert result.sizing.cpus == 2
    assert result.sizing.memory_mib == 2048
    assert started == ["web"]
    assert lifecycle.state_of("web") == LifecycleState.READY.value

    calls = hypervisor.mutations("web")
    assert calls[0] == ["clone", TEMPLATE, "--name", "web", "--linked"]
    assert ["set", "web", "--cpus", "2"] in calls
    assert ["set", "web", "--memsize", "2048"] in calls
    assert ["set", "web", "--device-set", "net0", "--type", "shared"] in calls
    assert ["set", "web", "--device-bootorder", "hdd0"] in calls
    assert calls[-1] == ["start", "web"]
    assert not any("--size" in call for call in calls)

    snapshot = lifecycle.reporter.read_snapshot("web")
    assert snapshot is not None
    assert snapshot.status == "RUNNING"
    assert snapshot.ip == "10.211.55.10"


def test_missing_source_fails_before_any_hypervisor_call(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)

    with pytest.raises(NoSourceSpecified):
        lifecycle.provision(VmSpec(name="web", cpus=2))

    assert hypervisor.calls == []
    assert lifecycle.state_of("web") == LifecycleState.FAILED.value
    assert metrics.snapshot()["vm_config_errors_total"] == 1


def test_rerun_replaces_existing_instance(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", template=TemplateSource(name=TEMPLATE))

    lifecycle.provision(spec)
    result = lifecycle.provision(spec)

    assert result.outcome == ProvisionOutcome.READY
    calls = hypervisor.mutations("web")
    second_clone = len(calls) - 1 - calls[::-1].index(["clone", TEMPLATE, "--name", "web"])
    assert calls[second_clone - 2 : second_clone] == [
        ["stop", "web", "--kill"],
        ["delete", "web"],
    ]
    assert metrics.snapshot()["vm_stale_removed_total"] == 1
    assert metrics.snapshot()["vm_creates_total"] == 2


def test_iso_install_creates_disk_and_boots_from_cdrom(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(
        name="builder",
        disk_gib=20,
        network="bridged",
        iso_install=IsoInstallSource(path="/isos/ubuntu-22.04.iso"),
    )

    lifecycle.provision(spec)

    calls = hypervisor.mutations("builder")
    assert calls[0] == ["create", "builder", "--distribution", "ubuntu", "--no-hdd"]
    assert ["set", "builder", "--device-add", "hdd", "--size", "20480"] in calls
    assert ["set", "builder", "--efi-boot", "on"] in calls
    assert [
        "set",
        "builder",
        "--device-set",
        "cdrom0",
        "--image",
        "/isos/ubuntu-22.04.iso",
        "--connect",
    ] in calls
    assert ["set", "builder", "--device-set", "net0", "--type", "bridged"] in calls
    assert ["set", "builder", "--device-bootorder", "cdrom0 hdd0"] in calls


def test_iso_install_without_disk_keeps_default_disk(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(
        name="builder",
        distribution="debian",
        iso_install=IsoInstallSource(path="/isos/debian.iso"),
    )

    lifecycle.provision(spec)

    assert hypervisor.mutations("builder")[0] == [
        "create",
        "builder",
        "--distribution",
        "debian",
    ]


def test_snapshot_source_clones_then_switches(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.add_vm("golden", snapshots={"snap-1"})
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(
        name="web", snapshot=SnapshotSource(source_vm="golden", snapshot_id="snap-1")
    )

    lifecycle.provision(spec)

    calls = hypervisor.mutations("web")
    assert calls[:2] == [
        ["clone", "golden", "--name", "web"],
        ["snapshot-switch", "web", "--id", "snap-1"],
    ]


def test_pvm_import_registers_and_renames(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", pvm_import=PvmImportSource(path="/bundles/base.pvm"))

    result = lifecycle.provision(spec)

    assert result.outcome == ProvisionOutcome.READY
    calls = hypervisor.mutations()
    assert calls[:2] == [
        ["register", "/bundles/base.pvm", "--regenerate-src-uuid"],
        ["set", "base", "--name", "web"],
    ]
    assert hypervisor.vm("base") is None


def test_seed_media_is_attached_when_cloud_init_given(tmp_path):
    hypervisor = _hypervisor()
    seed_builder = FakeSeedBuilder()
    lifecycle = _lifecycle(tmp_path, hypervisor, seed_builder)
    spec = VmSpec(
        name="web",
        template=TemplateSource(name=TEMPLATE),
        cloud_init=CloudInitConfig(user_data="#cloud-config\n", meta_data="instance-id: web\n"),
    )

    lifecycle.provision(spec)

    assert seed_builder.built == ["web"]
    assert [
        "set",
        "web",
        "--device-add",
        "cdrom",
        "--image",
        "/seed/cloud-init-web.iso",
        "--connect",
    ] in hypervisor.mutations("web")


def test_configuration_failure_names_the_field(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.fail("set --memsize", "web")
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", memory_mib=999999, template=TemplateSource(name=TEMPLATE))

    with pytest.raises(HypervisorCommandFailure) as excinfo:
        lifecycle.provision(spec)

    assert excinfo.value.field == "memory"
    assert lifecycle.state_of("web") == LifecycleState.FAILED.value
    assert ["start", "web"] not in hypervisor.mutations("web")
    assert metrics.snapshot()["vm_failures_total"] == 1


def test_readiness_timeout_leaves_vm_running(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.marker_after_polls["web"] = None
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", template=TemplateSource(name=TEMPLATE))

    result = lifecycle.provision(spec)

    assert result.outcome == ProvisionOutcome.READY_TIMED_OUT
    assert result.ip == "10.211.55.10"
    assert lifecycle.state_of("web") == LifecycleState.READY_TIMED_OUT.value
    vm = hypervisor.vm("web")
    assert vm is not None
    assert vm["status"] == VmStatus.RUNNING


def test_destroy_after_provision_removes_everything(tmp_path):
    hypervisor = _hypervisor()
    seed_builder = FakeSeedBuilder()
    lifecycle = _lifecycle(tmp_path, hypervisor, seed_builder)
    spec = VmSpec(name="web", template=TemplateSource(name=TEMPLATE))
    lifecycle.provision(spec)

    lifecycle.destroy(spec)

    assert hypervisor.vm("web") is None
    assert lifecycle.state_of("web") == LifecycleState.ABSENT.value
    assert lifecycle.reporter.read_snapshot("web") is None
    assert "web" in seed_builder.destroyed


def test_destroy_of_never_created_vm_succeeds(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)

    lifecycle.destroy("ghost")

    assert lifecycle.state_of("ghost") == LifecycleState.ABSENT.value
    assert metrics.snapshot()["vm_destroyed_total"] == 1


def test_destroy_fails_when_vm_survives_delete(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.add_vm("web", status=VmStatus.RUNNING)
    hypervisor.fail("delete", "web")
    lifecycle = _lifecycle(tmp_path, hypervisor)

    with pytest.raises(HypervisorCommandFailure):
        lifecycle.destroy("web")

    assert lifecycle.state_of("web") == LifecycleState.FAILED.value


def test_destroy_cleans_media_and_snapshot_when_delete_fails(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.add_vm("web", status=VmStatus.RUNNING)
    hypervisor.fail("delete", "web")
    seed_builder = FakeSeedBuilder()
    lifecycle = _lifecycle(tmp_path, hypervisor, seed_builder)
    snapshot = lifecycle.reporter.snapshot_path("web")
    snapshot.parent.mkdir(parents=True, exist_ok=True)
    snapshot.write_text("{}")

    with pytest.raises(HypervisorCommandFailure):
        lifecycle.destroy("web")

    assert seed_builder.destroyed == ["web"]
    assert not snapshot.exists()


def test_pvm_import_rerun_after_failed_rename(tmp_path):
    hypervisor = _hypervisor()
    hypervisor.fail("set --name", "base")
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", pvm_import=PvmImportSource(path="/bundles/base.pvm"))

    with pytest.raises(HypervisorCommandFailure):
        lifecycle.provision(spec)
    assert hypervisor.vm("base") is not None

    hypervisor.fail_commands.clear()
    result = lifecycle.provision(spec)

    assert result.outcome == ProvisionOutcome.READY
    assert hypervisor.vm("base") is None
    calls = hypervisor.mutations()
    rerun = calls[calls.index(["unregister", "base"]) :]
    assert rerun[1:3] == [
        ["register", "/bundles/base.pvm", "--regenerate-src-uuid"],
        ["set", "base", "--name", "web"],
    ]
    assert ["delete", "base"] not in calls


def test_pvm_import_rerun_unregisters_instead_of_deleting(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", pvm_import=PvmImportSource(path="/bundles/web.pvm"))

    lifecycle.provision(spec)
    lifecycle.provision(spec)

    calls = hypervisor.mutations("web")
    assert ["unregister", "web"] in calls
    assert ["delete", "web"] not in calls


def test_missing_iso_tooling_aborts_before_any_mutation(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor, MissingToolingSeedBuilder())
    spec = VmSpec(
        name="web",
        template=TemplateSource(name=TEMPLATE),
        cloud_init=CloudInitConfig(user_data="#cloud-config\n", meta_data="instance-id: web\n"),
    )

    with pytest.raises(ToolingUnavailable):
        lifecycle.provision(spec)

    assert hypervisor.mutations() == []
    assert lifecycle.state_of("web") == LifecycleState.FAILED.value


def test_cancelled_provisioning_releases_seed_media(tmp_path):
    hypervisor = _hypervisor()
    seed_builder = FakeSeedBuilder()
    lifecycle = _lifecycle(tmp_path, hypervisor, seed_builder, poller=CancelledPoller())
    spec = VmSpec(
        name="web",
        template=TemplateSource(name=TEMPLATE),
        cloud_init=CloudInitConfig(user_data="#cloud-config\n", meta_data="instance-id: web\n"),
    )

    with pytest.raises(ProvisioningCancelled):
        lifecycle.provision(spec)

    assert seed_builder.built == ["web"]
    assert seed_builder.destroyed == ["/seed/cloud-init-web.iso"]
    assert lifecycle.state_of("web") == LifecycleState.FAILED.value


def test_destroy_of_imported_vm_keeps_bundle_files(tmp_path):
    hypervisor = _hypervisor()
    lifecycle = _lifecycle(tmp_path, hypervisor)
    spec = VmSpec(name="web", pvm_import=PvmImportSource(path="/bundles/base.pvm"))
    lifecycle.provision(spec)

    lifecycle.destroy(spec)

    assert hypervisor.mutations()[-1] == ["unregister", "web"]
    assert hypervisor.vm("web") is None
