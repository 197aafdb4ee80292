from provisioner.models import SourceType
from provisioner.schemas import (
    IsoInstallSource,
    PvmImportSource,
    SnapshotSource,
    TemplateSource,
    VmSpec,
)
from provisioner.services.resolver import resolve_source


def test_template_wins_over_every_other_source():
    spec = VmSpec(
        name="web",
        template=TemplateSource(name="ubuntu-22.04-template"),
        pvm_import=PvmImportSource(path="/bundles/base.pvm"),
        snapshot=SnapshotSource(source_vm="golden", snapshot_id="snap-1"),
        iso_install=IsoInstallSource(path="/isos/ubuntu.iso"),
    )
    assert resolve_source(spec) == SourceType.TEMPLATE


def test_priority_falls_through_empty_descriptors():
    spec = VmSpec(
        name="web",
        template=TemplateSource(name=""),
        pvm_import=PvmImportSource(path=""),
        snapshot=SnapshotSource(source_vm="golden", snapshot_id="snap-1"),
        iso_install=IsoInstallSource(path="/isos/ubuntu.iso"),
    )
    assert resolve_source(spec) == SourceType.SNAPSHOT


def test_pvm_before_iso():
    spec = VmSpec(
        name="web",
        pvm_import=PvmImportSource(path="/bundles/base.pvm"),
        iso_install=IsoInstallSource(path="/isos/ubuntu.iso"),
    )
    assert resolve_source(spec) == SourceType.PVM_IMAGE


def test_snapshot_requires_an_id():
    spec = VmSpec(name="web", snapshot=SnapshotSource(source_vm="golden"))
    assert resolve_source(spec) == SourceType.NONE


def test_empty_spec_has_no_source():
    assert resolve_source(VmSpec(name="web")) == SourceType.NONE
