from provisioner.models import SourceType
from provisioner.schemas import VmSpec


def resolve_source(spec: VmSpec) -> SourceType:
    """Pick the provisioning source for a VM.

    First populated descriptor wins: template, pvm_import, snapshot,
    iso_install. Exclusivity is not checked here; a VM with no populated
    descriptor resolves to SourceType.NONE and is rejected before any
    hypervisor call.
    """
    if spec.template is not None and spec.template.name:
        return SourceType.TEMPLATE
    if spec.pvm_import is not None and spec.pvm_import.path:
        return SourceType.PVM_IMAGE
    if spec.snapshot is not None and spec.snapshot.snapshot_id:
        return SourceType.SNAPSHOT
    if spec.iso_install is not None and spec.iso_install.path:
        return SourceType.ISO
    return SourceType.NONE
