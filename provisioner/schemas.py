import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from provisioner.errors import ConfigurationError
from provisioner.models import ProvisionOutcome, VmStatus


class TemplateSource(BaseModel):
    name: str = ""
    linked_clone: bool = False


class PvmImportSource(BaseModel):
    path: str = ""


class SnapshotSource(BaseModel):
    source_vm: str = ""
    snapshot_id: str = ""


class IsoInstallSource(BaseModel):
    path: str = ""


class CloudInitConfig(BaseModel):
    user_data: str = ""
    meta_data: str = ""
    hostname: str | None = None


class VmSpec(BaseModel):
    name: str = Field(min_length=1)
    cpus: int = Field(default=0, ge=0)
    memory_mib: int = Field(default=0, ge=0)
    disk_gib: int = Field(default=0, ge=0)
    network: str | None = None

    template: TemplateSource | None = None
    pvm_import: PvmImportSource | None = None
    snapshot: SnapshotSource | None = None
    iso_install: IsoInstallSource | None = None

    cloud_init: CloudInitConfig | None = None
    start_after: set[str] = Field(default_factory=set)
    auto_start: bool = False
    headless: bool = True
    nested_virt: bool = False
    shared_clipboard: bool = False
    time_sync: bool = True
    distribution: str | None = None


class Sizing(BaseModel):
    cpus: int = 0
    memory_mib: int = 0
    disk_gib: int = 0


class ProvisionResult(BaseModel):
    name: str
    outcome: ProvisionOutcome
    status: VmStatus = VmStatus.UNKNOWN
    uuid: str | None = None
    ip: str | None = None
    sizing: Sizing = Field(default_factory=Sizing)
    error: str | None = None


class VmStatusSnapshot(BaseModel):
    name: str
    status: str
    ip: str | None = None
    uuid: str | None = None
    cpus: int = 0
    memory: int = 0
    disk_size: int = 0


def parse_fleet(payload: dict) -> list[VmSpec]:
    raw_vms = payload.get("vms", payload) if isinstance(payload, dict) else None
    if not isinstance(raw_vms, dict):
        raise ConfigurationError("fleet definition must be a mapping of name -> vm")

    specs: list[VmSpec] = []
    for name, body in raw_vms.items():
        if not isinstance(body, dict):
            raise ConfigurationError(f"vm definition must be a mapping name={name}")
        declared = body.get("name")
        if declared is not None and declared != name:
            raise ConfigurationError(
                f"vm name mismatch key={name} name={declared}"
            )
        try:
            specs.append(VmSpec.model_validate({**body, "name": name}))
        except ValidationError as exc:
            raise ConfigurationError(f"invalid vm definition name={name}: {exc}") from exc
    return specs


def load_fleet(path: str | Path) -> list[VmSpec]:
    fleet_path = Path(path)
    try:
        payload = json.loads(fleet_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"fleet file not found: {fleet_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"fleet file is not valid JSON: {fleet_path}: {exc}") from exc
    return parse_fleet(payload)
