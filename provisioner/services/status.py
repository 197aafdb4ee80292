import logging
import re
from pathlib import Path

from provisioner.config import Settings
from provisioner.models import ProvisionOutcome, VmStatus, parse_vm_status
from provisioner.schemas import ProvisionResult, Sizing, VmSpec, VmStatusSnapshot


logger = logging.getLogger(__name__)


def sizing_for(spec: VmSpec) -> Sizing:
    return Sizing(cpus=spec.cpus, memory_mib=spec.memory_mib, disk_gib=spec.disk_gib)


def failure_result(spec: VmSpec, outcome: ProvisionOutcome, error: str) -> ProvisionResult:
    return ProvisionResult(
        name=spec.name,
        outcome=outcome,
        status=VmStatus.UNKNOWN,
        sizing=sizing_for(spec),
        error=error,
    )


class StatusReporter:
    def __init__(self, client, settings: Settings):
        self.client = client
        self.status_dir = Path(settings.status_dir)

    def snapshot_path(self, name: str) -> Path:
        return self.status_dir / f"{name}.json"

    def report(
        self, spec: VmSpec, outcome: ProvisionOutcome, ip: str | None = None
    ) -> ProvisionResult:
        state = self.client.query(spec.name)
        result = ProvisionResult(
            name=spec.name,
            outcome=outcome,
            status=state.status,
            uuid=state.uuid,
            ip=ip or state.ip,
            sizing=sizing_for(spec),
        )
        self.write_snapshot(result)
        return result

    def write_snapshot(self, result: ProvisionResult) -> Path:
        snapshot = VmStatusSnapshot(
            name=result.name,
            status=result.status.value,
            ip=result.ip,
            uuid=result.uuid,
            cpus=result.sizing.cpus,
            memory=result.sizing.memory_mib,
            disk_size=result.sizing.disk_gib,
        )
        self.status_dir.mkdir(parents=True, exist_ok=True)
        path = self.snapshot_path(result.name)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(snapshot.model_dump_json(indent=2) + "\n", encoding="utf-8")
        tmp_path.replace(path)
        logger.debug("status snapshot written name=%s path=%s", result.name, path)
        return path

    def remove_snapshot(self, name: str) -> None:
        try:
            self.snapshot_path(name).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("status snapshot cleanup failed name=%s: %s", name, exc)

    def read_snapshot(self, name: str) -> VmStatusSnapshot | None:
        path = self.snapshot_path(name)
        if not path.is_file():
            return None
        return VmStatusSnapshot.model_validate_json(path.read_text(encoding="utf-8"))


def collect_status(client) -> list[dict]:
    rows = []
    for row in client.list_vms():
        status = parse_vm_status(row.get("status"))
        ip = row.get("ip_configured")
        if not ip or ip == "-" or str(ip).startswith("169.254."):
            ip = None
        rows.append(
            {
                "name": row.get("name"),
                "status": status.value,
                "uuid": (row.get("uuid") or "").strip("{}") or None,
                "ip": ip,
            }
        )
    return sorted(rows, key=lambda r: str(r.get("name") or ""))


def _size_mib(raw) -> int | None:
    match = re.match(r"\s*(\d+)", str(raw or ""))
    return int(match.group(1)) if match else None


def vm_details(client, name: str) -> dict:
    """Resources, disks and network adapters of one VM from ``prlctl list --info``."""
    info = client.describe(name)
    hardware = info.get("Hardware") or {}
    disks = []
    interfaces = []
    for device, body in sorted(hardware.items()):
        if not isinstance(body, dict):
            continue
        if device.startswith("hdd"):
            disks.append({"device": device, "size_mib": _size_mib(body.get("size"))})
        elif device.startswith("net"):
            interfaces.append(
                {"device": device, "type": body.get("type"), "mac": body.get("mac")}
            )
    return {
        "name": info.get("Name", name),
        "uuid": str(info.get("ID") or "").strip("{}") or None,
        "status": parse_vm_status(info.get("State")).value,
        "template": str(info.get("Template", "no")).lower() == "yes",
        "cpus": (hardware.get("cpu") or {}).get("cpus"),
        "memory_mib": _size_mib((hardware.get("memory") or {}).get("size")),
        "disks": disks,
        "interfaces": interfaces,
    }
