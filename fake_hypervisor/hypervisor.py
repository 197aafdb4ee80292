import logging
import time
import uuid as uuid_lib
from pathlib import Path
from threading import Lock

from fake_hypervisor.config import FakeHypervisorSettings, get_settings
from provisioner.clients.prlctl import HypervisorCommandFailure
from provisioner.models import CommandResult, VmRuntimeState, VmStatus
from provisioner.services.readiness import IP_QUERY_COMMAND


logger = logging.getLogger(__name__)

READ_ONLY_COMMANDS = {"list", "exec"}


class FakeHypervisor:
    """In-memory stand-in for ``prlctl`` with the same client surface.

    Commands are interpreted from their argv, recorded in ``calls`` in the
    order they arrive, and applied to an in-memory VM table. Guests report an
    address after ``ip_after_polls`` address queries and the completion marker
    once ``marker_after_polls`` address queries have been made.
    """

    def __init__(self, settings: FakeHypervisorSettings | None = None):
        self.settings = settings or get_settings()
        self._lock = Lock()
        self._vms: dict[str, dict] = {}
        self._ip_polls: dict[str, int] = {}
        self._next_host = 10
        self.calls: list[list[str]] = []
        self.fail_commands: set[tuple[str, str | None]] = set()
        self.ip_after_polls: dict[str, int | None] = {}
        self.marker_after_polls: dict[str, int | None] = {}
        for template in self.settings.templates:
            self.add_vm(template, template=True)

    def add_vm(
        self,
        name: str,
        *,
        status: VmStatus = VmStatus.STOPPED,
        template: bool = False,
        snapshots: set[str] | None = None,
    ) -> None:
        with self._lock:
            self._vms[name] = {
                "name": name,
                "uuid": str(uuid_lib.uuid4()),
                "status": status,
                "template": template,
                "snapshots": set(snapshots or ()),
                "config": {},
                "ip": None,
            }

    def fail(self, subcommand: str, name: str | None = None) -> None:
        self.fail_commands.add((subcommand, name))

    def vm(self, name: str) -> dict | None:
        with self._lock:
            row = self._vms.get(name)
            return dict(row) if row else None

    def mutations(self, name: str | None = None) -> list[list[str]]:
        with self._lock:
            rows = [c for c in self.calls if c[0] not in READ_ONLY_COMMANDS]
        if name is None:
            return rows
        return [c for c in rows if name in c[1:]]

    def run(
        self,
        args: list[str],
        *,
        tolerate_failure: bool = False,
        field: str | None = None,
    ) -> CommandResult:
        if self.settings.command_delay_sec:
            time.sleep(self.settings.command_delay_sec)
        with self._lock:
            self.calls.append(list(args))
            exit_code, stderr = self._apply(args)
        result = CommandResult(
            args=["prlctl", *args], exit_code=exit_code, stdout="", stderr=stderr
        )
        if exit_code != 0 and not tolerate_failure:
            raise HypervisorCommandFailure(
                args=result.args, exit_code=exit_code, stderr=stderr, field=field
            )
        return result

    def _should_fail(self, subcommand: str, name: str | None) -> bool:
        return (subcommand, None) in self.fail_commands or (
            subcommand,
            name,
        ) in self.fail_commands

    def _apply(self, args: list[str]) -> tuple[int, str]:
        subcommand = args[0]
        target = args[1] if len(args) > 1 else None
        if subcommand == "clone" and "--name" in args:
            target = args[args.index("--name") + 1]
        if self._should_fail(subcommand, target):
            return 1, f"simulated failure: {subcommand} {target}"
        if subcommand == "set" and len(args) > 2 and self._should_fail(f"set {args[2]}", target):
            return 1, f"simulated failure: set {args[2]} {target}"

        handler = getattr(self, f"_cmd_{subcommand.replace('-', '_')}", None)
        if handler is None:
            return 1, f"unknown command {subcommand}"
        return handler(args)

    def _new_vm(self, name: str, **extra) -> dict:
        row = {
            "name": name,
            "uuid": str(uuid_lib.uuid4()),
            "status": VmStatus.STOPPED,
            "template": False,
            "snapshots": set(),
            "config": {},
            "ip": None,
        }
        row.update(extra)
        self._vms[name] = row
        self._ip_polls.pop(name, None)
        return row

    def _cmd_create(self, args: list[str]) -> tuple[int, str]:
        name = args[1]
        if name in self._vms:
            return 1, f"vm already exists: {name}"
        self._new_vm(name, config={"no_hdd": "--no-hdd" in args})
        return 0, ""

    def _cmd_clone(self, args: list[str]) -> tuple[int, str]:
        source = self._vms.get(args[1])
        name = args[args.index("--name") + 1]
        if source is None:
            return 1, f"source not found: {args[1]}"
        if name in self._vms:
            return 1, f"vm already exists: {name}"
        self._new_vm(
            name,
            snapshots=set(source["snapshots"]),
            config={"linked": "--linked" in args, "source": source["name"]},
        )
        return 0, ""

    def _cmd_register(self, args: list[str]) -> tuple[int, str]:
        name = Path(args[1].rstrip("/")).stem
        if name in self._vms:
            return 1, f"vm already exists: {name}"
        self._new_vm(name, config={"registered_from": args[1]})
        return 0, ""

    def _cmd_delete(self, args: list[str]) -> tuple[int, str]:
        if self._vms.pop(args[1], None) is None:
            return 1, f"vm not found: {args[1]}"
        self._ip_polls.pop(args[1], None)
        return 0, ""

    def _cmd_unregister(self, args: list[str]) -> tuple[int, str]:
        return self._cmd_delete(args)

    def _cmd_start(self, args: list[str]) -> tuple[int, str]:
        row = self._vms.get(args[1])
        if row is None:
            return 1, f"vm not found: {args[1]}"
        if row["status"] == VmStatus.RUNNING:
            return 1, "vm is already running"
        row["status"] = VmStatus.RUNNING
        return 0, ""

    def _cmd_stop(self, args: list[str]) -> tuple[int, str]:
        row = self._vms.get(args[1])
        if row is None:
            return 1, f"vm not found: {args[1]}"
        if row["status"] == VmStatus.STOPPED:
            return 1, "vm is not running"
        row["status"] = VmStatus.STOPPED
        row["ip"] = None
        return 0, ""

    def _cmd_set(self, args: list[str]) -> tuple[int, str]:
        name = args[1]
        row = self._vms.get(name)
        if row is None:
            return 1, f"vm not found: {name}"
        options = args[2:]
        if options[:1] == ["--name"]:
            new_name = options[1]
            if new_name in self._vms:
                return 1, f"vm already exists: {new_name}"
            row["name"] = new_name
            self._vms[new_name] = self._vms.pop(name)
            return 0, ""
        if options[:1] == ["--template"]:
            row["template"] = options[1] == "on"
            return 0, ""
        key = options[0].lstrip("-")
        if key in {"device-add", "device-set"}:
            key = f"{key}:{options[1]}"
        row["config"][key] = options[1:]
        return 0, ""

    def _cmd_snapshot_switch(self, args: list[str]) -> tuple[int, str]:
        row = self._vms.get(args[1])
        snapshot_id = args[args.index("--id") + 1]
        if row is None:
            return 1, f"vm not found: {args[1]}"
        if snapshot_id not in row["snapshots"]:
            return 1, f"snapshot not found: {snapshot_id}"
        row["config"]["snapshot"] = snapshot_id
        return 0, ""

    def _cmd_export(self, args: list[str]) -> tuple[int, str]:
        if args[1] not in self._vms:
            return 1, f"vm not found: {args[1]}"
        return 0, ""

    def _guest_ip(self, row: dict) -> str:
        if row["ip"] is None:
            row["ip"] = f"{self.settings.subnet_prefix}{self._next_host}"
            self._next_host += 1
        return row["ip"]

    def _threshold(self, overrides: dict[str, int | None], name: str, default: int) -> int | None:
        if name in overrides:
            return overrides[name]
        return default

    def list_vms(self, *, templates: bool = False) -> list[dict]:
        with self._lock:
            self.calls.append(["list", "--all", "--full", "--json"])
            rows = []
            for row in self._vms.values():
                if row["template"] != templates:
                    continue
                rows.append(
                    {
                        "uuid": "{" + row["uuid"] + "}",
                        "status": row["status"].value.lower(),
                        "ip_configured": row["ip"] or "-",
                        "name": row["name"],
                    }
                )
            return rows

    def list_templates(self) -> list[dict]:
        return self.list_vms(templates=True)

    def describe(self, name: str) -> dict:
        args = ["list", "--info", "--json", name]
        with self._lock:
            self.calls.append(args)
            row = self._vms.get(name)
            if row is None:
                raise HypervisorCommandFailure(
                    args=["prlctl", *args], exit_code=255, stderr=f"vm not found: {name}"
                )
            config = row["config"]
            disk = config.get("device-set:hdd0") or config.get("device-add:hdd") or []
            disk_mib = disk[disk.index("--size") + 1] if "--size" in disk else "65536"
            net = config.get("device-set:net0") or []
            net_type = net[net.index("--type") + 1] if "--type" in net else "shared"
            return {
                "ID": "{" + row["uuid"] + "}",
                "Name": row["name"],
                "State": row["status"].value.lower(),
                "Template": "yes" if row["template"] else "no",
                "Hardware": {
                    "cpu": {"cpus": int(config.get("cpus", ["2"])[0])},
                    "memory": {"size": f"{config.get('memsize', ['2048'])[0]}Mb"},
                    "hdd0": {"enabled": True, "size": f"{disk_mib}Mb"},
                    "net0": {"enabled": True, "type": net_type, "mac": "001C42A1B2C3"},
                },
            }

    def query(self, name: str) -> VmRuntimeState:
        for row in self.list_vms():
            if row["name"] == name:
                return VmRuntimeState(
                    name=name,
                    exists=True,
                    status=VmStatus[row["status"].upper()],
                    uuid=row["uuid"].strip("{}"),
                    ip=None if row["ip_configured"] == "-" else row["ip_configured"],
                )
        return VmRuntimeState.not_found(name)

    def exists(self, name: str) -> bool:
        return self.query(name).exists

    def exec_in_guest(self, name: str, command: str) -> tuple[int, str]:
        with self._lock:
            self.calls.append(["exec", name, command])
            row = self._vms.get(name)
            if row is None or row["status"] != VmStatus.RUNNING:
                return 255, ""
            if command == IP_QUERY_COMMAND:
                polls = self._ip_polls.get(name, 0) + 1
                self._ip_polls[name] = polls
                threshold = self._threshold(
                    self.ip_after_polls, name, self.settings.ip_after_polls
                )
                if threshold is None or polls < threshold:
                    return 1, ""
                ip = self._guest_ip(row)
                return 0, f"2: eth0    inet {ip}/24 brd 10.211.55.255 scope global dynamic eth0\n"
            if command.startswith("test -f "):
                threshold = self._threshold(
                    self.marker_after_polls, name, self.settings.marker_after_polls
                )
                polls = self._ip_polls.get(name, 0)
                if threshold is None or polls < threshold:
                    return 1, ""
                return 0, ""
            return 0, ""
