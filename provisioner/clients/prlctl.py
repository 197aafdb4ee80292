import json
import logging
import subprocess
import threading
import time

from provisioner.errors import ProvisioningCancelled
from provisioner.models import CommandResult, VmRuntimeState, parse_vm_status


logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


class HypervisorCommandFailure(RuntimeError):
    def __init__(
        self,
        *,
        args: list[str],
        exit_code: int,
        stderr: str,
        stdout: str = "",
        field: str | None = None,
    ):
        self.args_list = args
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.field = field
        detail = (stderr or stdout or "").strip()[:240] or "no output"
        prefix = f"setting {field} failed: " if field else ""
        super().__init__(
            f"{prefix}command failed exit_code={exit_code}: {' '.join(args)} ({detail})"
        )


def _strip_uuid(raw: str | None) -> str | None:
    if not raw:
        return None
    return raw.strip().strip("{}") or None


def _usable_ip(raw: str | None) -> str | None:
    if not raw:
        return None
    value = raw.strip().split("/", 1)[0]
    if not value or value == "-" or value.startswith("169.254."):
        return None
    return value


class PrlctlClient:
    """Synchronous wrapper around the ``prlctl`` command line tool.

    The client keeps no state about virtual machines; every query spawns a
    fresh ``prlctl`` process. Mutating calls raise HypervisorCommandFailure on
    a nonzero exit unless the caller tolerates it.
    """

    def __init__(
        self,
        binary: str = "prlctl",
        timeout_sec: float = 300,
        cancel_event: threading.Event | None = None,
        poll_sec: float = 0.5,
    ):
        self.binary = binary
        self.timeout_sec = timeout_sec
        self.cancel_event = cancel_event
        self.poll_sec = poll_sec

    def run(
        self,
        args: list[str],
        *,
        tolerate_failure: bool = False,
        field: str | None = None,
    ) -> CommandResult:
        result = self._execute(args)
        if not result.ok and not tolerate_failure:
            logger.error(
                "prlctl command failed exit_code=%s args=%s stderr=%s",
                result.exit_code,
                " ".join(result.args),
                result.stderr.strip(),
            )
            raise HypervisorCommandFailure(
                args=result.args,
                exit_code=result.exit_code,
                stderr=result.stderr,
                stdout=result.stdout,
                field=field,
            )
        if not result.ok:
            logger.debug(
                "prlctl command failure tolerated exit_code=%s args=%s",
                result.exit_code,
                " ".join(result.args),
            )
        return result

    def _execute(self, args: list[str]) -> CommandResult:
        cmd = [self.binary, *args]
        self._raise_if_cancelled(cmd)
        logger.debug("running command=%s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            return CommandResult(
                args=cmd, exit_code=NOT_FOUND_EXIT_CODE, stdout="", stderr=str(exc)
            )

        deadline = time.monotonic() + self.timeout_sec
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_sec)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    self._kill(proc)
                    raise ProvisioningCancelled(
                        f"cancelled while running {' '.join(cmd)}"
                    )
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    logger.warning(
                        "command timed out after %ss command=%s",
                        self.timeout_sec,
                        " ".join(cmd),
                    )
                    return CommandResult(
                        args=cmd,
                        exit_code=TIMEOUT_EXIT_CODE,
                        stdout="",
                        stderr=f"timed out after {self.timeout_sec}s",
                    )
        return CommandResult(
            args=cmd,
            exit_code=int(proc.returncode),
            stdout=stdout or "",
            stderr=stderr or "",
        )

    def _kill(self, proc: subprocess.Popen) -> None:
        proc.kill()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("process did not exit after kill pid=%s", proc.pid)

    def _raise_if_cancelled(self, cmd: list[str]) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ProvisioningCancelled(f"cancelled before running {' '.join(cmd)}")

    def list_vms(self, *, templates: bool = False) -> list[dict]:
        args = ["list", "--all", "--full", "--json"]
        if templates:
            args.insert(2, "--template")
        return self._json_rows(self.run(args))

    def _json_rows(self, result: CommandResult) -> list[dict]:
        try:
            rows = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise HypervisorCommandFailure(
                args=result.args,
                exit_code=result.exit_code,
                stderr=f"unparseable list output: {exc}",
                stdout=result.stdout,
            ) from exc
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def list_templates(self) -> list[dict]:
        return self.list_vms(templates=True)

    def describe(self, name: str) -> dict:
        """Full ``prlctl list --info`` record for one VM or template."""
        rows = self._json_rows(self.run(["list", "--info", "--json", name]))
        return rows[0] if rows else {}

    def query(self, name: str) -> VmRuntimeState:
        for row in self.list_vms():
            if row.get("name") != name:
                continue
            return VmRuntimeState(
                name=name,
                exists=True,
                status=parse_vm_status(row.get("status")),
                uuid=_strip_uuid(row.get("uuid")),
                ip=_usable_ip(row.get("ip_configured")),
            )
        return VmRuntimeState.not_found(name)

    def exists(self, name: str) -> bool:
        return self.query(name).exists

    def exec_in_guest(self, name: str, command: str) -> tuple[int, str]:
        result = self._execute(["exec", name, command])
        if not result.ok:
            logger.debug(
                "guest exec not ready name=%s exit_code=%s", name, result.exit_code
            )
        return result.exit_code, result.stdout
