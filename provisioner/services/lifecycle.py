import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from provisioner.clients.prlctl import HypervisorCommandFailure
from provisioner.config import Settings
from provisioner.errors import NoSourceSpecified, ProvisioningCancelled
from provisioner.metrics import metrics
from provisioner.models import (
    LifecycleState,
    ProvisionOutcome,
    SeedMedia,
    SourceType,
)
from provisioner.schemas import ProvisionResult, VmSpec
from provisioner.seed_media import SeedMediaBuilder
from provisioner.services.readiness import ReadinessPoller
from provisioner.services.resolver import resolve_source
from provisioner.services.status import StatusReporter
from provisioner.state_machine import can_transition


logger = logging.getLogger(__name__)


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


def pvm_registered_name(spec: VmSpec) -> str:
    """Name prlctl gives a registered bundle: the bundle directory stem."""
    assert spec.pvm_import is not None
    return Path(spec.pvm_import.path.rstrip("/")).stem


def create_commands(spec: VmSpec, source: SourceType, settings: Settings) -> list[list[str]]:
    name = spec.name
    if source == SourceType.TEMPLATE:
        assert spec.template is not None
        cmd = ["clone", spec.template.name, "--name", name]
        if spec.template.linked_clone:
            cmd.append("--linked")
        return [cmd]
    if source == SourceType.PVM_IMAGE:
        assert spec.pvm_import is not None
        registered_name = pvm_registered_name(spec)
        commands = [["register", spec.pvm_import.path, "--regenerate-src-uuid"]]
        if registered_name != name:
            commands.append(["set", registered_name, "--name", name])
        return commands
    if source == SourceType.SNAPSHOT:
        assert spec.snapshot is not None
        return [
            ["clone", spec.snapshot.source_vm, "--name", name],
            ["snapshot-switch", name, "--id", spec.snapshot.snapshot_id],
        ]
    if source == SourceType.ISO:
        distribution = spec.distribution or settings.default_distribution
        cmd = ["create", name, "--distribution", distribution]
        if spec.disk_gib > 0:
            cmd.append("--no-hdd")
        return [cmd]
    raise NoSourceSpecified(name)


def configuration_steps(
    spec: VmSpec,
    source: SourceType,
    settings: Settings,
    seed_media: SeedMedia | None = None,
) -> list[tuple[str, list[str]]]:
    """Return the ``prlctl set`` calls for a created VM as (field, args) pairs.

    Sizing fields set to zero are skipped so the hypervisor default applies.
    """
    name = spec.name
    steps: list[tuple[str, list[str]]] = []
    if spec.cpus > 0:
        steps.append(("cpus", ["set", name, "--cpus", str(spec.cpus)]))
    if spec.memory_mib > 0:
        steps.append(("memory", ["set", name, "--memsize", str(spec.memory_mib)]))
    if spec.disk_gib > 0:
        size_mib = str(spec.disk_gib * 1024)
        if source == SourceType.ISO:
            steps.append(("disk", ["set", name, "--device-add", "hdd", "--size", size_mib]))
        else:
            steps.append(("disk", ["set", name, "--device-set", "hdd0", "--size", size_mib]))

    steps.append(
        (
            "startup_view",
            ["set", name, "--startup-view", "headless" if spec.headless else "window"],
        )
    )
    if source == SourceType.ISO:
        assert spec.iso_install is not None
        steps.append(("efi_boot", ["set", name, "--efi-boot", "on"]))
        steps.append(
            (
                "install_media",
                [
                    "set",
                    name,
                    "--device-set",
                    "cdrom0",
                    "--image",
                    spec.iso_install.path,
                    "--connect",
                ],
            )
        )
    if seed_media is not None:
        steps.append(
            (
                "seed_media",
                ["set", name, "--device-add", "cdrom", "--image", seed_media.path, "--connect"],
            )
        )

    network = spec.network or settings.default_network
    steps.append(("network", ["set", name, "--device-set", "net0", "--type", network]))
    boot_order = "cdrom0 hdd0" if source == SourceType.ISO else "hdd0"
    steps.append(("boot_order", ["set", name, "--device-bootorder", boot_order]))

    steps.append(("nested_virt", ["set", name, "--nested-virt", _on_off(spec.nested_virt)]))
    steps.append(
        ("shared_clipboard", ["set", name, "--shared-clipboard", _on_off(spec.shared_clipboard)])
    )
    steps.append(("time_sync", ["set", name, "--time-sync", _on_off(spec.time_sync)]))
    steps.append(("autostart", ["set", name, "--autostart", _on_off(spec.auto_start)]))
    return steps


class VmLifecycle:
    """Drives one VM from declaration to a running, installed guest.

    Every step re-queries the hypervisor instead of trusting earlier
    observations, and every step is safe to rerun: a rerun removes the stale
    instance before creating it again. Teardown is the inverse path and
    converges to absent from any intermediate state.
    """

    def __init__(
        self,
        client,
        settings: Settings,
        *,
        seed_builder: SeedMediaBuilder | None = None,
        reporter: StatusReporter | None = None,
        poller: ReadinessPoller | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.client = client
        self.settings = settings
        self.cancel_event = cancel_event
        self.seed_builder = seed_builder or SeedMediaBuilder(settings)
        self.reporter = reporter or StatusReporter(client, settings)
        self.poller = poller or ReadinessPoller(
            client, settings.guest_marker_path, cancel_event=cancel_event
        )
        self._lock = threading.Lock()
        self._states: dict[str, str] = {}

    def state_of(self, name: str) -> str:
        with self._lock:
            return self._states.get(name, LifecycleState.ABSENT.value)

    def _transition(self, name: str, target: LifecycleState) -> None:
        with self._lock:
            current = self._states.get(name, LifecycleState.ABSENT.value)
            if not can_transition(current, target.value):
                raise RuntimeError(
                    f"invalid lifecycle transition name={name} {current} -> {target.value}"
                )
            self._states[name] = target.value
        logger.info("vm transition name=%s %s -> %s", name, current, target.value)

    def _mark_failed(self, name: str) -> None:
        with self._lock:
            self._states[name] = LifecycleState.FAILED.value

    def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel_event is None:
            time.sleep(seconds)
            return
        if self.cancel_event.wait(seconds):
            raise ProvisioningCancelled("cancelled during start settle delay")

    def provision(
        self, spec: VmSpec, on_started: Callable[[str], None] | None = None
    ) -> ProvisionResult:
        name = spec.name
        source = resolve_source(spec)
        if source == SourceType.NONE:
            self._mark_failed(name)
            metrics.inc("vm_config_errors_total")
            raise NoSourceSpecified(name)

        if self.state_of(name) != LifecycleState.ABSENT.value:
            with self._lock:
                self._states[name] = LifecycleState.ABSENT.value

        media: SeedMedia | None = None
        try:
            if spec.cloud_init is not None:
                media = self.seed_builder.build(
                    name, spec.cloud_init.user_data, spec.cloud_init.meta_data
                )

            self._transition(name, LifecycleState.CREATING)
            keep_files = source == SourceType.PVM_IMAGE
            self._ensure_absent(name, keep_files=keep_files)
            if keep_files and pvm_registered_name(spec) != name:
                self._ensure_absent(pvm_registered_name(spec), keep_files=True)
            for args in create_commands(spec, source, self.settings):
                self.client.run(args)
            metrics.inc("vm_creates_total")
            self._transition(name, LifecycleState.CREATED)

            self._transition(name, LifecycleState.CONFIGURING)
            for field, args in configuration_steps(spec, source, self.settings, media):
                self.client.run(args, field=field)
            self._transition(name, LifecycleState.CONFIGURED)

            self._transition(name, LifecycleState.STARTING)
            self.client.run(["start", name])
            self._transition(name, LifecycleState.RUNNING)
            if on_started is not None:
                on_started(name)
            self._wait(self.settings.start_settle_sec)

            self._transition(name, LifecycleState.AWAITING_READY)
            readiness = self.poller.await_ready(
                name,
                timeout=self.settings.ready_timeout_sec,
                interval=self.settings.ready_poll_interval_sec,
            )
            if readiness.ready:
                self._transition(name, LifecycleState.READY)
                outcome = ProvisionOutcome.READY
                metrics.inc("vm_ready_total")
            else:
                self._transition(name, LifecycleState.READY_TIMED_OUT)
                outcome = ProvisionOutcome.READY_TIMED_OUT
                metrics.inc("vm_ready_timeouts_total")
                logger.warning(
                    "vm left running without readiness name=%s ip=%s",
                    name,
                    readiness.ip or "-",
                )
            return self.reporter.report(spec, outcome, ip=readiness.ip)
        except ProvisioningCancelled:
            self._mark_failed(name)
            if media is not None:
                self.seed_builder.destroy(media)
            logger.warning("vm provisioning cancelled name=%s", name)
            raise
        except HypervisorCommandFailure as exc:
            failed_in = self.state_of(name)
            self._mark_failed(name)
            metrics.inc("vm_failures_total")
            logger.error("vm provisioning failed name=%s state=%s: %s", name, failed_in, exc)
            raise
        except Exception:
            self._mark_failed(name)
            metrics.inc("vm_failures_total")
            raise

    def _ensure_absent(self, name: str, *, keep_files: bool = False) -> None:
        state = self.client.query(name)
        if not state.exists:
            return
        logger.info(
            "removing stale instance before create name=%s status=%s",
            name,
            state.status.value,
        )
        self.client.run(["stop", name, "--kill"], tolerate_failure=True)
        # a registered bundle lives in place; delete would remove the bundle itself
        self.client.run(["unregister" if keep_files else "delete", name])
        metrics.inc("vm_stale_removed_total")

    def destroy(self, spec: VmSpec | str) -> None:
        name = spec if isinstance(spec, str) else spec.name
        keep_files = not isinstance(spec, str) and resolve_source(spec) == SourceType.PVM_IMAGE
        with self._lock:
            self._states[name] = LifecycleState.DESTROYING.value
        logger.info("destroying vm name=%s", name)
        try:
            self.client.run(["stop", name, "--kill"], tolerate_failure=True)
            deleted = self.client.run(
                ["unregister" if keep_files else "delete", name], tolerate_failure=True
            )
            if not deleted.ok and self.client.exists(name):
                raise HypervisorCommandFailure(
                    args=deleted.args,
                    exit_code=deleted.exit_code,
                    stderr=deleted.stderr,
                    stdout=deleted.stdout,
                )
        except Exception:
            self._mark_failed(name)
            raise
        finally:
            self.seed_builder.destroy_for(name)
            self.reporter.remove_snapshot(name)
        self._transition(name, LifecycleState.ABSENT)
        metrics.inc("vm_destroyed_total")
