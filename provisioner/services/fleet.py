import graphlib
import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor

from provisioner.errors import ConfigurationError, DependencyCycle, ProvisioningCancelled
from provisioner.metrics import metrics
from provisioner.models import SUCCESSFUL_OUTCOMES, ProvisionOutcome
from provisioner.schemas import ProvisionResult, VmSpec
from provisioner.services.status import failure_result


logger = logging.getLogger(__name__)


def validate_fleet(specs: Iterable[VmSpec]) -> dict[str, VmSpec]:
    by_name: dict[str, VmSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise ConfigurationError(f"duplicate vm name in fleet name={spec.name}")
        by_name[spec.name] = spec

    for spec in by_name.values():
        unknown = sorted(spec.start_after - set(by_name))
        if unknown:
            raise ConfigurationError(
                f"start_after references unknown vms name={spec.name} unknown={','.join(unknown)}"
            )
    return by_name


def dependency_order(by_name: dict[str, VmSpec]) -> list[str]:
    sorter = graphlib.TopologicalSorter(
        {name: sorted(spec.start_after) for name, spec in sorted(by_name.items())}
    )
    try:
        return list(sorter.static_order())
    except graphlib.CycleError as exc:
        cycle = [str(node) for node in exc.args[1]] if len(exc.args) > 1 else []
        raise DependencyCycle(cycle) from exc


def transitive_dependents(by_name: dict[str, VmSpec], root: str) -> set[str]:
    dependents: set[str] = set()
    frontier = [root]
    while frontier:
        current = frontier.pop()
        for name, spec in by_name.items():
            if current in spec.start_after and name not in dependents:
                dependents.add(name)
                frontier.append(name)
    return dependents


class FleetScheduler:
    """Run VM lifecycles in parallel while honoring ``start_after`` edges.

    A VM becomes eligible once every VM it starts after has been started.
    A VM that fails before it was started blocks its transitive dependents,
    which are reported as skipped; unrelated branches keep running.
    """

    def __init__(
        self,
        lifecycle,
        max_concurrency: int = 2,
        cancel_event: threading.Event | None = None,
        wait_tick_sec: float = 0.5,
    ):
        self.lifecycle = lifecycle
        self.max_concurrency = max(1, max_concurrency)
        self.cancel_event = cancel_event or threading.Event()
        self.wait_tick_sec = wait_tick_sec

    def run(self, specs: Iterable[VmSpec]) -> dict[str, ProvisionResult]:
        by_name = validate_fleet(specs)
        order = dependency_order(by_name)
        logger.info(
            "fleet run starting vms=%s order=%s max_concurrency=%s",
            len(by_name),
            ",".join(order),
            self.max_concurrency,
        )

        cond = threading.Condition()
        started: set[str] = set()
        blocked: set[str] = set()
        results: dict[str, ProvisionResult] = {}
        pending = list(order)
        running: dict[str, Future] = {}

        def on_started(name: str) -> None:
            with cond:
                started.add(name)
                cond.notify_all()

        def worker(spec: VmSpec) -> None:
            try:
                result = self.lifecycle.provision(spec, on_started=on_started)
            except ProvisioningCancelled as exc:
                result = failure_result(spec, ProvisionOutcome.FAILED, str(exc))
            except Exception as exc:  # noqa: BLE001
                logger.error("vm failed name=%s error=%s", spec.name, exc)
                result = failure_result(spec, ProvisionOutcome.FAILED, str(exc))
            with cond:
                results[spec.name] = result
                if result.outcome in SUCCESSFUL_OUTCOMES:
                    started.add(spec.name)
                if result.outcome == ProvisionOutcome.FAILED and spec.name not in started:
                    blocked.add(spec.name)
                cond.notify_all()

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="vm"
        ) as pool:
            with cond:
                while True:
                    self._skip_blocked(by_name, pending, blocked, results)
                    if self.cancel_event.is_set():
                        self._cancel_pending(by_name, pending, results)

                    for name in list(pending):
                        if by_name[name].start_after <= started:
                            pending.remove(name)
                            logger.info("vm eligible name=%s", name)
                            running[name] = pool.submit(worker, by_name[name])

                    if not pending and all(n in results for n in running):
                        break
                    cond.wait(timeout=self.wait_tick_sec)

        for name in order:
            metrics.inc_outcome("fleet", results[name].outcome.value)
        self._log_summary(results)
        return {name: results[name] for name in order}

    def _skip_blocked(
        self,
        by_name: dict[str, VmSpec],
        pending: list[str],
        blocked: set[str],
        results: dict[str, ProvisionResult],
    ) -> None:
        for failed in sorted(blocked):
            for name in sorted(transitive_dependents(by_name, failed)):
                if name not in pending:
                    continue
                pending.remove(name)
                results[name] = failure_result(
                    by_name[name],
                    ProvisionOutcome.SKIPPED_DEPENDENCY_FAILURE,
                    f"dependency failed before start: {failed}",
                )
                logger.warning("vm skipped name=%s failed_dependency=%s", name, failed)

    def _cancel_pending(
        self,
        by_name: dict[str, VmSpec],
        pending: list[str],
        results: dict[str, ProvisionResult],
    ) -> None:
        for name in list(pending):
            pending.remove(name)
            results[name] = failure_result(
                by_name[name], ProvisionOutcome.FAILED, "cancelled before start"
            )

    def _log_summary(self, results: dict[str, ProvisionResult]) -> None:
        grouped: dict[str, list[str]] = {}
        for name, result in sorted(results.items()):
            grouped.setdefault(result.outcome.value, []).append(name)
        for outcome, names in sorted(grouped.items()):
            logger.info("fleet result outcome=%s vms=%s", outcome, ",".join(names))

    def teardown(
        self,
        specs: Iterable[VmSpec],
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> dict[str, str | None]:
        by_name = validate_fleet(specs)
        order = dependency_order(by_name)
        errors: dict[str, str | None] = {}
        for name in reversed(order):
            try:
                self.lifecycle.destroy(by_name[name])
                errors[name] = None
            except Exception as exc:  # noqa: BLE001
                logger.error("vm teardown failed name=%s error=%s", name, exc)
                errors[name] = str(exc)
                if on_error is not None:
                    on_error(name, exc)
        return errors
