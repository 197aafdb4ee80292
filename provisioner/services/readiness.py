import logging
import re
import shlex
import threading
import time
from collections.abc import Callable

from provisioner.errors import ProvisioningCancelled
from provisioner.models import ReadinessResult


logger = logging.getLogger(__name__)

IP_QUERY_COMMAND = "ip -4 addr show scope global"
_INET_RE = re.compile(r"\binet\s+(\d{1,3}(?:\.\d{1,3}){3})(?:/\d+)?")


def parse_global_ipv4(output: str) -> str | None:
    for match in _INET_RE.finditer(output or ""):
        address = match.group(1)
        if address.startswith("169.254.") or address.startswith("127."):
            continue
        return address
    return None


def marker_command(marker_path: str) -> str:
    return f"test -f {shlex.quote(marker_path)}"


class ReadinessPoller:
    """Poll a guest until it has a global IPv4 address and the completion marker.

    There is no completion callback from the hypervisor, so readiness is a
    bounded loop over ``exec_in_guest``. A nonzero exit from the guest means
    "not yet". ``clock`` and ``sleep`` are injectable; the default sleep waits
    on the cancellation event and aborts the loop when it is set.
    """

    def __init__(
        self,
        client,
        marker_path: str,
        *,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ):
        self.client = client
        self.marker_path = marker_path
        self.cancel_event = cancel_event
        self.clock = clock
        self.sleep = sleep or self._cancellable_sleep

    def _cancellable_sleep(self, seconds: float) -> None:
        if self.cancel_event is None:
            time.sleep(seconds)
            return
        if self.cancel_event.wait(seconds):
            raise ProvisioningCancelled("cancelled while waiting for guest readiness")

    def await_ready(self, name: str, timeout: float, interval: float) -> ReadinessResult:
        start = self.clock()
        ip: str | None = None
        polls = 0
        while self.clock() - start < timeout:
            polls += 1
            exit_code, stdout = self.client.exec_in_guest(name, IP_QUERY_COMMAND)
            if exit_code == 0:
                observed = parse_global_ipv4(stdout)
                if observed and observed != ip:
                    logger.info("guest address observed name=%s ip=%s", name, observed)
                ip = observed or ip

            if ip:
                marker_exit, _ = self.client.exec_in_guest(
                    name, marker_command(self.marker_path)
                )
                if marker_exit == 0:
                    logger.info("guest ready name=%s ip=%s polls=%s", name, ip, polls)
                    return ReadinessResult(ip=ip, ready=True, polls=polls)

            logger.debug(
                "guest not ready name=%s poll=%s ip=%s", name, polls, ip or "-"
            )
            self.sleep(interval)

        logger.warning(
            "guest readiness timed out name=%s timeout=%ss polls=%s ip=%s",
            name,
            timeout,
            polls,
            ip or "-",
        )
        return ReadinessResult(ip=ip, ready=False, polls=polls)
