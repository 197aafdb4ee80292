from dataclasses import dataclass
from enum import Enum


class SourceType(str, Enum):
    TEMPLATE = "TEMPLATE"
    PVM_IMAGE = "PVM_IMAGE"
    SNAPSHOT = "SNAPSHOT"
    ISO = "ISO"
    NONE = "NONE"


class VmStatus(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    UNKNOWN = "UNKNOWN"


class LifecycleState(str, Enum):
    ABSENT = "ABSENT"
    CREATING = "CREATING"
    CREATED = "CREATED"
    CONFIGURING = "CONFIGURING"
    CONFIGURED = "CONFIGURED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    AWAITING_READY = "AWAITING_READY"
    READY = "READY"
    READY_TIMED_OUT = "READY_TIMED_OUT"
    DESTROYING = "DESTROYING"
    FAILED = "FAILED"


class ProvisionOutcome(str, Enum):
    READY = "READY"
    READY_TIMED_OUT = "READY_TIMED_OUT"
    FAILED = "FAILED"
    SKIPPED_DEPENDENCY_FAILURE = "SKIPPED_DEPENDENCY_FAILURE"


SUCCESSFUL_OUTCOMES = {ProvisionOutcome.READY, ProvisionOutcome.READY_TIMED_OUT}


# prlctl reports lowercase state names; anything else maps to UNKNOWN.
_PRLCTL_STATUS = {
    "running": VmStatus.RUNNING,
    "stopped": VmStatus.STOPPED,
    "suspended": VmStatus.SUSPENDED,
    "paused": VmStatus.SUSPENDED,
}


def parse_vm_status(raw: str | None) -> VmStatus:
    if not raw:
        return VmStatus.UNKNOWN
    return _PRLCTL_STATUS.get(raw.strip().lower(), VmStatus.UNKNOWN)


@dataclass(frozen=True)
class VmRuntimeState:
    name: str
    exists: bool
    status: VmStatus
    uuid: str | None = None
    ip: str | None = None

    @classmethod
    def not_found(cls, name: str) -> "VmRuntimeState":
        return cls(name=name, exists=False, status=VmStatus.NOT_FOUND)


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class SeedMedia:
    path: str
    content_fingerprint: str


@dataclass(frozen=True)
class ReadinessResult:
    ip: str | None
    ready: bool
    polls: int
