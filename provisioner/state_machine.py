from provisioner.models import LifecycleState


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    LifecycleState.ABSENT.value: {
        LifecycleState.CREATING.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.CREATING.value: {
        LifecycleState.CREATED.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.CREATED.value: {
        LifecycleState.CONFIGURING.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.CONFIGURING.value: {
        LifecycleState.CONFIGURED.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.CONFIGURED.value: {
        LifecycleState.STARTING.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.STARTING.value: {
        LifecycleState.RUNNING.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.RUNNING.value: {
        LifecycleState.AWAITING_READY.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.AWAITING_READY.value: {
        LifecycleState.READY.value,
        LifecycleState.READY_TIMED_OUT.value,
        LifecycleState.DESTROYING.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.READY.value: {LifecycleState.DESTROYING.value},
    LifecycleState.READY_TIMED_OUT.value: {LifecycleState.DESTROYING.value},
    LifecycleState.DESTROYING.value: {
        LifecycleState.ABSENT.value,
        LifecycleState.FAILED.value,
    },
    LifecycleState.FAILED.value: {
        LifecycleState.DESTROYING.value,
        LifecycleState.CREATING.value,
    },
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
