class ProvisionerError(RuntimeError):
    pass


class ConfigurationError(ProvisionerError):
    pass


class NoSourceSpecified(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"no provisioning source specified name={name}: set one of "
            "template, pvm_import, snapshot or iso_install"
        )


class DependencyCycle(ConfigurationError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"start_after dependency cycle: {' -> '.join(cycle)}")


class ToolingUnavailable(ProvisionerError):
    def __init__(self, candidates: list[str]):
        self.candidates = candidates
        super().__init__(
            f"no ISO mastering tool found in PATH (tried {', '.join(candidates)})"
        )


class SeedMediaError(ProvisionerError):
    pass


class ProvisioningCancelled(ProvisionerError):
    pass
