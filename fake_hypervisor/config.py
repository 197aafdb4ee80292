from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeHypervisorSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_HYPERVISOR_", extra="ignore")

    ip_after_polls: int = Field(default=1, ge=1)
    marker_after_polls: int = Field(default=1, ge=1)
    subnet_prefix: str = Field(default="10.211.55.")
    templates_csv: str = Field(default="ubuntu-22.04-template")
    command_delay_sec: float = Field(default=0.0, ge=0.0)

    @property
    def templates(self) -> list[str]:
        return [x.strip() for x in self.templates_csv.split(",") if x.strip()]


@lru_cache(maxsize=1)
def get_settings() -> FakeHypervisorSettings:
    return FakeHypervisorSettings()
