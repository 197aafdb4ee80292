from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


NETWORK_MODES = {"shared", "bridged", "host-only"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_", env_file=".env", extra="ignore"
    )

    prlctl_binary: str = Field(default="prlctl")
    command_timeout_sec: int = Field(default=300, ge=1)

    seed_media_dir: str = Field(default="./output")
    status_dir: str = Field(default="./output/status")

    ready_timeout_sec: int = Field(default=600, ge=1)
    ready_poll_interval_sec: int = Field(default=10, ge=1)
    start_settle_sec: int = Field(default=5, ge=0)
    guest_marker_path: str = Field(default="/var/lib/cloud/instance/boot-finished")

    max_concurrency: int = Field(default=2, ge=1)

    default_network: str = Field(default="shared")
    default_distribution: str = Field(default="ubuntu")
    ssh_dir: str = Field(default="~/.ssh")

    log_level: str = Field(default="INFO")
    dry_run: bool = Field(default=False)

    def ensure_dirs(self) -> None:
        for path in (self.seed_media_dir, self.status_dir):
            Path(path).mkdir(parents=True, exist_ok=True)

    def validate_network(self) -> None:
        if self.default_network not in NETWORK_MODES:
            raise ValueError(
                f"unsupported default_network {self.default_network}; expected one of {sorted(NETWORK_MODES)}"
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.validate_network()
    return settings
