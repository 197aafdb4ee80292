import logging
import textwrap
from pathlib import Path

from provisioner.schemas import CloudInitConfig, VmSpec


logger = logging.getLogger(__name__)

DEFAULT_PACKAGES = ["qemu-guest-agent", "net-tools", "curl", "wget", "htop", "jq"]


def discover_ssh_public_keys(ssh_dir: str | Path) -> list[str]:
    root = Path(ssh_dir).expanduser()
    if not root.is_dir():
        return []
    keys: list[str] = []
    for path in sorted(root.glob("*.pub")):
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("unreadable ssh public key path=%s: %s", path, exc)
            continue
        if content and content not in keys:
            keys.append(content)
    return keys


def build_meta_data(name: str, hostname: str) -> str:
    return f"instance-id: {name}\nlocal-hostname: {hostname}\n"


def build_default_user_data(hostname: str, ssh_keys: list[str]) -> str:
    key_lines = ""
    if ssh_keys:
        key_lines = "    ssh_authorized_keys:\n" + "".join(
            f"      - {key}\n" for key in ssh_keys
        )
    packages = "".join(f"  - {package}\n" for package in DEFAULT_PACKAGES)
    return (
        textwrap.dedent(
            f"""\
            #cloud-config
            hostname: {hostname}
            fqdn: {hostname}.local
            manage_etc_hosts: true
            users:
              - name: ubuntu
                groups: [adm, cdrom, dip, lxd, netdev, plugdev, sudo]
                sudo: ["ALL=(ALL) NOPASSWD:ALL"]
                shell: /bin/bash
                lock_passwd: true
            """
        )
        + key_lines
        + textwrap.dedent(
            """\
            ssh_pwauth: false
            disable_root: true
            package_update: true
            package_upgrade: false
            packages:
            """
        )
        + packages
        + textwrap.dedent(
            f"""\
            timezone: UTC
            runcmd:
              - systemctl enable --now qemu-guest-agent
            final_message: "cloud-init configuration complete for {hostname}"
            """
        )
    )


def with_default_cloud_init(spec: VmSpec, ssh_keys: list[str]) -> VmSpec:
    if spec.cloud_init is None:
        return spec
    if spec.cloud_init.user_data and spec.cloud_init.meta_data:
        return spec
    hostname = spec.cloud_init.hostname or spec.name
    filled = CloudInitConfig(
        user_data=spec.cloud_init.user_data
        or build_default_user_data(hostname, ssh_keys),
        meta_data=spec.cloud_init.meta_data or build_meta_data(spec.name, hostname),
        hostname=hostname,
    )
    return spec.model_copy(update={"cloud_init": filled})
