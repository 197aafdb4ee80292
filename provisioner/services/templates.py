import logging
from pathlib import Path

from provisioner.errors import ConfigurationError
from provisioner.models import VmStatus
from provisioner.services.status import vm_details


logger = logging.getLogger(__name__)


def list_templates(client) -> list[dict]:
    rows = []
    for row in client.list_templates():
        rows.append(
            {
                "name": row.get("name"),
                "uuid": (row.get("uuid") or "").strip("{}") or None,
            }
        )
    return sorted(rows, key=lambda r: str(r.get("name") or ""))


def template_exists(client, name: str) -> bool:
    return any(row.get("name") == name for row in client.list_templates())


def _require_template(client, name: str) -> None:
    if not template_exists(client, name):
        raise ConfigurationError(f"template not found name={name}")


def template_info(client, name: str) -> dict:
    _require_template(client, name)
    return vm_details(client, name)


def convert_to_template(client, vm_name: str) -> None:
    state = client.query(vm_name)
    if not state.exists:
        raise ConfigurationError(f"vm not found name={vm_name}")
    if state.status != VmStatus.STOPPED:
        logger.info("stopping vm before template conversion name=%s", vm_name)
        client.run(["stop", vm_name, "--kill"], tolerate_failure=True)
    client.run(["set", vm_name, "--template", "on"])
    logger.info("vm converted to template name=%s", vm_name)


def convert_from_template(client, template_name: str) -> None:
    _require_template(client, template_name)
    client.run(["set", template_name, "--template", "off"])
    logger.info("template converted to vm name=%s", template_name)


def export_template(client, template_name: str, output_path: str | Path) -> Path:
    _require_template(client, template_name)
    destination = Path(output_path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    client.run(["export", template_name, "-o", str(destination)])
    logger.info("template exported name=%s path=%s", template_name, destination)
    return destination


def import_template(client, pvm_path: str | Path, name: str | None = None) -> str:
    source = Path(pvm_path)
    if not source.exists():
        raise ConfigurationError(f"pvm bundle not found path={source}")
    registered_name = source.stem
    client.run(["register", str(source), "--regenerate-src-uuid"])
    final_name = name or registered_name
    if final_name != registered_name:
        client.run(["set", registered_name, "--name", final_name])
    client.run(["set", final_name, "--template", "on"])
    logger.info("template imported name=%s path=%s", final_name, source)
    return final_name


def delete_template(client, template_name: str) -> None:
    _require_template(client, template_name)
    client.run(["delete", template_name])
    logger.info("template deleted name=%s", template_name)
