import logging
import shutil
from pathlib import Path

from provisioner.config import Settings


logger = logging.getLogger(__name__)


def _known_vm_names(client) -> set[str]:
    names = {str(row.get("name")) for row in client.list_vms() if row.get("name")}
    names |= {str(row.get("name")) for row in client.list_templates() if row.get("name")}
    return names


def cleanup_orphan_media(client, settings: Settings) -> dict[str, list[str]]:
    """Remove seed media and status snapshots whose VM no longer exists."""
    known = _known_vm_names(client)
    removed: dict[str, list[str]] = {"seed_media": [], "status": []}

    media_root = Path(settings.seed_media_dir)
    if media_root.exists():
        for iso in sorted(media_root.glob("cloud-init-*.iso")):
            name = iso.stem.removeprefix("cloud-init-")
            if name in known:
                continue
            iso.unlink(missing_ok=True)
            work_dir = media_root / name
            if work_dir.is_dir():
                shutil.rmtree(work_dir, ignore_errors=True)
            removed["seed_media"].append(name)
            logger.info("orphan seed media removed name=%s path=%s", name, iso)

    status_root = Path(settings.status_dir)
    if status_root.exists():
        for snapshot in sorted(status_root.glob("*.json")):
            if snapshot.stem in known:
                continue
            snapshot.unlink(missing_ok=True)
            removed["status"].append(snapshot.stem)
            logger.info("orphan status snapshot removed name=%s", snapshot.stem)
    return removed
