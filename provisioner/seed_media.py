import hashlib
import logging
import shutil
import subprocess
from pathlib import Path

from provisioner.config import Settings
from provisioner.errors import SeedMediaError, ToolingUnavailable
from provisioner.models import SeedMedia


logger = logging.getLogger(__name__)

ISO_TOOLS = ["xorriso", "genisoimage", "mkisofs"]
VOLUME_LABEL = "cidata"
FINGERPRINT_FILE = ".fingerprint"


def shutil_which_first(candidates: list[str]) -> str | None:
    for name in candidates:
        path = shutil.which(name)
        if path:
            return path
    return None


def content_fingerprint(name: str, user_data: str, meta_data: str) -> str:
    digest = hashlib.sha256()
    for part in (name, user_data, meta_data):
        encoded = part.encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


def build_iso_command(
    tool: str, iso_path: Path, user_data_path: Path, meta_data_path: Path
) -> list[str]:
    cmd = [tool]
    if Path(tool).name.startswith("xorriso"):
        cmd.extend(["-as", "mkisofs"])
    cmd.extend(
        [
            "-output",
            str(iso_path),
            "-volid",
            VOLUME_LABEL,
            "-joliet",
            "-rock",
            str(user_data_path),
            str(meta_data_path),
        ]
    )
    return cmd


class SeedMediaBuilder:
    """Builds the cloud-init ``cidata`` ISO attached to a VM at first boot.

    The ISO path depends only on the VM name. A fingerprint of the inputs is
    stored next to the rendered files so an unchanged definition reuses the
    existing image instead of mastering it again.
    """

    def __init__(self, settings: Settings):
        self.root = Path(settings.seed_media_dir)

    def iso_path(self, name: str) -> Path:
        return self.root / f"cloud-init-{name}.iso"

    def work_dir(self, name: str) -> Path:
        return self.root / name

    def recorded_fingerprint(self, name: str) -> str | None:
        path = self.work_dir(name) / FINGERPRINT_FILE
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip() or None

    def build(self, name: str, user_data: str, meta_data: str) -> SeedMedia:
        fingerprint = content_fingerprint(name, user_data, meta_data)
        iso_path = self.iso_path(name)
        if iso_path.is_file() and self.recorded_fingerprint(name) == fingerprint:
            logger.info("seed media unchanged name=%s path=%s", name, iso_path)
            return SeedMedia(path=str(iso_path), content_fingerprint=fingerprint)

        tool = shutil_which_first(ISO_TOOLS)
        if not tool:
            raise ToolingUnavailable(ISO_TOOLS)

        vm_dir = self.work_dir(name)
        vm_dir.mkdir(parents=True, exist_ok=True)
        user_data_path = vm_dir / "user-data"
        meta_data_path = vm_dir / "meta-data"
        user_data_path.write_text(user_data, encoding="utf-8")
        meta_data_path.write_text(meta_data, encoding="utf-8")

        cmd = build_iso_command(tool, iso_path, user_data_path, meta_data_path)
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            stdout = (exc.stdout or "").strip()
            raise SeedMediaError(
                f"cloud-init ISO generation failed with {tool}: {stderr or stdout or exc}"
            ) from exc

        (vm_dir / FINGERPRINT_FILE).write_text(fingerprint + "\n", encoding="utf-8")
        logger.info("seed media built name=%s path=%s tool=%s", name, iso_path, tool)
        return SeedMedia(path=str(iso_path), content_fingerprint=fingerprint)

    def destroy(self, media: SeedMedia) -> None:
        path = Path(media.path)
        self._remove(path, name=path.name)
        name = path.stem.removeprefix("cloud-init-")
        self._remove(self.work_dir(name), name=name)

    def destroy_for(self, name: str) -> None:
        self._remove(self.iso_path(name), name=name)
        self._remove(self.work_dir(name), name=name)

    def _remove(self, path: Path, *, name: str) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("seed media cleanup failed name=%s path=%s: %s", name, path, exc)
