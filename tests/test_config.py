import pytest

from provisioner.config import Settings, get_settings


def teardown_function() -> None:
    get_settings.cache_clear()


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("PROVISIONER_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("PROVISIONER_DEFAULT_NETWORK", "bridged")
    monkeypatch.setenv("PROVISIONER_READY_TIMEOUT_SEC", "900")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.max_concurrency == 4
    assert settings.default_network == "bridged"
    assert settings.ready_timeout_sec == 900
    assert settings.guest_marker_path == "/var/lib/cloud/instance/boot-finished"


def test_unknown_network_mode_rejected(monkeypatch):
    monkeypatch.setenv("PROVISIONER_DEFAULT_NETWORK", "nat")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="default_network"):
        get_settings()


def test_ensure_dirs_creates_output_tree(tmp_path):
    settings = Settings(
        seed_media_dir=str(tmp_path / "output"), status_dir=str(tmp_path / "output" / "status")
    )

    settings.ensure_dirs()

    assert (tmp_path / "output" / "status").is_dir()
