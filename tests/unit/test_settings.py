"""Settings coercion and layering."""

from __future__ import annotations

from pathlib import Path

import pytest

from xrf_confdir.core import load_settings, read_settings_raw
from xrf_confdir.domain.errors import InvalidFormat, InvalidOption
from xrf_confdir.domain.settings import DEFAULT_CONFDIR, Settings


def test_defaults() -> None:
    settings = Settings()
    assert settings.confdir == DEFAULT_CONFDIR
    assert settings.validation_timeout == 30.0
    assert settings.skip_validation is False
    assert settings.share_host == "localhost"


def test_from_mapping_coerces_and_ignores_unknown_keys() -> None:
    settings = Settings.from_mapping(
        {"confdir": "/srv/confs", "skip-validation": "yes", "validation_timeout": "5", "colour": "blue"}
    )
    assert settings.confdir == Path("/srv/confs")
    assert settings.skip_validation is True
    assert settings.validation_timeout == 5.0


@pytest.mark.parametrize("raw", ["-1", "0", "soon"])
def test_invalid_timeout_is_rejected(raw: str) -> None:
    with pytest.raises(InvalidOption):
        Settings.from_mapping({"validation_timeout": raw})


def test_invalid_boolean_is_rejected() -> None:
    with pytest.raises(InvalidOption):
        Settings.from_mapping({"reload": "maybe"})


def test_with_overrides_skips_none() -> None:
    settings = Settings().with_overrides(confdir="/x", skip_validation=None, reload=False)
    assert settings.confdir == Path("/x")
    assert settings.skip_validation is False
    assert settings.reload is False


def test_layers_env_over_file(tmp_path: Path) -> None:
    settings_file = tmp_path / "config.toml"
    settings_file.write_text(
        '[xrf]\nconfdir = "/from/file"\nshare_host = "file.example"\nvalidation_timeout = 12\n',
        encoding="utf-8",
    )
    env = {"XRF_SETTINGS_FILE": str(settings_file), "XRF_CONFDIR": "/from/env", "XRF_SKIP_VALIDATION": "1"}
    data, provenance = read_settings_raw(environ=env)
    assert provenance["confdir"] == "env"
    assert provenance["share_host"] == "file"
    settings = load_settings(environ=env)
    assert settings.confdir == Path("/from/env")
    assert settings.share_host == "file.example"
    assert settings.validation_timeout == 12.0
    assert settings.skip_validation is True


def test_top_level_keys_are_accepted(tmp_path: Path) -> None:
    settings_file = tmp_path / "config.toml"
    settings_file.write_text('backup_dir = "/var/backups/xrf"\n', encoding="utf-8")
    settings = load_settings(environ={}, settings_file=settings_file)
    assert settings.backup_dir == Path("/var/backups/xrf")


def test_missing_settings_file_falls_back_to_defaults(tmp_path: Path) -> None:
    settings = load_settings(environ={}, settings_file=tmp_path / "absent.toml")
    assert settings == Settings()


def test_malformed_settings_file_raises(tmp_path: Path) -> None:
    settings_file = tmp_path / "config.toml"
    settings_file.write_text("confdir = [", encoding="utf-8")
    with pytest.raises(InvalidFormat) as info:
        load_settings(environ={}, settings_file=settings_file)
    assert info.value.context["layer"] == "file"
