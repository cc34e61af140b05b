import pytest

from stackbillinstaller.errors import InstallerError
from stackbillinstaller.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".stackbill.yml"
    config_file.write_text(
        "domain: portal.example.com\nskip_db: true\nrun_timeout_minutes: 45\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["domain"] == "portal.example.com"
    assert loaded["skip_db"] is True
    assert loaded["run_timeout_minutes"] == 45


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".stackbill.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(InstallerError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_requires_mapping_root(tmp_path):
    config_file = tmp_path / ".stackbill.yml"
    config_file.write_text("- domain\n- namespace\n", encoding="utf-8")

    with pytest.raises(InstallerError, match="YAML mapping"):
        ConfigLoader().load(str(config_file))


def test_config_loader_handles_missing_and_empty_files(tmp_path):
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")

    assert ConfigLoader().load(None) == {}
    assert ConfigLoader().load(str(empty)) == {}
    with pytest.raises(InstallerError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))
