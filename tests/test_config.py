import pytest
import yaml

from vouchers.config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    ConfigValue,
    get_config,
    get_config_manager,
)


def test_defaults():
    config = get_config()
    assert config.claims.transfer_timeout_seconds.get() == 5.0
    assert config.claims.max_proof_length.get() == 256
    assert config.registry.registration_timeout_seconds.get() == 10.0
    assert config.registry.max_name_length.get() == 256
    assert config.observability.log_level.get() == "info"


def test_manager_is_a_singleton():
    assert ConfigManager() is ConfigManager()
    assert get_config_manager().config is get_config()


def test_set_and_get_by_path():
    manager = get_config_manager()
    manager.set("claims.max_proof_length", 64)
    assert manager.get("claims.max_proof_length") == 64
    assert get_config().claims.max_proof_length.get() == 64


def test_string_values_are_coerced():
    manager = get_config_manager()
    manager.set("claims.transfer_timeout_seconds", "2.5")
    assert manager.get("claims.transfer_timeout_seconds") == 2.5


def test_invalid_value_is_rejected():
    with pytest.raises(ConfigValidationError):
        get_config_manager().set("claims.transfer_timeout_seconds", 0)
    with pytest.raises(ConfigValidationError):
        get_config_manager().set("observability.log_level", "verbose")


def test_unknown_path():
    with pytest.raises(ConfigError):
        get_config_manager().set("claims.nope", 1)
    with pytest.raises(ConfigError):
        get_config_manager().get("nope.deeper")


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "vouchers.yaml"
    path.write_text("claims:\n  max_proof_length: 32\n", encoding="utf-8")
    manager = get_config_manager()
    manager.load_from_file(path)
    assert manager.get("claims.max_proof_length") == 32

    monkeypatch.setenv("VOUCHERS_CLAIM_MAX_PROOF_LENGTH", "48")
    assert manager.get("claims.max_proof_length") == 48


def test_load_from_file_rejects_unknown_keys(tmp_path):
    path = tmp_path / "vouchers.yaml"
    path.write_text("claims:\n  retries: 3\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="claims.retries"):
        get_config_manager().load_from_file(path)


def test_load_from_file_requires_mapping(tmp_path):
    path = tmp_path / "vouchers.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        get_config_manager().load_from_file(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        get_config_manager().load_from_file(tmp_path / "absent.yaml")


def test_to_yaml_round_trips_values():
    get_config_manager().set("registry.max_name_length", 99)
    data = yaml.safe_load(get_config().to_yaml())
    assert data["registry"]["max_name_length"] == 99
    assert data["claims"]["transfer_timeout_seconds"] == 5.0


def test_validate_reports_bad_environment(monkeypatch):
    monkeypatch.setenv("VOUCHERS_LOG_LEVEL", "loud")
    errors = get_config_manager().validate()
    assert any(e.startswith("observability.log_level") for e in errors)


def test_change_callbacks():
    seen = []
    value = ConfigValue(default=1, validator=lambda x: x > 0)
    value.on_change(lambda old, new: seen.append((old, new)))
    value.set(3)
    value.set("4")
    assert seen == [(None, 3), (3, 4)]
    value.reset()
    assert value.get() == 1


def test_reset_drops_overrides():
    manager = get_config_manager()
    manager.set("claims.max_proof_length", 8)
    manager.reset()
    assert manager.get("claims.max_proof_length") == 256
