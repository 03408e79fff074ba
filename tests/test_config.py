import pytest

from switchbot_fan_bridge.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    FanDeviceConfig,
    _apply_mapping,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    monkeypatch.delenv("SWITCHBOT_FAN_CONFIG", raising=False)
    for name in Config.__dataclass_fields__:
        monkeypatch.delenv(f"SWITCHBOT_FAN_{name}".upper(), raising=False)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.refresh_rate == 120.0
    assert config.push_rate == 0.1
    assert config.max_retries == 5
    assert config.cloud_configured is False


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("refresh_rate", 1.0, "refresh_rate"),
        ("push_rate", -0.5, "push_rate"),
        ("max_retries", -1, "max_retries"),
        ("api_port", 0, "api_port"),
        ("radio_backoff_factor", 0.5, "radio_backoff_factor"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_logging_dict_masks_secrets() -> None:
    config = Config(token="tok", secret="sec", api_key="secret-key")
    logged = config.logging_dict()
    assert logged["token"] == "***REDACTED***"
    assert logged["secret"] == "***REDACTED***"
    assert logged["api_key"] == "***REDACTED***"
    assert logged["devices"] == []


def test_duplicate_device_ids_rejected() -> None:
    device = FanDeviceConfig(device_id="fan-1")
    with pytest.raises(ValueError, match="Duplicate device_id"):
        Config(devices=(device, device))


def test_device_connection_type_is_canonicalized() -> None:
    device = FanDeviceConfig(device_id="AABBCCDDEEFF", connection_type="ble/openapi")
    assert device.connection_type == "BLE/OpenAPI"
    assert device.uses_radio is True
    assert device.uses_cloud is True
    assert device.ble_mac == "AA:BB:CC:DD:EE:FF"


def test_device_rejects_unknown_connection_type() -> None:
    with pytest.raises(ValueError, match="connection_type"):
        FanDeviceConfig(device_id="fan-1", connection_type="zigbee")


def test_empty_connection_type_uses_no_transport() -> None:
    device = FanDeviceConfig(device_id="fan-1", connection_type="")
    assert device.uses_radio is False
    assert device.uses_cloud is False
    assert device.ble_mac is None


def test_device_setting_falls_back_to_global() -> None:
    config = Config(max_retries=3)
    tuned = FanDeviceConfig(device_id="fan-1", max_retries=1)
    default = FanDeviceConfig(device_id="fan-2")
    assert tuned.setting("max_retries", config) == 1
    assert default.setting("max_retries", config) == 3


def test_device_refresh_rate_minimum() -> None:
    with pytest.raises(ValueError, match="refresh_rate"):
        FanDeviceConfig(device_id="fan-1", refresh_rate=2.0)


def test_unknown_key_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown configuration key"):
        _apply_mapping(Config(), {"db_path": "/tmp/x"})


def test_device_string_parsing() -> None:
    config = _apply_mapping(
        Config(),
        {
            "devices": (
                'device_id=C0FFEE123456,connection_type=BLE,name=Desk,webhook=true,'
                'initial_state={"active": true, "rotation_speed": 30}'
            )
        },
    )
    (device,) = config.devices
    assert device.device_id == "C0FFEE123456"
    assert device.connection_type == "BLE"
    assert device.name == "Desk"
    assert device.webhook is True
    assert device.ble_mac == "C0:FF:EE:12:34:56"
    assert device.initial_state == {"active": True, "rotation_speed": 30}


def test_sources_are_layered(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "bridge.toml"
    config_path.write_text(
        "\n".join(
            [
                'token = "file-token"',
                "refresh_rate = 60",
                "push_rate = 0.5",
                "",
                "[[devices]]",
                'device_id = "C0FFEE123456"',
                'connection_type = "BLE/OpenAPI"',
                "webhook = true",
                "max_retries = 2",
            ]
        )
    )
    monkeypatch.setenv("SWITCHBOT_FAN_REFRESH_RATE", "30")
    monkeypatch.setenv("SWITCHBOT_FAN_LOG_LEVEL", "debug")

    config = Config.from_sources(["--config", str(config_path), "--refresh-rate", "45", "--no-radio-scan"])

    assert config.token == "file-token"
    assert config.push_rate == 0.5
    assert config.refresh_rate == 45.0
    assert config.log_level == "DEBUG"
    assert config.radio_scan_enabled is False
    (device,) = config.devices
    assert device.connection_type == "BLE/OpenAPI"
    assert device.webhook is True
    assert device.max_retries == 2


def test_env_overrides_file(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "bridge.toml"
    config_path.write_text("refresh_rate = 60\n")
    monkeypatch.setenv("SWITCHBOT_FAN_REFRESH_RATE", "30")
    monkeypatch.setenv("SWITCHBOT_FAN_DRY_RUN", "yes")

    config = Config.from_sources(["--config", str(config_path)])

    assert config.refresh_rate == 30.0
    assert config.dry_run is True


def test_missing_config_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        Config.from_sources(["--config", str(tmp_path / "missing.toml")])


def test_cli_device_flag(monkeypatch) -> None:
    config = Config.from_sources(
        ["--device", "device_id=fan-1,connection_type=OpenAPI", "--device", "device_id=fan-2,offline=true"]
    )
    assert [device.device_id for device in config.devices] == ["fan-1", "fan-2"]
    assert config.devices[1].offline is True


def test_initial_state_values_are_coerced() -> None:
    config = _apply_mapping(
        Config(),
        {
            "devices": [
                {
                    "device_id": "fan-1",
                    "initial_state": {"active": "false", "swing_enabled": "on", "rotation_speed": "40"},
                }
            ]
        },
    )
    (device,) = config.devices
    assert device.initial_state == {"active": False, "swing_enabled": True, "rotation_speed": 40}


@pytest.mark.parametrize(
    "initial_state,error",
    [
        ({"rotation_speed": "fast"}, "initial_state.rotation_speed"),
        ({"mode": "natural"}, "unknown field 'mode'"),
    ],
)
def test_initial_state_rejects_bad_values(initial_state: dict, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        _apply_mapping(Config(), {"devices": [{"device_id": "fan-1", "initial_state": initial_state}]})
