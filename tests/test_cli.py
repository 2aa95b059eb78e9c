from __future__ import annotations

import pytest

import ruuvi_bridge
from ruuvi_bridge.config import BridgeConfig, ConfigError, parse_manufacturer_id
from ruuvi_bridge.decoder import DecodePolicy
from ruuvi_bridge.listener import ListenAddress


@pytest.fixture
def captured_run(monkeypatch):
    calls: list[BridgeConfig] = []

    def fake_run(config: BridgeConfig) -> int:
        calls.append(config)
        return 0

    monkeypatch.setattr(ruuvi_bridge, "run", fake_run)
    monkeypatch.setattr(ruuvi_bridge, "configure_logging", lambda *args: None)
    return calls


def test_main_defaults(captured_run) -> None:
    with pytest.raises(SystemExit) as excinfo:
        ruuvi_bridge.main([])
    assert excinfo.value.code == 0

    (config,) = captured_run
    assert config.listen == ListenAddress(host="127.0.0.1", port=7001)
    assert config.manufacturer_id == 0x0499
    assert config.policy is DecodePolicy.STRICT
    assert config.idle_timeout == 60.0
    assert not config.mock


def test_main_options(captured_run) -> None:
    with pytest.raises(SystemExit):
        ruuvi_bridge.main(
            [
                "--listen",
                "unix:/tmp/ruuvi.sock",
                "--manufacturer-id",
                "1177",
                "--adapter",
                "hci1",
                "--write-timeout",
                "2.5",
                "--queue-size",
                "16",
                "--max-restarts",
                "0",
                "--lenient",
                "--mock",
            ]
        )

    (config,) = captured_run
    assert config.listen.path == "/tmp/ruuvi.sock"
    assert config.manufacturer_id == 0x0499
    assert config.adapter == "hci1"
    assert config.write_timeout == 2.5
    assert config.queue_size == 16
    assert config.max_restarts == 0
    assert config.policy is DecodePolicy.LENIENT
    assert config.mock


@pytest.mark.parametrize(
    "argv",
    [
        ["--manufacturer-id", "ruuvi"],
        ["--manufacturer-id", "0x10000"],
        ["--listen", "nowhere"],
        ["--write-timeout", "0"],
        ["--queue-size", "0"],
    ],
)
def test_main_rejects_invalid_configuration(captured_run, argv) -> None:
    with pytest.raises(SystemExit) as excinfo:
        ruuvi_bridge.main(argv)
    assert excinfo.value.code == 2
    assert captured_run == []


def test_main_propagates_exit_code(monkeypatch) -> None:
    monkeypatch.setattr(ruuvi_bridge, "run", lambda config: 1)
    monkeypatch.setattr(ruuvi_bridge, "configure_logging", lambda *args: None)
    with pytest.raises(SystemExit) as excinfo:
        ruuvi_bridge.main(["--mock"])
    assert excinfo.value.code == 1


@pytest.mark.parametrize("text,value", [("0x0499", 0x0499), ("1177", 1177), ("0xffff", 0xFFFF)])
def test_parse_manufacturer_id(text: str, value: int) -> None:
    assert parse_manufacturer_id(text) == value


def test_config_validation() -> None:
    address = ListenAddress(host="127.0.0.1", port=0)
    with pytest.raises(ConfigError):
        BridgeConfig(listen=address, idle_timeout=-1.0)
    with pytest.raises(ConfigError):
        BridgeConfig(listen=address, max_restarts=-1)
    with pytest.raises(ConfigError):
        BridgeConfig(listen=address, initial_backoff=10.0, max_backoff=1.0)
    assert BridgeConfig(listen=address, idle_timeout=None).idle_timeout is None
