"""Tests for ClientConfig loading, merging and derived URLs."""

from __future__ import annotations

from pathlib import Path

import yaml

from sophi_chat.config import DEFAULT_GREETING, ClientConfig


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    cfg = ClientConfig(config_path=tmp_path / "client.yaml")

    assert cfg.server_url == "http://localhost:8000"
    assert cfg.realtime_url == cfg.server_url
    assert cfg.asset_base_url == cfg.server_url
    assert cfg.get("realtime", "reconnect_attempts") == 5
    assert cfg.get("recording", "max_duration") == 30
    assert cfg.get("chat", "greeting") == DEFAULT_GREETING


def test_file_values_are_deep_merged(tmp_path: Path) -> None:
    path = tmp_path / "client.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "server": {"host": "https://chat.example.com:9000/", "use_https": True},
                "assets": {"base_url": "https://cdn.example.com/"},
            }
        )
    )

    cfg = ClientConfig(config_path=path)

    # Untouched siblings keep their defaults
    assert cfg.get("server", "port") == 8000
    assert cfg.server_host == "chat.example.com"
    assert cfg.server_url == "https://chat.example.com:8000"
    assert cfg.asset_base_url == "https://cdn.example.com"


def test_malformed_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "client.yaml"
    path.write_text("- just\n- a list\n")

    cfg = ClientConfig(config_path=path)
    assert cfg.server_port == 8000


def test_get_with_default() -> None:
    cfg = ClientConfig(config_path=Path("/nonexistent/client.yaml"))
    assert cfg.get("nonexistent", "nested", default="fallback") == "fallback"


def test_set_and_save_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "client.yaml"
    cfg = ClientConfig(config_path=path)
    cfg.set("realtime", "url", value="wss://rt.example.com/")

    assert cfg.save() is True
    assert not path.with_suffix(".tmp").exists()

    reloaded = ClientConfig(config_path=path)
    assert reloaded.realtime_url == "wss://rt.example.com"
