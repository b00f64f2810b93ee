from pathlib import Path

import opendev_agent.config as config_module
from opendev_agent.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: gpt-4o-mini\n"
            "sandbox:\n"
            "  max_steps: 7\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "gpt-4o-mini"
    assert cfg.sandbox.max_steps == 7
    assert cfg.sandbox.max_tokens == 100000


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("web:\n  port: 9100\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.web.port == 9100


def test_missing_config_yields_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.tools.require_approval["writeFile"] is True
    assert cfg.tools.require_approval["readFile"] is False
    assert cfg.tools.command.timeout == 120


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setenv("OPENDEV_MODEL__BASE_URL", "http://models.internal/v1")

    cfg = Config.load()

    assert cfg.model.base_url == "http://models.internal/v1"


def test_save_round_trips_yaml(tmp_path: Path):
    cfg = Config()
    cfg.sandbox.max_commands = 2
    target = tmp_path / "nested" / "config.yaml"
    cfg.save(target)

    loaded = Config.from_yaml(target)
    assert loaded.sandbox.max_commands == 2
