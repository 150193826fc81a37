import os
from pathlib import Path

from engine.config import DEFAULTS, RunConfig, load_config


def _clear_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("TESTBRICK_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_when_nothing_configured(tmp_path, monkeypatch):
    _clear_env(monkeypatch)

    config = load_config(tmp_path / "missing.toml")

    assert config.locator_timeout_ms == DEFAULTS["locator_timeout_ms"] == 5000
    assert config.headless is True
    assert config.max_concurrent_runs == 4
    assert config.video_dir == Path("videos")
    assert config.store_path is None
    assert config.catalog_path is None


def test_toml_runner_table_then_environment(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    path = tmp_path / "config.toml"
    path.write_text(
        "[runner]\n"
        "locator_timeout_ms = 2500\n"
        "record_video = false\n"
        'store_path = "data/runs.json"\n'
        "unknown_key = 1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TESTBRICK_LOCATOR_TIMEOUT_MS", "1200")
    monkeypatch.setenv("TESTBRICK_HEADLESS", "false")

    config = load_config(path)

    assert config.locator_timeout_ms == 1200
    assert config.record_video is False
    assert config.headless is False
    assert config.store_path == Path("data/runs.json")


def test_from_mapping_clamps_concurrency():
    config = RunConfig.from_mapping({"max_concurrent_runs": "0", "headless": "yes"})

    assert config.max_concurrent_runs == 1
    assert config.headless is True
