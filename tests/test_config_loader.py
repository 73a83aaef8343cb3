# tests/test_config_loader.py
import json
from pathlib import Path

import pytest

from config_loader import ConfigLoader, load_config
from report_cache import ReportCache

BASE_CONFIG = json.loads((Path(__file__).parent.parent / "config.json").read_text())


@pytest.fixture()
def write_config(tmp_path, monkeypatch):
    def _write(**overrides):
        config = json.loads(json.dumps(BASE_CONFIG))
        for key_path, value in overrides.items():
            section, key = key_path.split("__")
            config[section][key] = value
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config))
        monkeypatch.setenv("ETL_CONFIG", str(path))
        ConfigLoader.reset()

    yield _write
    ConfigLoader.reset()


def test_loads_and_reads_dot_paths(write_config):
    write_config()
    cfg = load_config()
    assert cfg.get("store.batch_size") == 1000
    assert cfg.get("filters.business_timezone") == "Europe/Paris"
    assert cfg.get("store.nope", "fallback") == "fallback"
    assert load_config() is cfg


@pytest.mark.parametrize(
    "overrides",
    [
        {"store__batch_size": 0},
        {"store__batch_size": 20000},
        {"store__batch_size": "100"},
        {"filters__business_timezone": "Mars/Olympus"},
        {"sync__stale_run_minutes": 0},
        {"cache__ttl_seconds": -1},
    ],
)
def test_invalid_values_are_rejected(write_config, overrides):
    write_config(**overrides)
    with pytest.raises(ValueError):
        load_config()


def test_missing_file(tmp_path, monkeypatch):
    monkeypatch.setenv("ETL_CONFIG", str(tmp_path / "absent.json"))
    ConfigLoader.reset()
    with pytest.raises(FileNotFoundError):
        load_config()
    ConfigLoader.reset()


def test_env_values(write_config, monkeypatch):
    write_config()
    cfg = load_config()
    monkeypatch.setenv("ANALYTICS_DB_PATH", "/data/analytics.db")
    assert cfg.get_env_value("store.path_env") == "/data/analytics.db"

    monkeypatch.delenv("WAREHOUSE_DB_PATH", raising=False)
    with pytest.raises(ValueError):
        cfg.get_env_value("warehouse.path_env")
    assert cfg.get_env_value("warehouse.path_env", required=False) is None


def test_report_cache_from_config(write_config, tmp_path):
    write_config(paths__report_cache_dir=str(tmp_path / "rc"), cache__ttl_seconds=30)
    cache = ReportCache.from_config(load_config())
    try:
        assert cache.ttl_seconds == 30
        assert (tmp_path / "rc").is_dir()
    finally:
        cache.close()
