import json

import pytest

from jobengine.core.config import (
    CONFIG_ENV,
    DATABASE_ENV,
    EngineConfig,
    config_path,
    load_config,
    save_config,
    set_value,
)


def test_defaults():
    config = EngineConfig()
    assert config.poll_interval == 1.0
    assert config.concurrency == 4
    assert config.job_timeout == 300
    assert config.max_retries == 3
    assert config.backoff_base == 2
    assert config.backoff_max == 300
    assert config.succeeded_retention == 3600
    assert config.failed_retention == 86400
    assert config.cleanup_interval == 900
    assert config.recover_orphans is True
    assert config.database_url is None


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(str(tmp_path / "nope.json")) == EngineConfig()


def test_save_and_load_use_kebab_case(tmp_path):
    path = str(tmp_path / "nested" / "config.json")
    config = EngineConfig(max_retries=5, job_timeout=None)

    assert save_config(config, path) == path

    with open(path) as f:
        data = json.load(f)
    assert data["max-retries"] == 5
    assert data["job-timeout"] is None
    assert "max_retries" not in data
    assert load_config(path) == config


def test_config_file_rejects_unknown_keys(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max-retries": 1, "colour": "blue"}))
    with pytest.raises(ValueError):
        load_config(str(path))


def test_config_path_env(monkeypatch, tmp_path):
    target = str(tmp_path / "other.json")
    monkeypatch.setenv(CONFIG_ENV, target)
    assert config_path() == target
    assert config_path("explicit.json") == "explicit.json"


def test_set_value_parses_json_scalars():
    config = EngineConfig()
    assert set_value(config, "max-retries", "5").max_retries == 5
    assert set_value(config, "backoff-base", "0.5").backoff_base == 0.5
    assert set_value(config, "recover-orphans", "false").recover_orphans is False
    assert set_value(config, "job-timeout", "null").job_timeout is None
    assert set_value(config, "database_url", "sqlite:///x.db").database_url == "sqlite:///x.db"
    assert config.max_retries == 3


def test_set_value_rejects_unknown_key():
    with pytest.raises(KeyError) as info:
        set_value(EngineConfig(), "colour", "blue")
    assert "max-retries" in str(info.value)


@pytest.mark.parametrize("key,raw", [
    ("concurrency", "0"),
    ("max-retries", "-1"),
    ("poll-interval", "soon"),
])
def test_set_value_rejects_bad_values(key, raw):
    with pytest.raises(ValueError):
        set_value(EngineConfig(), key, raw)


def test_database_url_resolution(monkeypatch):
    monkeypatch.delenv(DATABASE_ENV, raising=False)
    config = EngineConfig(database_url="sqlite:///file.db")
    assert config.resolved_database_url() == "sqlite:///file.db"

    monkeypatch.setenv(DATABASE_ENV, "sqlite:///env.db")
    assert config.resolved_database_url() == "sqlite:///env.db"


def test_blank_database_url_is_unset():
    assert EngineConfig(database_url="  ").database_url is None
