import logging

from geckoproc import config


def test_defaults_without_config_file(monkeypatch):
    monkeypatch.delenv(config.CONFIG_ENV_VAR, raising=False)
    assert config.load_config() == config.DEFAULT_CONFIG


def test_config_file_overrides_defaults(monkeypatch, tmp_path):
    config_file = tmp_path / 'geckoproc.toml'
    config_file.write_text('log_level = "debug"\ncheck_invariants = false\n')
    monkeypatch.setenv(config.CONFIG_ENV_VAR, str(config_file))

    loaded = config.load_config()
    assert loaded['check_invariants'] is False
    assert loaded['indent'] is None
    assert config.log_level(loaded) == logging.DEBUG


def test_missing_config_file_falls_back_to_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv(config.CONFIG_ENV_VAR, str(tmp_path / 'nope.toml'))
    assert config.load_config() == config.DEFAULT_CONFIG


def test_unknown_log_level_is_info():
    assert config.log_level({'log_level': 'chatty'}) == logging.INFO
    assert config.log_level({}) == logging.INFO
