"""
Configuration Tests
"""

import json
from pathlib import Path

import pytest

from streambridge.config import Config, load_config


class TestConfig:

    def test_defaults(self):
        config = Config()
        assert config.listen_port == 0
        assert config.destination is None
        assert config.effective_mode == 'relay'
        assert config.deterministic_identity is False

    def test_auto_mode_with_destination(self):
        config = Config(destination="/ip4/127.0.0.1/tcp/1/p2p/x")
        assert config.effective_mode == 'transfer'

    def test_explicit_mode_wins(self):
        assert Config(mode='transfer').effective_mode == 'transfer'

    @pytest.mark.parametrize("kwargs", [
        {'mode': 'bogus'},
        {'listen_port': 70000},
        {'mode': 'join'},
        {'mode': 'relay', 'destination': '/ip4/127.0.0.1/tcp/1/p2p/x'},
        {'chunk_size': 0},
        {'relay_idle_timeout': -1.0},
    ])
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ValueError):
            Config(**kwargs).validate()

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        config = Config(listen_port=4001, mode='transfer', output_dir=Path("/tmp/in"),
                        relay_idle_timeout=30.0)
        config.save(path)

        loaded = Config.from_file(path)
        assert loaded.to_dict() == config.to_dict()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert Config.from_file(tmp_path / "missing.json").to_dict() == Config().to_dict()

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({'listen_port': 4001, 'mode': 'transfer'}))
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('STREAMBRIDGE_PORT', '5001')
        monkeypatch.setenv('STREAMBRIDGE_DETERMINISTIC_ID', 'true')

        config = load_config(path)
        assert config.listen_port == 5001
        assert config.mode == 'transfer'
        assert config.deterministic_identity is True

    def test_env_idle_timeout(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('STREAMBRIDGE_RELAY_IDLE_TIMEOUT', '2.5')
        assert Config.from_env().relay_idle_timeout == 2.5
