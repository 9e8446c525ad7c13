#!/usr/bin/env python3
"""
Tests for configuration loading and logging setup
"""

import logging

import pytest

from xtcrelay.config import DEFAULT_LIBRARIES, RelayConfig, load_config
from xtcrelay.errors import ConfigError
from xtcrelay.log import LOGGER_NAME, configure_logging
from xtcrelay.relay import Relay


class TestLoadConfig:

    def test_defaults(self):
        config = load_config(environ={})
        assert config.lock_file == "/run/xtables.lock"
        assert config.libraries('ipv4') == DEFAULT_LIBRARIES['ipv4']
        assert config.submit_timeout is None
        assert config.log_level == "WARNING"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "xtcrelay.yaml"
        path.write_text(
            "libraries:\n"
            "  ipv6: [libip6tc.so.2]\n"
            "lock:\n"
            "  file: /tmp/test.lock\n"
            "  wait_interval: 0.5\n"
            "relay:\n"
            "  submit_timeout: 30\n"
            "  thread_name: fw-relay\n"
            "logging:\n"
            "  level: DEBUG\n"
        )
        config = load_config(str(path), environ={})
        assert config.libraries('ipv6') == ["libip6tc.so.2"]
        assert config.lock_file == "/tmp/test.lock"
        assert config.lock_wait_interval == 0.5
        assert config.submit_timeout == 30
        assert config.get('relay.thread_name') == "fw-relay"
        assert config.get('logging.level') == "DEBUG"

    def test_path_from_environment(self, tmp_path):
        path = tmp_path / "env.yaml"
        path.write_text("lock:\n  file: /tmp/env.lock\n")
        config = load_config(environ={'XTCRELAY_CONFIG': str(path)})
        assert config.lock_file == "/tmp/env.lock"

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("lock:\n  file: /tmp/file.lock\nlogging:\n  level: INFO\n")
        config = load_config(str(path), environ={
            'XTABLES_LOCKFILE': '/tmp/env.lock',
            'XTCRELAY_LOG_LEVEL': 'ERROR',
        })
        assert config.lock_file == '/tmp/env.lock'
        assert config.log_level == 'ERROR'

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path), environ={}) == RelayConfig()

    @pytest.mark.parametrize("text", [
        "lock:\n  colour: blue\n",
        "locks:\n  file: /x\n",
        "lock:\n  wait_interval: soon\n",
        "lock:\n  wait_interval: true\n",
        "libraries:\n  ipv4: []\n",
        "libraries:\n  ipv4: [1, 2]\n",
        "lock: /run/xtables.lock\n",
        "- a\n- b\n",
        "lock:\n  wait_interval: 0\n",
    ])
    def test_invalid(self, tmp_path, text):
        path = tmp_path / "bad.yaml"
        path.write_text(text)
        with pytest.raises(ConfigError):
            load_config(str(path), environ={})

    def test_log_level_normalized(self):
        assert load_config(environ={'XTCRELAY_LOG_LEVEL': 'debug'}).log_level == "DEBUG"

    @pytest.mark.parametrize("level", ["loud", "NOTSET", "WARN "])
    def test_invalid_log_level_from_environment(self, level):
        with pytest.raises(ConfigError, match="invalid log level"):
            load_config(environ={'XTCRELAY_LOG_LEVEL': level})

    def test_invalid_log_level_from_file(self, tmp_path):
        path = tmp_path / "level.yaml"
        path.write_text("logging:\n  level: loud\n")
        with pytest.raises(ConfigError, match="invalid log level"):
            load_config(str(path), environ={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("lock: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(str(path), environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read"):
            load_config(str(tmp_path / "nope.yaml"), environ={})

    def test_unknown_family(self):
        with pytest.raises(ValueError):
            RelayConfig().libraries('arp')

    def test_get_default(self):
        assert RelayConfig().get('relay.missing', 'x') == 'x'

    def test_relay_from_config(self):
        relay = Relay.from_config(RelayConfig(thread_name="cfg", submit_timeout=2.5))
        assert relay.thread_name == "cfg"
        assert relay.submit_timeout == 2.5


class TestLogging:

    def test_console_handler(self):
        logger = configure_logging("INFO")
        assert logger.name == LOGGER_NAME
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1

    def test_file_handler_and_replace(self, tmp_path):
        log_file = tmp_path / "logs" / "xtcrelay.log"
        logger = configure_logging("DEBUG", str(log_file))
        assert len(logger.handlers) == 2
        logging.getLogger("xtcrelay.table").info("opened")
        for handler in logger.handlers:
            handler.flush()
        assert "opened" in log_file.read_text()

        logger = configure_logging("WARNING")
        assert len(logger.handlers) == 1

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            configure_logging("CHATTY")
