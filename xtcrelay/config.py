"""
Configuration for xtcrelay.

Values are resolved in this order: built-in defaults, then a YAML file
(explicit path or $XTCRELAY_CONFIG), then environment overrides.

Example file:

    libraries:
      ipv4: [libip4tc.so.2, libip4tc.so.0]
    lock:
      file: /run/xtables.lock
      wait_interval: 0.5
    relay:
      submit_timeout: 30
    logging:
      level: DEBUG
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

DEFAULT_LOCK_FILE = "/run/xtables.lock"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

DEFAULT_LIBRARIES = {
    'ipv4': ["libip4tc.so.2", "libip4tc.so.0", "ip4tc"],
    'ipv6': ["libip6tc.so.2", "libip6tc.so.0", "ip6tc"],
}


@dataclass
class RelayConfig:
    ipv4_libraries: List[str] = field(default_factory=lambda: list(DEFAULT_LIBRARIES['ipv4']))
    ipv6_libraries: List[str] = field(default_factory=lambda: list(DEFAULT_LIBRARIES['ipv6']))
    lock_file: str = DEFAULT_LOCK_FILE
    lock_wait_interval: float = 1.0
    submit_timeout: Optional[float] = None
    thread_name: str = "xtc-relay"
    log_level: str = "WARNING"
    log_file: Optional[str] = None

    def libraries(self, family: str) -> List[str]:
        if family == 'ipv4':
            return self.ipv4_libraries
        if family == 'ipv6':
            return self.ipv6_libraries
        raise ValueError(f"Invalid family: {family}. Use 'ipv4' or 'ipv6'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'libraries': {
                'ipv4': list(self.ipv4_libraries),
                'ipv6': list(self.ipv6_libraries),
            },
            'lock': {
                'file': self.lock_file,
                'wait_interval': self.lock_wait_interval,
            },
            'relay': {
                'submit_timeout': self.submit_timeout,
                'thread_name': self.thread_name,
            },
            'logging': {
                'level': self.log_level,
                'file': self.log_file,
            },
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. config.get('lock.file')"""
        value: Any = self.to_dict()
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value


# (section, key) -> (attribute, accepted types)
_SCHEMA = {
    ('libraries', 'ipv4'): ('ipv4_libraries', (list,)),
    ('libraries', 'ipv6'): ('ipv6_libraries', (list,)),
    ('lock', 'file'): ('lock_file', (str,)),
    ('lock', 'wait_interval'): ('lock_wait_interval', (int, float)),
    ('relay', 'submit_timeout'): ('submit_timeout', (int, float, type(None))),
    ('relay', 'thread_name'): ('thread_name', (str,)),
    ('logging', 'level'): ('log_level', (str,)),
    ('logging', 'file'): ('log_file', (str, type(None))),
}


def _apply(config: RelayConfig, data: Dict[str, Any], source: str) -> None:
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping")

    for section, values in data.items():
        if not isinstance(values, dict):
            raise ConfigError(f"{source}: section '{section}' must be a mapping")
        for key, value in values.items():
            try:
                attr, types = _SCHEMA[(section, key)]
            except KeyError:
                raise ConfigError(f"{source}: unknown key '{section}.{key}'") from None
            if isinstance(value, bool) or not isinstance(value, types):
                raise ConfigError(
                    f"{source}: '{section}.{key}' has invalid type {type(value).__name__}"
                )
            if attr.endswith('_libraries'):
                if not value or not all(isinstance(v, str) for v in value):
                    raise ConfigError(f"{source}: '{section}.{key}' must be a non-empty list of names")
                value = list(value)
            setattr(config, attr, value)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> RelayConfig:
    """
    Build a RelayConfig.

    Args:
        path: YAML file to read; falls back to $XTCRELAY_CONFIG when None
        environ: environment mapping, os.environ by default

    Raises:
        ConfigError: unreadable file, unknown key, wrong value type or
            unknown log level
    """
    env = os.environ if environ is None else environ
    config = RelayConfig()

    config_path = path or env.get('XTCRELAY_CONFIG')
    if config_path:
        config_file = Path(config_path)
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"cannot read {config_file}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {config_file}: {e}") from e
        if data:
            _apply(config, data, str(config_file))

    # same variable iptables itself honours
    if env.get('XTABLES_LOCKFILE'):
        config.lock_file = env['XTABLES_LOCKFILE']
    if env.get('XTCRELAY_LOG_LEVEL'):
        config.log_level = env['XTCRELAY_LOG_LEVEL']

    if config.lock_wait_interval <= 0:
        raise ConfigError("lock.wait_interval must be positive")
    level = str(config.log_level).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(
            f"invalid log level {config.log_level!r}, expected one of {', '.join(LOG_LEVELS)}"
        )
    config.log_level = level

    return config
