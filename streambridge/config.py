"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv

MODES = ('auto', 'relay', 'transfer', 'join')


@dataclass
class Config:
    """
    Stream node configuration.

    Configuration priority (highest to lowest):
    1. Command-line flags
    2. Environment variables (STREAMBRIDGE_*)
    3. Config file (config.json)
    4. Default values
    """
    # Network
    listen_host: str = '0.0.0.0'
    listen_port: int = 0  # 0 = any available port
    destination: Optional[str] = None

    # Mode: auto | relay | transfer | join
    # auto = relay without a destination, transfer with one
    mode: str = 'auto'

    # Identity
    deterministic_identity: bool = False  # never in production
    key_file: Optional[Path] = None

    # Storage
    output_dir: Path = field(default_factory=lambda: Path('.'))
    raw_output: Optional[Path] = None

    # Performance
    chunk_size: int = 64 * 1024  # 64KB

    # Timeouts (seconds); None disables
    relay_idle_timeout: Optional[float] = None
    dial_timeout: float = 10.0

    # Logging
    log_level: str = 'INFO'

    def validate(self):
        """Raise ValueError for settings that cannot work."""
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode {self.mode!r} (expected one of {', '.join(MODES)})")
        if not 0 <= self.listen_port < 65536:
            raise ValueError(f"Invalid listen port: {self.listen_port}")
        if self.mode == 'join' and not self.destination:
            raise ValueError("Mode 'join' needs a destination address")
        if self.mode == 'relay' and self.destination:
            raise ValueError("Mode 'relay' does not dial a destination")
        if self.chunk_size <= 0:
            raise ValueError(f"Invalid chunk size: {self.chunk_size}")
        if self.relay_idle_timeout is not None and self.relay_idle_timeout <= 0:
            raise ValueError(f"Invalid relay idle timeout: {self.relay_idle_timeout}")

    @property
    def effective_mode(self) -> str:
        """Resolve 'auto': relay without a destination, transfer with one."""
        if self.mode != 'auto':
            return self.mode
        return 'transfer' if self.destination else 'relay'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.listen_host = os.getenv('STREAMBRIDGE_HOST', config.listen_host)
        config.listen_port = int(os.getenv('STREAMBRIDGE_PORT', config.listen_port))
        config.destination = os.getenv('STREAMBRIDGE_DEST') or None
        config.mode = os.getenv('STREAMBRIDGE_MODE', config.mode)

        # Identity
        config.deterministic_identity = (
            os.getenv('STREAMBRIDGE_DETERMINISTIC_ID', 'false').lower() == 'true'
        )
        key_file = os.getenv('STREAMBRIDGE_KEY_FILE')
        if key_file:
            config.key_file = Path(key_file)

        # Storage
        output_dir = os.getenv('STREAMBRIDGE_OUTPUT_DIR')
        if output_dir:
            config.output_dir = Path(output_dir)
        raw_output = os.getenv('STREAMBRIDGE_RAW_OUTPUT')
        if raw_output:
            config.raw_output = Path(raw_output)

        # Timeouts
        idle_timeout = os.getenv('STREAMBRIDGE_RELAY_IDLE_TIMEOUT')
        if idle_timeout:
            config.relay_idle_timeout = float(idle_timeout)

        # Logging
        config.log_level = os.getenv('STREAMBRIDGE_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.listen_host = data.get('listen_host', config.listen_host)
        config.listen_port = data.get('listen_port', config.listen_port)
        config.destination = data.get('destination', config.destination)
        config.mode = data.get('mode', config.mode)

        # Identity
        config.deterministic_identity = data.get(
            'deterministic_identity', config.deterministic_identity
        )
        if data.get('key_file'):
            config.key_file = Path(data['key_file'])

        # Storage
        if 'output_dir' in data:
            config.output_dir = Path(data['output_dir'])
        if data.get('raw_output'):
            config.raw_output = Path(data['raw_output'])

        # Performance
        config.chunk_size = data.get('chunk_size', config.chunk_size)

        # Timeouts
        config.relay_idle_timeout = data.get('relay_idle_timeout', config.relay_idle_timeout)
        config.dial_timeout = data.get('dial_timeout', config.dial_timeout)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'listen_host': self.listen_host,
            'listen_port': self.listen_port,
            'destination': self.destination,
            'mode': self.mode,
            'deterministic_identity': self.deterministic_identity,
            'key_file': str(self.key_file) if self.key_file else None,
            'output_dir': str(self.output_dir),
            'raw_output': str(self.raw_output) if self.raw_output else None,
            'chunk_size': self.chunk_size,
            'relay_idle_timeout': self.relay_idle_timeout,
            'dial_timeout': self.dial_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['listen_host', 'listen_port', 'destination', 'mode',
                'deterministic_identity', 'key_file', 'output_dir',
                'raw_output', 'relay_idle_timeout', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "listen_host": "0.0.0.0",
  "listen_port": 4001,
  "destination": null,
  "mode": "auto",
  "deterministic_identity": false,
  "output_dir": ".",
  "chunk_size": 65536,
  "relay_idle_timeout": null,
  "log_level": "INFO"
}
"""
