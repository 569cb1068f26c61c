"""Configuration management for WizDoc.

This module provides configuration constants and the :class:`AppConfig` class
which merges defaults with values from an optional YAML file
(``.wizdoc.yml`` in the working directory).

Recording constants
-------------------
- ``RATE``            – requested sample rate in Hz (default 44 100)
- ``CHUNK``           – PyAudio buffer size in frames
- ``CHANNEL``         – number of input channels (default 1 / mono)
- ``FILE_EXTENSION``  – container/codec of the captured artifact (``'flac'``)
- ``TICK_INTERVAL``   – seconds between elapsed-time ticks
- ``OUTPUT_DIR``      – directory holding the run journal (``'runs/'``)

Remote service
--------------
``API_BASE_URL`` and ``ENDPOINTS`` describe the AI service. Paths are
configuration, not contract; override them per deployment.

Configuration file
------------------
.. code-block:: yaml

    recording:
      rate: 44100
      device_id: 3
      gain: 1.5
      tick_interval: 1.0
      output_dir: runs/

    api:
      base_url: https://wizdoc.example.org
      timeout: 60
      headers:
        Authorization: Bearer ...
      endpoints:
        transcribe: /v1/transcribe
      prompt: Default Prompt
      model: Default Model

    retry:
      max_retries: 1
      backoff: 0.5
      backoff_factor: 2.0
      max_backoff: 8.0

    s3:
      bucket: wizdoc-audio
      endpoint_url: https://s3.example.org
      access_key: ...
      secret_key: ...

    log:
      file: runs.jsonl
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Audio recording parameters
RATE = 44100
CHUNK = 4096
CHANNEL = 1
FILE_EXTENSION = 'flac'
TICK_INTERVAL = 1.0
OUTPUT_DIR = 'runs/'
CONFIG_FILE = '.wizdoc.yml'

# Sample width in bytes (int16)
SAMPLE_WIDTH_INT16 = 2

# Remote AI service
API_BASE_URL = 'https://your-api-base-url.com'
API_TIMEOUT = 60.0
ENDPOINTS = {
    'transcribe': '/transcribe',
    'analyze': '/analyze',
    'generate': '/generate',
    'refine': '/refine',
    'health': '/health',
}
DEFAULT_PROMPT = 'Default Prompt'
DEFAULT_MODEL = 'Default Model'

# Per-stage retry
MAX_RETRIES = 1
BACKOFF = 0.5
BACKOFF_FACTOR = 2.0
MAX_BACKOFF = 8.0

# Local run journal
LOG_FILE = 'runs.jsonl'


class AppConfig:
    """Application configuration management."""

    def __init__(self) -> None:
        """Initialize configuration with defaults."""
        self._config: Dict[str, Any] = {
            'rate': RATE,
            'chunk': CHUNK,
            'channel': CHANNEL,
            'file_extension': FILE_EXTENSION,
            'device_id': None,
            'gain': 1.0,
            'tick_interval': TICK_INTERVAL,
            'output_dir': OUTPUT_DIR,
        }
        self._load_yaml_config()

    def _load_yaml_config(self) -> None:
        """Load optional YAML configuration from the working directory."""
        config_path = Path.cwd() / CONFIG_FILE
        if not config_path.exists():
            return

        content = yaml.safe_load(config_path.read_text(encoding='utf-8'))
        if not content:
            return

        if not isinstance(content, dict):
            raise ValueError(f"Configuration in {CONFIG_FILE} must be a mapping")

        recording_config = content.get('recording')
        if isinstance(recording_config, dict):
            for key in self._config.keys():
                if key in recording_config:
                    self._config[key] = recording_config[key]

        for key, value in content.items():
            if key == 'recording':
                continue
            self._config[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            key: Configuration key
            value: Configuration value
        """
        self._config[key] = value

    def get_output_dir(self) -> Path:
        """Get output directory as Path object, creating it if needed."""
        output_dir = self._config.get('output_dir', OUTPUT_DIR)
        path = Path(output_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_api_config(self) -> Dict[str, Any]:
        """Return the ``api`` section merged over the built-in defaults.

        ``endpoints`` is merged key by key so a file may override a single
        path.
        """
        api_config: Dict[str, Any] = {
            'base_url': API_BASE_URL,
            'timeout': API_TIMEOUT,
            'headers': {},
            'endpoints': dict(ENDPOINTS),
            'prompt': DEFAULT_PROMPT,
            'model': DEFAULT_MODEL,
        }
        section = self._config.get('api')
        if isinstance(section, dict):
            for key, value in section.items():
                if key == 'endpoints' and isinstance(value, dict):
                    api_config['endpoints'].update(value)
                else:
                    api_config[key] = value
        return api_config

    def get_retry_config(self) -> Dict[str, Any]:
        """Return the ``retry`` section merged over the built-in defaults."""
        retry_config: Dict[str, Any] = {
            'max_retries': MAX_RETRIES,
            'backoff': BACKOFF,
            'backoff_factor': BACKOFF_FACTOR,
            'max_backoff': MAX_BACKOFF,
        }
        section = self._config.get('retry')
        if isinstance(section, dict):
            retry_config.update(section)
        return retry_config

    def get_s3_config(self) -> Optional[Dict[str, Any]]:
        """Get S3 configuration mapping, if present."""
        s3_config = self._config.get('s3')
        if isinstance(s3_config, dict):
            return s3_config
        return None

    def get_log_path(self, output_dir: Optional[Path] = None) -> Path:
        """Return the run journal path.

        The file name is taken from the ``log.file`` key in ``.wizdoc.yml``
        when present, otherwise from :data:`LOG_FILE`. The file is placed
        inside *output_dir* (defaults to :meth:`get_output_dir`).
        """
        log_config = self._config.get('log')
        log_file = LOG_FILE
        if isinstance(log_config, dict):
            log_file = log_config.get('file', LOG_FILE)
        base = Path(output_dir) if output_dir is not None else self.get_output_dir()
        return base / log_file
