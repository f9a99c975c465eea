import os
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'


class ConfigError(RuntimeError):
    """Raised when configuration or a trading profile cannot be used."""


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view of a config section with attribute access to its keys."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))


def resolve_env_vars(node: Any) -> Any:
    """Expand ``${NAME}`` string leaves from the environment, leaving unknown names as-is."""
    if isinstance(node, dict):
        return {key: resolve_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_env_vars(item) for item in node]
    if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
        return os.getenv(node[2:-1], node)
    return node


class Config:
    """Application settings from ``config.yaml``; trading profiles live in ``profiles.py``."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        path = config_path or os.getenv('SCALER_CONFIG') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration root must be a mapping: {self.config_path}")
        return resolve_env_vars(raw)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def section(self, name: str) -> SectionProxy:
        """Return a section as a proxy; missing sections come back empty."""
        value = self._data.get(name)
        return SectionProxy(value if isinstance(value, dict) else {})

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
