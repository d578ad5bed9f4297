import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
ENV_OVERRIDE_PREFIX = 'STREAMSYNC__'

_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def _coerce(raw: str) -> Any:
    # Parsed as a YAML scalar so "false" and "5" keep their types
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


class SectionProxy(Mapping):
    """Read-only view of one config section with attribute access."""

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

    def __repr__(self) -> str:
        return f"SectionProxy({sorted(self._data)})"

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML settings with environment expansion.

    String values may embed ``${VAR}`` or ``${VAR:-default}``; an unset
    variable without a default expands to ``''`` so missing credentials read
    as empty. After expansion, variables named
    ``STREAMSYNC__<SECTION>__<KEY>`` override single keys, e.g.
    ``STREAMSYNC__USER_STREAM__RETRY_DELAY_S=2``.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping] = None):
        self._environ = os.environ if environ is None else environ
        self.config_path = Path(config_path or self._environ.get('STREAMSYNC_CONFIG') or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        data = self._expand(raw)
        self._apply_overrides(data)
        return data

    def _expand(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._expand(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._expand(item) for item in node]
        if isinstance(node, str) and '${' in node:
            return _PLACEHOLDER.sub(lambda m: self._environ.get(m.group(1)) or m.group(2) or '', node)
        return node

    def _apply_overrides(self, data: Dict[str, Any]) -> None:
        for name, raw in self._environ.items():
            if not name.startswith(ENV_OVERRIDE_PREFIX):
                continue
            path = [part.lower() for part in name[len(ENV_OVERRIDE_PREFIX):].split('__') if part]
            if len(path) < 2:
                continue
            node = data
            for part in path[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = node[part] = {}
                node = child
            node[path[-1]] = _coerce(raw)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> SectionProxy:
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return _wrap(self._data[name])
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
