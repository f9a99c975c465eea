"""Trading profiles: one file per pair, loaded into an immutable settings object."""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .config_loader import ConfigError

SUPPORTED_EXCHANGES = ('binance',)
MARKET_FAMILIES = ('spot', 'usdm', 'coinm')
PROFILE_SUFFIXES = ('.yaml', '.yml', '.json')

_PACKAGE_ROOT = Path(__file__).resolve().parent.parent


@dataclass(frozen=True)
class TraderSettings:
    """Session inputs for the agent; never mutated once trading starts."""

    pair: str
    market: str
    entry_signal: str = 'market'
    max_position: float = 0.0
    use_testnet: bool = False
    exchange: str = 'binance'
    is_long: bool = True

    @property
    def symbol(self) -> str:
        return self.pair.upper()

    @property
    def is_market_entry(self) -> bool:
        return self.entry_signal == 'market'

    @property
    def entry_limit_price(self) -> Optional[float]:
        if self.is_market_entry:
            return None
        return float(self.entry_signal)

    def with_entry_signal(self, entry_signal: str) -> 'TraderSettings':
        return validate_settings(replace(self, entry_signal=normalize_entry_signal(entry_signal)))

    def with_direction(self, is_long: bool) -> 'TraderSettings':
        return replace(self, is_long=bool(is_long))


def normalize_entry_signal(raw: Any) -> str:
    """Accept ``market`` or a positive price; prices are kept as decimal strings."""
    if raw is None:
        return 'market'
    text = str(raw).strip()
    if not text or text.lower() == 'market':
        return 'market'
    try:
        price = float(text)
    except ValueError as exc:
        raise ConfigError(f"Invalid entry signal: {raw!r}") from exc
    if price <= 0:
        raise ConfigError(f"Entry price must be positive, got {raw!r}")
    return text


def validate_settings(settings: TraderSettings) -> TraderSettings:
    if settings.exchange not in SUPPORTED_EXCHANGES:
        raise ConfigError("only Binance exchange is supported")
    if settings.market not in MARKET_FAMILIES:
        raise ConfigError(f"invalid market type: {settings.market}")
    if not settings.pair:
        raise ConfigError("pair must not be empty")
    if settings.max_position <= 0:
        raise ConfigError(f"max_position must be positive, got {settings.max_position}")
    normalize_entry_signal(settings.entry_signal)
    return settings


def settings_from_mapping(data: Dict[str, Any]) -> TraderSettings:
    try:
        max_position = float(data.get('max_position', 0))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid max_position: {data.get('max_position')!r}") from exc
    settings = TraderSettings(
        pair=str(data.get('pair') or '').strip(),
        market=str(data.get('market') or '').strip().lower(),
        exchange=str(data.get('exchange') or 'binance').strip().lower(),
        entry_signal=normalize_entry_signal(data.get('entry_signal')),
        max_position=max_position,
        use_testnet=bool(data.get('use_testnet', False)),
        is_long=str(data.get('direction', 'long')).lower() != 'short',
    )
    return validate_settings(settings)


def load_profile(path: Union[str, Path]) -> TraderSettings:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Profile not found at {path}")
    text = path.read_text()
    try:
        if path.suffix == '.json':
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"Error parsing profile {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Profile {path} must contain a mapping")
    return settings_from_mapping(raw)


def resolve_profiles_dir(directory: Union[str, Path]) -> Path:
    path = Path(directory)
    if path.is_absolute() or path.exists():
        return path
    return _PACKAGE_ROOT / path


def list_profiles(directory: Union[str, Path]) -> List[Path]:
    root = resolve_profiles_dir(directory)
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.suffix in PROFILE_SUFFIXES)


def find_profile(name: str, directory: Union[str, Path]) -> Path:
    """Resolve a profile given as a path or as a file stem inside the profiles directory."""
    candidate = Path(name)
    if candidate.exists():
        return candidate
    for path in list_profiles(directory):
        if path.stem == name or path.name == name:
            return path
    raise ConfigError(f"No profile named {name!r} in {resolve_profiles_dir(directory)}")
