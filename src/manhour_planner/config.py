"""Configuration management."""

import copy
import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, Optional

import yaml


def get_default_config() -> Dict[str, Any]:
    """Get default configuration."""
    return {
        'calendar': {
            'base_capacity_hours': 8.0,  # Monday to Friday; weekends are always 0
        },
        'allocation': {
            'horizon_days': 365,
        },
        'history': {
            'depth': 100,
        },
        'reporting': {
            'warning_threshold': 1.2,
            'hours_per_man_day': 8.0,
            'hours_per_man_month': 160.0,
        },
        'storage': {
            'data_file': 'data/manhour_data.json',
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file, merged over the defaults."""
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix.lower() in ['.yaml', '.yml']:
            loaded = yaml.safe_load(f)
        elif path.suffix.lower() == '.json':
            loaded = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

    return _deep_merge(get_default_config(), loaded or {})


@dataclass
class PlannerSettings:
    """Settings that travel with the planner state and its saved document"""
    base_capacity_hours: float = 8.0
    horizon_days: int = 365
    history_depth: int = 100
    warning_threshold: float = 1.2
    hours_per_man_day: float = 8.0
    hours_per_man_month: float = 160.0

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> 'PlannerSettings':
        config = _deep_merge(get_default_config(), config or {})
        return cls(
            base_capacity_hours=float(config['calendar']['base_capacity_hours']),
            horizon_days=int(config['allocation']['horizon_days']),
            history_depth=int(config['history']['depth']),
            warning_threshold=float(config['reporting']['warning_threshold']),
            hours_per_man_day=float(config['reporting']['hours_per_man_day']),
            hours_per_man_month=float(config['reporting']['hours_per_man_month']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseCapacityHours": self.base_capacity_hours,
            "horizonDays": self.horizon_days,
            "historyDepth": self.history_depth,
            "warningThreshold": self.warning_threshold,
            "hoursPerManDay": self.hours_per_man_day,
            "hoursPerManMonth": self.hours_per_man_month,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlannerSettings':
        defaults = asdict(cls())
        return cls(
            base_capacity_hours=float(data.get("baseCapacityHours", defaults["base_capacity_hours"])),
            horizon_days=int(data.get("horizonDays", defaults["horizon_days"])),
            history_depth=int(data.get("historyDepth", defaults["history_depth"])),
            warning_threshold=float(data.get("warningThreshold", defaults["warning_threshold"])),
            hours_per_man_day=float(data.get("hoursPerManDay", defaults["hours_per_man_day"])),
            hours_per_man_month=float(data.get("hoursPerManMonth", defaults["hours_per_man_month"])),
        )
