import os
from datetime import time
from decimal import Decimal
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from energy_trader.price_analyzer import AnalyzerConfig

DEFAULTS: Dict[str, Any] = {
    # Service
    'service_name': 'energy-trader',
    'log_level': 'info',
    'http_host': '0.0.0.0',
    'http_port': 8080,
    'data_dir': './data',
    'timezone': 'Europe/Amsterdam',

    # Prices
    'price_source': 'nordpool',
    'nordpool_area': 'NL',
    'nordpool_currency': 'EUR',
    'price_fetch_hour': 13,

    # Trading
    'min_price_spread': 0.05,
    'battery_efficiency': 0.90,
    'battery_capacity_kwh': 5.12,
    'battery_min_soc': 0.11,
    'max_cycles_per_day': 2,

    # Battery
    'battery_backend': 'marstek',
    'battery_udp_addr': '',
    'esphome_url': 'http://192.168.1.50',
    'charge_power_w': 2500,
    'discharge_power_w': 2500,
    'passive_mode_timeout_s': 300,

    # Telegram (optional)
    'telegram_bot_token': '',
    'telegram_chat_id': '',

    # Scheduling and timeouts
    'daily_summary_time': '23:59',
    'error_notify_cooldown_s': 900,
    'device_timeout_s': 10,
    'price_timeout_s': 30,
    'notify_timeout_s': 10,
    'tick_interval_s': 60,
    'price_check_interval_s': 900,
    'command_poll_interval_s': 5,
}

PRICE_SOURCES = ('nordpool', 'ote')
BATTERY_BACKENDS = ('marstek', 'esphome')


def load_env(env_path: str = '.env') -> None:
    if os.path.exists(env_path):
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip().strip('"\''))


def _coerce(value: Any, default: Any) -> Any:
    """Cast an environment string to the type of the default value"""
    if isinstance(default, bool):
        return str(value).lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


class Config:
    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        load_env()
        self.data = self.load_config(data)
        self.validate_config()

    def load_config(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = dict(DEFAULTS)
        if self.config_path:
            with open(self.config_path) as f:
                data.update(yaml.safe_load(f) or {})
        if overrides:
            data.update(overrides)
        # Environment variables win over the file
        for key, default in DEFAULTS.items():
            env_key = key.upper()
            if env_key in os.environ:
                try:
                    data[key] = _coerce(os.environ[env_key], default)
                except ValueError:
                    raise ValueError(f"{env_key} has invalid value {os.environ[env_key]!r}")
        return data

    def validate_config(self) -> None:
        efficiency = float(self.data['battery_efficiency'])
        if not 0 < efficiency <= 1:
            raise ValueError(f"battery_efficiency must be in (0, 1], got {efficiency}")
        if float(self.data['battery_capacity_kwh']) <= 0:
            raise ValueError("battery_capacity_kwh must be positive")
        min_soc = float(self.data['battery_min_soc'])
        if not 0 <= min_soc < 1:
            raise ValueError(f"battery_min_soc must be in [0, 1), got {min_soc}")
        if float(self.data['min_price_spread']) < 0:
            raise ValueError("min_price_spread must not be negative")
        for key in ('charge_power_w', 'discharge_power_w'):
            if int(self.data[key]) < 0:
                raise ValueError(f"{key} must not be negative")
        for key in ('passive_mode_timeout_s', 'device_timeout_s', 'price_timeout_s', 'notify_timeout_s',
                    'tick_interval_s', 'price_check_interval_s', 'command_poll_interval_s'):
            if float(self.data[key]) <= 0:
                raise ValueError(f"{key} must be positive")
        if not 0 <= int(self.data['price_fetch_hour']) <= 23:
            raise ValueError("price_fetch_hour must be between 0 and 23")
        if self.data['price_source'] not in PRICE_SOURCES:
            raise ValueError(f"price_source must be one of {PRICE_SOURCES}")
        if self.data['battery_backend'] not in BATTERY_BACKENDS:
            raise ValueError(f"battery_backend must be one of {BATTERY_BACKENDS}")
        if self.data['battery_backend'] == 'marstek' and not self.data['battery_udp_addr']:
            raise ValueError("battery_udp_addr not found in config (required for marstek backend)")
        try:
            ZoneInfo(self.data['timezone'])
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {self.data['timezone']!r}")
        try:
            time.fromisoformat(self.data['daily_summary_time'])
        except (TypeError, ValueError):
            raise ValueError(f"daily_summary_time must be HH:MM, got {self.data['daily_summary_time']!r}")

    def __getitem__(self, key):
        return self.data[key]

    def get(self, key, default=None):
        return self.data.get(key, default)

    def decimal(self, key: str) -> Decimal:
        return Decimal(str(self.data[key]))

    @property
    def location(self) -> ZoneInfo:
        return ZoneInfo(self.data['timezone'])

    @property
    def efficiency(self) -> Decimal:
        return self.decimal('battery_efficiency')

    @property
    def min_soc_percent(self) -> int:
        return int(round(float(self.data['battery_min_soc']) * 100))

    @property
    def daily_summary_time(self) -> time:
        return time.fromisoformat(self.data['daily_summary_time'])

    @property
    def currency(self) -> str:
        """Currency the configured price source quotes in; OTE publishes EUR"""
        if self.data['price_source'] == 'ote':
            return 'EUR'
        return self.data['nordpool_currency']

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.data['telegram_bot_token']) and bool(self.data['telegram_chat_id'])

    def analyzer_config(self) -> AnalyzerConfig:
        return AnalyzerConfig(
            efficiency=self.efficiency,
            min_price_spread=self.decimal('min_price_spread'),
            battery_capacity_kwh=self.decimal('battery_capacity_kwh'),
            battery_min_soc=self.decimal('battery_min_soc'),
            charge_power_w=int(self.data['charge_power_w']),
            discharge_power_w=int(self.data['discharge_power_w']),
            max_cycles_per_day=int(self.data['max_cycles_per_day']),
        )
