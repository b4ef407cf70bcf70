"""
Configuration management and loading.

Handles ledger location, billing schedules, the sandbox payment provider
and notification settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml

from invoice_billing.core.scheduler import (
    DEFAULT_CLOSE_SCHEDULE,
    DEFAULT_PROCESS_SCHEDULE,
    parse_cron,
)
from invoice_billing.storage.db import DEFAULT_DB_PATH


class NotificationChannel(Enum):
    """Where notices and billing reports are delivered."""
    LOG = "log"
    CONSOLE = "console"


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.path or not self.path.strip():
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class ScheduleConfig:
    """Cron schedules of the recurring billing jobs."""
    process_pending: str = DEFAULT_PROCESS_SCHEDULE
    close_pending: str = DEFAULT_CLOSE_SCHEDULE
    tick_interval_seconds: float = 30.0
    pass_lock_timeout_seconds: float = 300.0

    def __post_init__(self):
        """Validate cron expressions, tick interval and lock wait."""
        parse_cron(self.process_pending)
        parse_cron(self.close_pending)
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        if self.pass_lock_timeout_seconds < 0:
            raise ValueError("pass_lock_timeout_seconds must be >= 0")


@dataclass(frozen=True)
class PaymentConfig:
    """Settings of the sandbox payment provider."""
    success_rate: float = 0.8
    seed: Optional[int] = None

    def __post_init__(self):
        if not 0.0 <= self.success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")


@dataclass(frozen=True)
class NotificationConfig:
    channel: NotificationChannel = NotificationChannel.LOG
    report_recipient: Optional[str] = None


@dataclass(frozen=True)
class BillingConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    schedules: ScheduleConfig = field(default_factory=ScheduleConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


def default_billing_config() -> BillingConfig:
    """Configuration used when no config file is given."""
    return BillingConfig()


def load_billing_config(path: str) -> BillingConfig:
    """Load and validate billing configuration from a YAML file.

    Every section is optional, but unknown keys and wrongly typed values
    are rejected so a typo can never silently change a billing schedule.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_billing_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'database', 'schedules', 'payments', 'notifications'}, "configuration")

    # Database
    database_data = _section(raw_config, 'database')
    _check_keys(database_data, {'path'}, "database")
    database = DatabaseConfig(
        path=_get_str(database_data, 'path', 'database', DEFAULT_DB_PATH)
    )

    # Schedules
    schedules_data = _section(raw_config, 'schedules')
    _check_keys(
        schedules_data,
        {'process_pending', 'close_pending', 'tick_interval_seconds', 'pass_lock_timeout_seconds'},
        "schedules"
    )
    tick_interval = _get_number(schedules_data, 'tick_interval_seconds', 'schedules', 30.0)
    lock_timeout = _get_number(schedules_data, 'pass_lock_timeout_seconds', 'schedules', 300.0)
    try:
        schedules = ScheduleConfig(
            process_pending=_get_str(schedules_data, 'process_pending', 'schedules', DEFAULT_PROCESS_SCHEDULE),
            close_pending=_get_str(schedules_data, 'close_pending', 'schedules', DEFAULT_CLOSE_SCHEDULE),
            tick_interval_seconds=tick_interval,
            pass_lock_timeout_seconds=lock_timeout
        )
    except ValueError as e:
        raise ValueError(f"Invalid schedules: {e}")

    # Payments
    payments_data = _section(raw_config, 'payments')
    _check_keys(payments_data, {'success_rate', 'seed'}, "payments")
    success_rate = _get_number(payments_data, 'success_rate', 'payments', 0.8)
    seed = payments_data.get('seed')
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        raise ValueError("'seed' in payments must be an integer")
    payments = PaymentConfig(success_rate=success_rate, seed=seed)

    # Notifications
    notifications_data = _section(raw_config, 'notifications')
    _check_keys(notifications_data, {'channel', 'report_recipient'}, "notifications")
    channel_str = _get_str(notifications_data, 'channel', 'notifications', NotificationChannel.LOG.value)
    try:
        channel = NotificationChannel(channel_str.lower())
    except ValueError:
        valid_channels = [channel.value for channel in NotificationChannel]
        raise ValueError(f"'channel' in notifications must be one of: {valid_channels}")
    notifications = NotificationConfig(
        channel=channel,
        report_recipient=_get_str(notifications_data, 'report_recipient', 'notifications', None)
    )

    return BillingConfig(
        database=database,
        schedules=schedules,
        payments=payments,
        notifications=notifications
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: Set[str], path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _get_str(data: Dict[str, Any], key: str, path: str, default: Optional[str]) -> Optional[str]:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _get_number(data: Dict[str, Any], key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)
