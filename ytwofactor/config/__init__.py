"""配置模块"""

from .settings import (
    DEV_ENCRYPTION_KEY,
    AppSettings,
    DatabaseSettings,
    LoggingSettings,
    TwoFactorSettings,
)
from .loader import ConfigLoader, load_yaml_config

__all__ = [
    "DEV_ENCRYPTION_KEY",
    "AppSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "TwoFactorSettings",
    "ConfigLoader",
    "load_yaml_config",
]
