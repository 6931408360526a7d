"""
Configuration loading.
"""

from .settings import (
    FineTuneConfig,
    NotifierSettings,
    ProviderSettings,
    StorageSettings,
    load_config,
)

__all__ = [
    "FineTuneConfig",
    "NotifierSettings",
    "ProviderSettings",
    "StorageSettings",
    "load_config",
]
