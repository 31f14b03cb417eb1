"""ssokeeper core module.

Shared components used across all services:
- Configuration management
- Cached settings access
"""

from ssokeeper.core.config import (
    ConfigValidationError,
    CredentialStoreProvider,
    CredentialStoreSettings,
    Environment,
    OIDCSettings,
    SessionSettings,
    Settings,
    validate_settings,
)
from ssokeeper.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "CredentialStoreProvider",
    "CredentialStoreSettings",
    "Environment",
    "OIDCSettings",
    "SessionSettings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
    "validate_settings",
]
