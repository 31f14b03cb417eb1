"""Singleton settings accessor for ssokeeper configuration.

Usage:
    from ssokeeper.core.settings import get_settings

    settings = get_settings()
    if settings.session.enable_auto_refresh:
        ...

Settings are read from the environment once and cached. Tests reload them
with clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from ssokeeper.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings.

    The environment is read and validated once; later calls return the
    same instance.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded (fail-fast behavior).
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, credential_store=%s, "
            "auto_refresh=%s, policy_hash=%s",
            settings.environment.value,
            settings.credential_store.provider.value,
            settings.session.enable_auto_refresh,
            settings.get_policy_hash()[:16] + "...",
        )

        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e

    except Exception as e:
        logger.critical("Failed to load configuration: %s", str(e))
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Tests call this between cases so environment patches take effect;
    it also allows a deliberate reload.
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but returns None instead of exiting.

    Returns:
        Settings instance if available, None otherwise.
    """
    try:
        return get_settings()
    except SystemExit:
        return None
