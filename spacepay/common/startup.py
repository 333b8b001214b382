"""Startup-time helpers for safe config logging."""

from spacepay.common.config import CommonSettings
from spacepay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "passkey", "password", "token")


def redacted_settings(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Return selected settings as strings with secret-like values masked."""

    summary = {}
    for name in fields:
        value = getattr(config, name, None)
        if value is None or value == "":
            summary[name] = "<unset>"
        elif any(marker in name for marker in SECRET_MARKERS):
            summary[name] = "<redacted>"
        else:
            summary[name] = str(value)
    return summary


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings for quick troubleshooting."""

    logger.info("startup_config=%s", {"service": config.service_name, **redacted_settings(config, fields)})
