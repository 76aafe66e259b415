"""Startup checks and a redacted dump of the effective configuration."""

from billflow.common.config import CommonSettings
from billflow.common.logging import logger

SECRET_SUFFIXES = ("_key", "_secret", "_dsn")


def redacted_config(config: CommonSettings) -> dict:
    """Effective settings with credentials masked; the price table is summarized."""

    values = config.model_dump()
    for name in values:
        if name.endswith(SECRET_SUFFIXES):
            values[name] = "<redacted>" if values[name] else "<unset>"
    values["price_table"] = sorted(values["price_table"])
    return values


def check_processor_config(config: CommonSettings) -> None:
    if config.processor_backend not in ("stripe", "simulated"):
        raise ValueError(f"unknown processor backend {config.processor_backend!r}")
    if config.processor_backend == "stripe" and not config.stripe_webhook_secret:
        raise ValueError("stripe_webhook_secret is required for the stripe processor backend")


def log_startup_config(config: CommonSettings) -> None:
    check_processor_config(config)
    logger.info("startup_config=%s", redacted_config(config))
