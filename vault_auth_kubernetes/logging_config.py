"""
Logging configuration for vault-auth-kubernetes
"""

import logging
import logging.config
from typing import Any, Dict

QUIET_LOGGERS = ("urllib3", "kubernetes")


class SecretFilter(logging.Filter):
    """Redact known secret values from log records."""

    def __init__(self, secrets=()):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, "******")
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def get_logging_config(level: str = "INFO", secrets=()) -> Dict[str, Any]:
    """Get logging configuration for the reconciler process."""
    level = (level or "INFO").upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "secret_filter": {
                "()": SecretFilter,
                "secrets": list(secrets),
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
                "filters": ["secret_filter"],
            }
        },
        "loggers": {
            "vault_auth_kubernetes": {
                "handlers": ["default"],
                "level": level,
                "propagate": False,
            },
            **{
                name: {"level": "WARNING"}
                for name in QUIET_LOGGERS
            },
        },
        "root": {
            "level": level,
            "handlers": ["default"]
        }
    }


def setup_logging(level: str = "INFO", secrets=()) -> None:
    logging.config.dictConfig(get_logging_config(level, secrets))
