import logging
import logging.config
import re

SUBSCRIPTION_PATTERNS = [
    # Push service endpoints embed a per-browser capability token in the path.
    re.compile(r"https?://[^\s'\"]*(?:push|fcm|notify|wns)[^\s'\"]*", re.IGNORECASE),
    re.compile(r"(?i)((?:p256dh(?:_key)?|auth(?:_key)?|vapid_private_key)\s*[=:]\s*)([^,\s]+)"),
    # urllib3 connection errors quote the request path, token included.
    re.compile(r"(url:\s*)(\S+)"),
]


class SubscriptionSafeFilter(logging.Filter):
    def _sanitize(self, value: object) -> object:
        if not isinstance(value, str):
            return value

        redacted = value
        for pattern in SUBSCRIPTION_PATTERNS:
            if pattern.groups:
                redacted = pattern.sub(r"\1[REDACTED]", redacted)
            else:
                redacted = pattern.sub("[REDACTED]", redacted)
        return redacted

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._sanitize(record.msg)
        if record.exc_info and not record.exc_text:
            record.exc_text = self._sanitize(logging.Formatter().formatException(record.exc_info))

        if isinstance(record.args, tuple):
            record.args = tuple(self._sanitize(item) for item in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: self._sanitize(value) for key, value in record.args.items()}

        return True


def setup_logging() -> None:
    from pushcast.core.settings import get_settings

    settings = get_settings()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "subscription_safe": {
                    "()": "pushcast.core.logging.SubscriptionSafeFilter",
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["subscription_safe"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["console"],
                    "level": settings.log_level.upper(),
                },
                "uvicorn.access": {
                    "handlers": ["console"],
                    "level": "WARNING",
                    "propagate": False,
                },
                "apscheduler": {
                    "handlers": ["console"],
                    "level": "WARNING",
                    "propagate": False,
                },
            },
        }
    )
