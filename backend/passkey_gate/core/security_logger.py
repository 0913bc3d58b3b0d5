# backend/passkey_gate/core/security_logger.py
"""
Dedicated security logger for fail2ban integration.

Passkey ceremony failures are reported to clients as one generic error, so
this log is where the real reason ends up. Each line has the form:

    2026-01-05 10:15:30 SECURITY [EVENT_TYPE] ip=x.x.x.x field=value ...

When SECURITY_LOG_PATH is set the events go to a rotating file (and not to the
root logger); otherwise they propagate to the normal application log.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from passkey_gate.core.config import settings


def sanitize(value: object, max_length: int = 255) -> str:
    """
    Strip characters that could break fail2ban parsing or forge entries.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output

    Returns:
        Sanitized string safe for a single log line
    """
    if value is None or value == "":
        return "unknown"

    text = str(value).strip()
    # Newlines, brackets and control characters
    text = re.sub(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]", "", text)
    # Whitespace would split a field in two
    text = re.sub(r"\s+", "_", text)
    return text[:max_length]


class SecurityLogger:
    """
    Security event logger.

    A process-wide singleton; all user-controlled fields are sanitized.
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if SecurityLogger._initialized:
            return

        self.logger = logging.getLogger("security")
        self.logger.setLevel(logging.INFO)

        if settings.SECURITY_LOG_PATH:
            log_path = Path(settings.SECURITY_LOG_PATH)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            # 50MB max, keep 10 backups
            handler = RotatingFileHandler(
                str(log_path),
                maxBytes=50 * 1024 * 1024,
                backupCount=10,
            )
            # The message supplies "EVENT_TYPE] ip=... fields..."
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s SECURITY [%(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self.logger.addHandler(handler)
            self.logger.propagate = False

        SecurityLogger._initialized = True

    def passkey_failed(self, ip: str, reason: str = "unknown") -> None:
        """
        Log a rejected passkey ceremony.

        Args:
            ip: Client IP address
            reason: Error code of the failed step (challenge_invalid, verification_failed, ...)
        """
        self.logger.info(f"PASSKEY_FAILED] ip={sanitize(ip)} reason={sanitize(reason)}")

    def clone_suspected(
        self, ip: str, credential_ref: str, stored_count: int, reported_count: int
    ) -> None:
        """
        Log a signature counter that failed to increase.

        Args:
            ip: Client IP address
            credential_ref: Shortened credential identifier
            stored_count: Counter currently stored for the credential
            reported_count: Counter reported by the authenticator
        """
        self.logger.warning(
            f"CLONE_SUSPECTED] ip={sanitize(ip)} credential={sanitize(credential_ref, 32)} "
            f"stored={int(stored_count)} reported={int(reported_count)}"
        )

    def login_success(self, ip: str, user_id: str, method: str = "passkey") -> None:
        """Log a successful login (audit trail, not for banning)."""
        self.logger.info(
            f"LOGIN_SUCCESS] ip={sanitize(ip)} user_id={sanitize(user_id)} method={sanitize(method)}"
        )

    def passkey_registered(self, ip: str, user_id: str) -> None:
        """Log a newly bound passkey."""
        self.logger.info(f"PASSKEY_REGISTERED] ip={sanitize(ip)} user_id={sanitize(user_id)}")

    def rate_limited(self, ip: str, endpoint: str) -> None:
        """Log a rate limit violation."""
        self.logger.info(
            f"RATE_LIMIT] ip={sanitize(ip)} endpoint={sanitize(endpoint, max_length=100)}"
        )


security_log = SecurityLogger()
