# backend/passkey_gate/core/config.py

import json
import logging
from typing import Literal

from pydantic import AliasChoices, Field, RedisDsn, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )

    # --- Environment & Debug ---
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = Field(
        default="development", validation_alias="APP_ENV"
    )
    DEBUG: bool = Field(default=False, validation_alias=AliasChoices("DEBUG_MODE", "DEBUG"))
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )

    # --- Core Application Settings ---
    APP_NAME: str = Field(default="Passkey Gate", validation_alias="APP_NAME")
    APP_VERSION: str = Field(default="0.1.0", validation_alias="APP_VERSION")
    API_V1_STR: str = Field(default="/api", validation_alias="API_V1_STR")
    FRONTEND_URL: str = Field(
        default="http://localhost:3000",
        description="Public URL of the web client; default source for RP ID and origin.",
        validation_alias="FRONTEND_URL",
    )
    TRUST_PROXY_HEADERS: bool = Field(default=False, validation_alias="TRUST_PROXY_HEADERS")
    SERVER_HOST: str = Field(default="0.0.0.0", validation_alias="SERVER_HOST")
    SERVER_PORT: int = Field(default=8000, validation_alias="SERVER_PORT")

    # --- WebAuthn Settings ---
    WEBAUTHN_RP_ID: str | None = Field(default=None, validation_alias="WEBAUTHN_RP_ID")
    WEBAUTHN_RP_NAME: str = Field(default="Passkey Gate", validation_alias="WEBAUTHN_RP_NAME")
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = Field(
        default=300,
        gt=0,
        description="Lifetime of an issued ceremony challenge",
        validation_alias="WEBAUTHN_CHALLENGE_TTL_SECONDS",
    )
    WEBAUTHN_CHALLENGE_SWEEP_INTERVAL_SECONDS: int = Field(
        default=60, gt=0, validation_alias="WEBAUTHN_CHALLENGE_SWEEP_INTERVAL_SECONDS"
    )
    WEBAUTHN_CHALLENGE_BACKEND: Literal["memory", "redis"] = Field(
        default="memory", validation_alias="WEBAUTHN_CHALLENGE_BACKEND"
    )
    WEBAUTHN_CLONE_POLICY: Literal["block", "flag"] = Field(
        default="block",
        description="block: reject non-increasing counters; flag: log and accept",
        validation_alias="WEBAUTHN_CLONE_POLICY",
    )
    WEBAUTHN_REQUIRE_USER_VERIFICATION: bool = Field(
        default=False, validation_alias="WEBAUTHN_REQUIRE_USER_VERIFICATION"
    )

    # --- Session Settings ---
    SESSION_COOKIE_NAME: str = Field(default="session", validation_alias="SESSION_COOKIE_NAME")
    SESSION_DURATION_DAYS: int = Field(default=7, gt=0, validation_alias="SESSION_DURATION_DAYS")
    SESSION_PURGE_INTERVAL_SECONDS: int = Field(
        default=3600, gt=0, validation_alias="SESSION_PURGE_INTERVAL_SECONDS"
    )
    COOKIE_SECURE: bool = Field(default=True, validation_alias="COOKIE_SECURE")
    COOKIE_SAMESITE: Literal["lax", "strict", "none"] = Field(
        default="strict", validation_alias="COOKIE_SAMESITE"
    )

    # --- Database Settings ---
    DATABASE_URL_ENV: str | None = Field(default=None, validation_alias="DATABASE_URL")
    POSTGRES_SERVER: str = Field(default="db", validation_alias="POSTGRES_SERVER")
    POSTGRES_USER: str = Field(default="passkey", validation_alias="POSTGRES_USER")
    POSTGRES_PASSWORD: str = Field(default="passkey", validation_alias="POSTGRES_PASSWORD")
    POSTGRES_DB: str = Field(default="passkeydb", validation_alias="POSTGRES_DB")
    POSTGRES_PORT: int = Field(default=5432, validation_alias="POSTGRES_PORT")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # --- Celery & Redis Settings ---
    REDIS_HOST: str = Field(default="redis", validation_alias="REDIS_HOST")
    REDIS_PORT: int = Field(default=6379, validation_alias="REDIS_PORT")
    CELERY_BROKER_URL_ENV: RedisDsn | None = Field(
        default=None, validation_alias="CELERY_BROKER_URL"
    )
    CELERY_RESULT_BACKEND_ENV: RedisDsn | None = Field(
        default=None, validation_alias="CELERY_RESULT_BACKEND"
    )
    TIMEZONE: str = Field(default="UTC", validation_alias="CELERY_TIMEZONE")

    # --- Logging ---
    SECURITY_LOG_PATH: str | None = Field(
        default=None,
        description="Rotating file for fail2ban-style security events; unset logs to stderr",
        validation_alias="SECURITY_LOG_PATH",
    )

    # --- Fields for complex parsing ---
    webauthn_origin_env_str: str | None = Field(
        default=None, validation_alias=AliasChoices("WEBAUTHN_ORIGIN", "WEBAUTHN_ORIGINS")
    )
    backend_cors_origins_env_str: str | None = Field(
        default='["http://localhost:3000"]',
        validation_alias=AliasChoices("BACKEND_CORS_ORIGINS", "BACKEND_CORS_ORIGINS_ENV"),
    )

    # --- Private storage for parsed values ---
    _parsed_webauthn_origins: list[str] = []
    _parsed_backend_cors_origins: list[str] = []

    def _parse_string_list_input_helper(
        self, input_str: str | None, field_name_for_log: str
    ) -> list[str]:
        if not input_str or not input_str.strip():
            return []
        try:
            loaded_items = json.loads(input_str)
        except json.JSONDecodeError:
            logger.debug(
                "%s is not JSON, falling back to comma separation.", field_name_for_log
            )
            return [item.strip() for item in input_str.split(",") if item.strip()]

        if isinstance(loaded_items, list):
            return [str(item).strip() for item in loaded_items if str(item).strip()]
        if isinstance(loaded_items, str) and loaded_items.strip():
            return [loaded_items.strip()]

        logger.warning(
            "Env var %s (value: '%s') resulted in an empty parsed list.",
            field_name_for_log,
            input_str,
        )
        return []

    @model_validator(mode="after")
    def _process_complex_fields_and_debug_overrides(self) -> "Settings":
        self._parsed_webauthn_origins = self._parse_string_list_input_helper(
            self.webauthn_origin_env_str, "WEBAUTHN_ORIGIN"
        )
        self._parsed_backend_cors_origins = self._parse_string_list_input_helper(
            self.backend_cors_origins_env_str, "BACKEND_CORS_ORIGINS"
        )

        if self.DEBUG:
            if self.LOG_LEVEL != "DEBUG":
                logger.info("DEBUG mode is ON. Overriding LOG_LEVEL to DEBUG.")
                self.LOG_LEVEL = "DEBUG"
            if self.COOKIE_SECURE:  # http://localhost cannot carry secure cookies
                logger.info("DEBUG mode is ON. Overriding COOKIE_SECURE to False.")
                self.COOKIE_SECURE = False
        elif self.ENVIRONMENT == "production" and not self.COOKIE_SECURE:
            logger.warning(
                "Production environment with COOKIE_SECURE=False. Session cookies will be sent over plain HTTP."
            )
        return self

    @property
    def WEBAUTHN_ORIGINS(self) -> list[str]:
        """Origins accepted in client data; defaults to FRONTEND_URL."""
        return self._parsed_webauthn_origins or [self.FRONTEND_URL.rstrip("/")]

    @property
    def BACKEND_CORS_ORIGINS(self) -> list[str]:
        return self._parsed_backend_cors_origins

    @computed_field(repr=False)
    @property
    def ASYNC_SQLALCHEMY_DATABASE_URL(self) -> str:
        if self.DATABASE_URL_ENV:
            db_url_str = self.DATABASE_URL_ENV
            # Postgres URLs are normalized to the asyncpg driver, anything else is used verbatim
            for prefix in ("postgresql+asyncpg://", "postgresql://", "postgres://"):
                if db_url_str.startswith(prefix):
                    return "postgresql+asyncpg://" + db_url_str[len(prefix) :]
            return db_url_str
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @computed_field(repr=False)
    @property
    def SYNC_SQLALCHEMY_DATABASE_URL(self) -> str:
        return self.ASYNC_SQLALCHEMY_DATABASE_URL.replace(
            "postgresql+asyncpg://", "postgresql://", 1
        ).replace("sqlite+aiosqlite://", "sqlite://", 1)

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/3"

    @property
    def CELERY_BROKER_URL(self) -> str:
        if self.CELERY_BROKER_URL_ENV:
            return str(self.CELERY_BROKER_URL_ENV)
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/0"

    @property
    def CELERY_RESULT_BACKEND(self) -> str:
        if self.CELERY_RESULT_BACKEND_ENV:
            return str(self.CELERY_RESULT_BACKEND_ENV)
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/1"


settings = Settings()
