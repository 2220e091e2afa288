"""Configuration for the email filter.

Values come from the process environment, with a local .env file as a
fallback for anything the environment does not set. ``load_config`` builds
one AppConfig; callers pass it down instead of importing globals.

Mailbox credentials live in a separate file (SOPS-encrypted or plain .env),
loaded by ``build_mailbox_config``.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

from mailfilter.schemas.filtering import MailboxConfig, RetryConfig
from mailfilter.secrets import load_credentials

# Environment variable -> AppConfig field
_ENV_FIELDS: dict[str, str] = {
    "OLLAMA_BASE_URL": "ollama_base_url",
    "OLLAMA_MODEL": "ollama_model",
    "OLLAMA_KEEP_ALIVE": "ollama_keep_alive",
    "MAILFILTER_CREDENTIALS_FILE": "credentials_file",
    "MAILFILTER_USE_SOPS": "use_sops",
    "MAILFILTER_PROCESSED_FLAG": "processed_flag",
    "UNREAD_ONLY": "unread_only",
    "MAX_EMAIL_BATCH_SIZE": "batch_size",
    "EMAIL_PROCESSING_LIMIT": "processing_limit",
    "CUSTOM_FILTERING_RULES": "custom_rules",
    "LOG_LEVEL": "log_level",
    "ACTION_DELAY_MS": "action_delay_ms",
}

# Environment variable -> RetryConfig field
_RETRY_ENV_FIELDS: dict[str, str] = {
    "MAX_RETRIES": "max_retries",
    "RETRY_BASE_DELAY_MS": "base_delay_ms",
    "RETRY_MAX_DELAY_MS": "max_delay_ms",
}

_LOG_LEVELS = ("debug", "info", "warning", "error")


class AppConfig(BaseModel):
    """Runtime configuration for a filtering run."""

    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str | None = None  # None -> auto-detect
    ollama_keep_alive: str = "5m"
    credentials_file: str = "secrets/mailbox.env"
    use_sops: bool = False
    processed_flag: str = "MailFilterProcessed"
    unread_only: bool = False
    batch_size: int = Field(default=50, ge=1)
    processing_limit: int | None = Field(default=100, ge=1)  # None = unlimited
    custom_rules: list[str] = Field(default_factory=list)
    log_level: str = "info"
    action_delay_ms: int = Field(default=100, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("processing_limit", mode="before")
    @classmethod
    def _zero_means_unlimited(cls, value: object) -> object:
        if value in (0, "0"):
            return None
        return value

    @field_validator("custom_rules", mode="before")
    @classmethod
    def _split_rules(cls, value: object) -> object:
        if isinstance(value, str):
            return [rule.strip() for rule in value.split(",") if rule.strip()]
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            level = value.strip().lower()
            if level == "warn":
                level = "warning"
            if level not in _LOG_LEVELS:
                raise ValueError(f"log level must be one of {', '.join(_LOG_LEVELS)}")
            return level
        return value

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level.upper())

    @property
    def action_delay(self) -> float:
        """Pause between non-keep actions, in seconds."""
        return self.action_delay_ms / 1000


def _merged_environment(
    environ: Mapping[str, str] | None, dotenv_path: str | Path | None
) -> dict[str, str]:
    values: dict[str, str] = {}
    if dotenv_path is not None and Path(dotenv_path).exists():
        values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
    values.update(os.environ if environ is None else environ)
    return values


def load_config(
    environ: Mapping[str, str] | None = None,
    dotenv_path: str | Path | None = ".env",
) -> AppConfig:
    """Build an AppConfig from the environment and an optional .env file.

    Args:
        environ: Variables to read instead of os.environ.
        dotenv_path: .env file used for variables the environment lacks.
            Ignored if missing; pass None to skip.

    Raises:
        pydantic.ValidationError: If a value cannot be parsed.
    """
    env = _merged_environment(environ, dotenv_path)

    fields: dict[str, object] = {
        field: env[name] for name, field in _ENV_FIELDS.items() if env.get(name)
    }
    retry = {field: env[name] for name, field in _RETRY_ENV_FIELDS.items() if env.get(name)}
    if retry:
        fields["retry"] = retry

    return AppConfig.model_validate(fields)


def build_mailbox_config(
    config: AppConfig, environ: Mapping[str, str] | None = None
) -> MailboxConfig:
    """Resolve mailbox credentials into a MailboxConfig.

    Gmail accounts default to the "[Gmail]/All Mail" archive and
    "[Gmail]/Trash" trash folders.

    Raises:
        ValueError: If server, email or password is missing.
        FileNotFoundError: If SOPS is enabled and the file is missing.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    values = load_credentials(
        config.credentials_file, use_sops=config.use_sops, environ=environ
    )

    is_gmail = (values.get("IMAP_IS_GMAIL") or "false").lower() == "true"
    folders = {
        "inbox": "INBOX",
        "archive": values.get("IMAP_ARCHIVE_FOLDER")
        or ("[Gmail]/All Mail" if is_gmail else "Archive"),
    }
    trash = values.get("IMAP_TRASH_FOLDER") or ("[Gmail]/Trash" if is_gmail else None)
    if trash:
        folders["trash"] = trash

    return MailboxConfig(
        server=values["IMAP_SERVER"],
        email=values["IMAP_EMAIL"],
        password=values["IMAP_PASSWORD"],
        port=values.get("IMAP_PORT") or 993,
        ssl=(values.get("IMAP_SSL") or "true").lower() != "false",
        is_gmail=is_gmail,
        folders=folders,
        processed_flag=config.processed_flag,
    )
