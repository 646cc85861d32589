import os
from pathlib import Path
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr

DEFAULT_PORT = 18789
DEFAULT_COMPLETION_MODEL = "llama-3.3-70b-versatile"
DEFAULT_COMPLETION_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_COMPLETION_TIMEOUT_SECONDS = 60.0
DEFAULT_GITHUB_TIMEOUT_SECONDS = 30.0
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 60.0
DEFAULT_MESSAGING_FILE_URL = "https://api.telegram.org/file"
DEFAULT_SESSION_TTL_SECONDS = 3600.0
DEFAULT_SESSION_MAX_USERS = 1000
DEFAULT_ARCHIVE_MAX_BYTES = 50 * 1024 * 1024


class ConfigError(Exception):
    """The process configuration is missing a required value or contains an invalid one."""

    def __init__(self, variable: str, message: str):
        super().__init__(f"{variable}: {message}")
        self.variable: str = variable


def _first_env(*names: str) -> str | None:
    for name in names:
        if value := os.getenv(name):
            return value
    return None


def _float_env(name: str, default: float) -> float:
    if (value := os.getenv(name)) is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(variable=name, message=f"expected a number, got {value!r}") from e


def _int_env(name: str, default: int) -> int:
    if (value := os.getenv(name)) is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(variable=name, message=f"expected an integer, got {value!r}") from e


def get_completion_api_keys() -> list[str]:
    """Read the completion credential pool. Order of the variable is the rotation order."""

    raw_keys = _first_env("COMPLETION_API_KEYS", "GROQ_API_KEYS", "GROQ_API_KEY")

    keys = [key.strip() for key in (raw_keys or "").split(",") if key.strip()]

    if not keys:
        raise ConfigError(variable="COMPLETION_API_KEYS", message="at least one completion API key must be set")

    return keys


def get_messaging_token() -> str:
    if not (token := _first_env("MESSAGING_TOKEN", "TELEGRAM_BOT_TOKEN")):
        raise ConfigError(variable="MESSAGING_TOKEN", message="MESSAGING_TOKEN or TELEGRAM_BOT_TOKEN must be set")
    return token


def get_github_token() -> str | None:
    return _first_env("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN")


def get_port() -> int:
    return _int_env("PORT", DEFAULT_PORT)


class Settings(BaseModel):
    """Process configuration, read once at startup."""

    model_config = ConfigDict(frozen=True)

    completion_api_keys: list[SecretStr] = Field(min_length=1, description="The completion service credential pool.")
    messaging_token: SecretStr = Field(description="The messaging service credential.")
    github_token: SecretStr | None = Field(default=None, description="The hosting credential. Uploads are disabled without it.")
    port: int = Field(default=DEFAULT_PORT, description="The port the HTTP transport and health route listen on.")

    completion_model: str = DEFAULT_COMPLETION_MODEL
    completion_base_url: str = DEFAULT_COMPLETION_BASE_URL
    completion_timeout_seconds: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS
    github_timeout_seconds: float = DEFAULT_GITHUB_TIMEOUT_SECONDS
    download_timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS
    messaging_file_url: str = DEFAULT_MESSAGING_FILE_URL

    session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS
    session_max_users: int = DEFAULT_SESSION_MAX_USERS

    archive_max_bytes: int = DEFAULT_ARCHIVE_MAX_BYTES
    scratch_dir: Path | None = Field(default=None, description="Where extracted archives are placed. Defaults to the system temp dir.")

    @classmethod
    def from_env(cls) -> Self:
        """Build the settings from the environment.

        Raises:
            ConfigError: If a required credential is missing or a value cannot be parsed.
        """

        github_token = get_github_token()
        scratch_dir = os.getenv("SCRATCH_DIR")

        return cls(
            completion_api_keys=[SecretStr(key) for key in get_completion_api_keys()],
            messaging_token=SecretStr(get_messaging_token()),
            github_token=SecretStr(github_token) if github_token else None,
            port=get_port(),
            completion_model=os.getenv("COMPLETION_MODEL") or DEFAULT_COMPLETION_MODEL,
            completion_base_url=os.getenv("COMPLETION_BASE_URL") or DEFAULT_COMPLETION_BASE_URL,
            completion_timeout_seconds=_float_env("COMPLETION_TIMEOUT_SECONDS", DEFAULT_COMPLETION_TIMEOUT_SECONDS),
            github_timeout_seconds=_float_env("GITHUB_TIMEOUT_SECONDS", DEFAULT_GITHUB_TIMEOUT_SECONDS),
            download_timeout_seconds=_float_env("DOWNLOAD_TIMEOUT_SECONDS", DEFAULT_DOWNLOAD_TIMEOUT_SECONDS),
            messaging_file_url=os.getenv("MESSAGING_FILE_URL") or DEFAULT_MESSAGING_FILE_URL,
            session_ttl_seconds=_float_env("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS),
            session_max_users=_int_env("SESSION_MAX_USERS", DEFAULT_SESSION_MAX_USERS),
            archive_max_bytes=_int_env("ARCHIVE_MAX_BYTES", DEFAULT_ARCHIVE_MAX_BYTES),
            scratch_dir=Path(scratch_dir) if scratch_dir else None,
        )
