"""
Runtime settings.

Values come from THREATMATCH_* environment variables, optionally seeded from a
.env file in the working directory. The backend choice is made here once, at
startup, and never re-inspected at call sites.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .env import load_env
from .errors import ConfigurationError

ENV_PREFIX = "THREATMATCH_"


class Settings(BaseSettings):
    environment: Literal["production", "tool", "unittest"] = "production"
    primary_backend: Literal["sql", "object"] = "sql"
    database_url: str = "sqlite:///data/threatmatch.db"
    object_store_path: Path = Path("data/object_store.json")
    reporting_root: Path = Path("data/reporting")
    start_month: str = "2019-01"
    end_month: str = "2020-07"
    workers: int = Field(1, ge=1)
    commit_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(0.5, ge=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_dir: Optional[Path] = Path("logs")

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    def with_overrides(self, **changes) -> "Settings":
        """
        Return a validated copy with non-None overrides applied (used by CLI flags).

        Raises:
            ConfigurationError: If an override is invalid
        """
        values = self.model_dump()
        values.update({k: v for k, v in changes.items() if v is not None})
        try:
            return type(self)(**values)
        except ValidationError as e:
            raise _configuration_error(e) from e


def _configuration_error(error: ValidationError) -> ConfigurationError:
    problems = []
    for item in error.errors():
        name = ".".join(str(part) for part in item["loc"])
        problems.append(f"{ENV_PREFIX}{name.upper()}: {item['msg']}")
    return ConfigurationError("Invalid settings: " + "; ".join(problems))


def get_settings(load_dotenv_file: bool = True) -> Settings:
    """
    Build Settings from the environment.

    Args:
        load_dotenv_file: Load .env from the working directory first

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If any variable has an invalid value
    """
    if load_dotenv_file:
        load_env()

    try:
        return Settings()
    except ValidationError as e:
        raise _configuration_error(e) from e
