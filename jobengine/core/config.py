import json
import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Store configuration in ~/.jobengine/config.json
BASE_DIR = os.path.join(os.path.expanduser("~"), ".jobengine")
CONFIG_PATH = os.path.join(BASE_DIR, "config.json")
DEFAULT_DB_PATH = os.path.join(BASE_DIR, "jobs.db")

CONFIG_ENV = "JOBENGINE_CONFIG"
DATABASE_ENV = "JOBENGINE_DATABASE_URL"


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class EngineConfig(BaseModel):
    """Runtime settings for the engine.

    Keys are kebab-case on disk (``max-retries``) and snake_case in code.
    ``None`` for a timeout or retention disables it.
    """

    model_config = ConfigDict(alias_generator=_kebab, populate_by_name=True, extra="forbid")

    database_url: Optional[str] = None
    poll_interval: float = Field(1.0, gt=0)
    concurrency: int = Field(4, ge=1)
    job_timeout: Optional[float] = Field(300.0, gt=0)
    max_retries: int = Field(3, ge=0)
    backoff_base: float = Field(2.0, ge=0)
    backoff_max: float = Field(300.0, ge=0)
    succeeded_retention: Optional[float] = Field(3600.0, ge=0)
    failed_retention: Optional[float] = Field(86400.0, ge=0)
    cleanup_interval: float = Field(900.0, gt=0)
    recover_orphans: bool = True

    @field_validator("database_url")
    @classmethod
    def _strip_url(cls, value):
        if value is not None:
            value = value.strip() or None
        return value

    def resolved_database_url(self) -> str:
        url = os.environ.get(DATABASE_ENV) or self.database_url
        if url:
            return url
        os.makedirs(os.path.dirname(DEFAULT_DB_PATH), exist_ok=True)
        return f"sqlite:///{DEFAULT_DB_PATH}"

    def to_file_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV) or CONFIG_PATH


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Read the JSON config file, falling back to defaults when absent."""
    path = config_path(path)
    if not os.path.exists(path):
        logger.debug(f"No config at {path}, using defaults")
        return EngineConfig()
    with open(path, "r") as f:
        data = json.load(f)
    return EngineConfig.model_validate(data)


def save_config(config: EngineConfig, path: Optional[str] = None) -> str:
    path = config_path(path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_file_dict(), f, indent=2)
    return path


def set_value(config: EngineConfig, key: str, raw: str) -> EngineConfig:
    """Return a copy of ``config`` with one key changed.

    ``raw`` is parsed as JSON when possible so ``3``, ``2.5``, ``true`` and
    ``null`` get their natural types; anything else stays a string.
    Raises ``KeyError`` for unknown keys and ``ValueError`` for bad values.
    """
    field = key.replace("-", "_")
    if field not in EngineConfig.model_fields:
        allowed = ", ".join(sorted(_kebab(name) for name in EngineConfig.model_fields))
        raise KeyError(f"Unknown configuration key '{key}'. Allowed keys: {allowed}")

    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        value = raw

    data = config.model_dump()
    data[field] = value
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid value for '{key}': {e.errors()[0]['msg']}") from e
