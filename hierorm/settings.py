"""
Engine configuration and logging setup.

Settings come from the environment (optionally a .env file loaded with
python-dotenv), mirroring how the inference clients read their keys.
"""
import os
import logging
from typing import Optional, TextIO, Union

from dotenv import load_dotenv
from pydantic import BaseModel

ENGINE_LOGGERS = (
    "SchemaRegistry",
    "FieldTypeRegistry",
    "QueryBuilder",
    "RecordWriter",
    "RelationResolver",
    "LookupCache",
    "SqlStorage",
    "Engine",
)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class EngineSettings(BaseModel):
    """Runtime switches for an Engine instance."""
    database_url: str = "sqlite:///:memory:"
    echo_sql: bool = False
    cache_lookups: bool = True
    subclass_access: bool = True
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "EngineSettings":
        load_dotenv(dotenv_path)
        return cls(
            database_url=os.getenv("HIERORM_DATABASE_URL", "sqlite:///:memory:"),
            echo_sql=_env_flag("HIERORM_ECHO_SQL", False),
            cache_lookups=_env_flag("HIERORM_CACHE_LOOKUPS", True),
            subclass_access=_env_flag("HIERORM_SUBCLASS_ACCESS", True),
            log_level=os.getenv("HIERORM_LOG_LEVEL", "WARNING").upper(),
        )


def configure_logging(level: Union[int, str] = logging.INFO, stream: Optional[TextIO] = None) -> Optional[logging.Handler]:
    """Set the level of every engine logger, optionally attaching a stream handler (returned)."""
    handler = None
    if stream is not None:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    for name in ENGINE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if handler is not None:
            logger.addHandler(handler)
    return handler
