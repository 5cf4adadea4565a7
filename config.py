from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from domain.repositories import RecordStore

DEFAULT_DB_PATH = "opencoins.db"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment (and `.env`)."""

    db_backend: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    postgres_params: Mapping[str, str] = field(default_factory=dict)
    log_level: str = "INFO"


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build `Settings` from `env`, or from `os.environ` after loading `.env`.
    """

    if env is None:
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ

    postgres_params = {
        key: env[name]
        for key, name in (
            ("host", "OPENCOINS_PG_HOST"),
            ("port", "OPENCOINS_PG_PORT"),
            ("dbname", "OPENCOINS_PG_DB"),
            ("user", "OPENCOINS_PG_USER"),
            ("password", "OPENCOINS_PG_PASSWORD"),
        )
        if env.get(name)
    }

    return Settings(
        db_backend=env.get("OPENCOINS_DB_BACKEND", "sqlite").strip().lower(),
        db_path=env.get("OPENCOINS_DB_PATH", DEFAULT_DB_PATH),
        postgres_params=postgres_params,
        log_level=env.get("OPENCOINS_LOG_LEVEL", "INFO").strip().upper(),
    )


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_record_store(settings: Settings) -> RecordStore:
    if settings.db_backend == "sqlite":
        from infrastructure.db.record_store_sqlite import SqliteRecordStore

        return SqliteRecordStore(settings.db_path)
    if settings.db_backend == "postgres":
        if not settings.postgres_params.get("dbname"):
            raise RuntimeError("OPENCOINS_PG_DB environment variable is not set.")
        from infrastructure.db.record_store_postgres import PostgresRecordStore

        return PostgresRecordStore(dict(settings.postgres_params))
    raise RuntimeError(f"Unsupported OPENCOINS_DB_BACKEND: {settings.db_backend!r}")
