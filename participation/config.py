"""
Participation ledger configuration.

Values come from the environment:

    PARTICIPATION_DATABASE_URL  SQLAlchemy URL; empty keeps entries in memory
    SQL_ECHO                    "true" to log emitted SQL
    CORS_ORIGINS                comma separated origins, "*" by default
    LOG_LEVEL                   root log level, INFO by default
"""

import logging
import os

from .db import SqlAlchemyStorage
from .service import InMemoryStorage, ParticipationLedger


class Config:
    def __init__(self):
        self.DATABASE_URL = os.getenv("PARTICIPATION_DATABASE_URL", "")
        self.SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"
        self.CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(config: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_ledger(config: Config) -> ParticipationLedger:
    if config.DATABASE_URL:
        return ParticipationLedger(SqlAlchemyStorage.from_url(config.DATABASE_URL, echo=config.SQL_ECHO))
    return ParticipationLedger(InMemoryStorage())
