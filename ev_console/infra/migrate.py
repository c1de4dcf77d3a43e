from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from ev_console.infra.config import get_settings
from ev_console.infra.logging_config import setup_logging

ROOT = Path(__file__).resolve().parents[2]

logger = logging.getLogger(__name__)


def alembic_config() -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "infra" / "migrations"))
    return config


def run_upgrade_head() -> None:
    logger.info("upgrading audit database to head")
    command.upgrade(alembic_config(), "head")


if __name__ == "__main__":
    setup_logging("ev-console-migrate", get_settings().log_level)
    run_upgrade_head()
