from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass

from questionary import Choice

from . import console, prompts
from .config import DeploymentConfig
from .container import Runner, local_runner

log = logging.getLogger(__name__)

INTERNAL_HOST = "localhost"
INTERNAL_PORT = "5432"
INTERNAL_NAME = "payram"
INTERNAL_USER = "payram"
INTERNAL_PASSWORD = "payram123"


@dataclass(frozen=True)
class DatabaseSettings:
    host: str
    port: str
    name: str
    user: str
    password: str

    def apply(self, cfg: DeploymentConfig) -> None:
        cfg.DB_HOST = self.host
        cfg.DB_PORT = self.port
        cfg.DB_NAME = self.name
        cfg.DB_USER = self.user
        cfg.DB_PASSWORD = self.password


def internal_settings() -> DatabaseSettings:
    return DatabaseSettings(INTERNAL_HOST, INTERNAL_PORT, INTERNAL_NAME, INTERNAL_USER, INTERNAL_PASSWORD)


def check_connection(settings: DatabaseSettings, runner: Runner | None = None) -> bool:
    """Connect with psql, passing the password through a private pgpass file."""
    runner = runner or local_runner()
    fd, pgpass = tempfile.mkstemp(prefix="payram-pgpass.")
    try:
        os.chmod(pgpass, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{settings.host}:{settings.port}:{settings.name}:{settings.user}:{settings.password}\n")
        cmd = [
            "env",
            f"PGPASSFILE={pgpass}",
            "psql",
            "-h",
            settings.host,
            "-p",
            settings.port,
            "-U",
            settings.user,
            "-d",
            settings.name,
            "-w",
            "-c",
            "\\q",
        ]
        res = runner(cmd)
    finally:
        os.unlink(pgpass)
    if res.returncode != 0:
        log.warning("database connection test failed: %s", (res.stderr or "").strip())
    return res.returncode == 0


def _prompt_external() -> DatabaseSettings:
    return DatabaseSettings(
        host=prompts.ask_text("Database host", default="localhost"),
        port=prompts.ask_text("Database port", default="5432"),
        name=prompts.ask_text("Database name"),
        user=prompts.ask_text("Database username"),
        password=prompts.ask_text("Database password", secret=True),
    )


def configure_external(runner: Runner | None = None) -> DatabaseSettings | None:
    console.info("You need an existing PostgreSQL database reachable from this machine.")
    while True:
        settings = _prompt_external()
        console.info("Testing database connection...")
        if check_connection(settings, runner):
            console.ok("Database connection successful.")
            return settings
        console.err("Database connection failed.")
        console.detail(f"Check the server is running, the credentials, and firewall rules for port {settings.port}.")
        if not prompts.confirm_choice("Try again?", default=True):
            return None


def configure_database(cfg: DeploymentConfig, runner: Runner | None = None) -> bool:
    """Returns False when the operator gave up on an external database."""
    console.rule("Database")
    choice = prompts.select_item(
        "Where should PayRam store its data?",
        [
            Choice(title="External PostgreSQL (recommended for production)", value="external"),
            Choice(title="Containerized PostgreSQL (quick setup, back up regularly)", value="internal"),
        ],
    )
    if choice == "external":
        settings = configure_external(runner)
        if settings is None:
            return False
    else:
        settings = internal_settings()
        console.ok("Containerized database selected.")
        console.detail("Back up both the database and the AES key directory regularly.")
    settings.apply(cfg)
    return True
