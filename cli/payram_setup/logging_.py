from __future__ import annotations

import logging
import os
from pathlib import Path

from platformdirs import user_log_dir

LOG_FILENAME = "payram-setup.log"
ENV_LOG_FILE = "PAYRAM_SETUP_LOG"
_FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def default_log_file() -> Path:
    override = os.getenv(ENV_LOG_FILE, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(user_log_dir("payram")) / LOG_FILENAME


def setup_logging(verbose: bool, log_file: Path | None = None) -> Path | None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # terminal stays quiet unless verbose; the file below keeps the full trail
    for handler in root.handlers:
        handler.setLevel(level)

    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.DEBUG if verbose else logging.WARNING)

    path = log_file or default_log_file()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o600, exist_ok=True)
        os.chmod(path, 0o600)
        file_handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        logging.getLogger(__name__).warning("Cannot open setup log at %s", path)
        return None
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(file_handler)
    return path
