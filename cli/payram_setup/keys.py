from __future__ import annotations

import os
from pathlib import Path

from .config import PayramPaths, hand_over


def generate_aes_key() -> str:
    """256-bit hot wallet encryption key, hex encoded."""
    return os.urandom(32).hex()


def store_aes_key(key: str, paths: PayramPaths) -> Path:
    """Legacy copy of the key: one file named after the key under the aes dir."""
    aes_dir = paths.aes_dir
    os.makedirs(aes_dir, exist_ok=True)
    key_path = aes_dir / key
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(f"AES_KEY={key}\n")
    os.chmod(key_path, 0o600)
    hand_over(paths.info_dir, paths, recursive=True)
    return key_path


def find_aes_key(paths: PayramPaths) -> str | None:
    if not paths.aes_dir.is_dir():
        return None
    for entry in sorted(paths.aes_dir.iterdir()):
        try:
            content = entry.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if content.startswith("AES_KEY="):
            return content[len("AES_KEY=") :]
    return None
