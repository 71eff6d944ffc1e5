from __future__ import annotations

import os
from pathlib import Path

MARKER_DEPENDENCIES = "dependencies_installed"
MARKER_CONTAINER = "container_deployed"
MARKER_SIGNUP = "signup_done"
MARKER_RESTARTED = "container_restarted"


class StateStore:
    """Append-only set of completed step markers, one per line.

    Markers are only ever appended, so a crash mid-write can at worst leave a
    truncated last line that never matches a real marker.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._markers: list[str] | None = None
        self._dangling = False

    def _load(self) -> list[str]:
        if self._markers is None:
            try:
                content = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                content = ""
            self._dangling = bool(content) and not content.endswith("\n")
            self._markers = [line.strip() for line in content.splitlines() if line.strip()]
        return self._markers

    def markers(self) -> list[str]:
        return list(self._load())

    def has_completed(self, marker: str) -> bool:
        return marker in self._load()

    def missing(self, markers) -> list[str]:
        done = set(self._load())
        return [m for m in markers if m not in done]

    def mark_completed(self, marker: str) -> None:
        marker = marker.strip()
        if not marker or "\n" in marker:
            raise ValueError(f"invalid step marker: {marker!r}")
        if self.has_completed(marker):
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(("\n" if self._dangling else "") + marker + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._dangling = False
        self._load().append(marker)
