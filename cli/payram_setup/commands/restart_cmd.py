from __future__ import annotations

import time
from typing import Callable

import typer

from .. import console
from ..container import ContainerController

RESTART_SETTLE_SECONDS = 3


def run_restart(controller: ContainerController, *, sleep: Callable[[float], None] = time.sleep) -> int:
    if controller.is_running():
        console.info(f"Restarting container '{controller.name}'...")
        ok = controller.restart()
    elif controller.exists():
        console.info(f"Starting stopped container '{controller.name}'...")
        ok = controller.start()
    else:
        console.err(f"No container named '{controller.name}' found. Run `payram-setup install` first.")
        return 2
    if not ok:
        console.err(f"Docker could not restart '{controller.name}'.")
        return 1
    sleep(RESTART_SETTLE_SECONDS)
    if not controller.is_running():
        console.err(f"Container '{controller.name}' is not running. Check logs with: docker logs {controller.name}")
        return 1
    console.ok(f"Container '{controller.name}' is running.")
    return 0


def restart() -> None:
    """Restart the PayRam container (or start it if stopped)."""
    code = run_restart(ContainerController())
    if code:
        raise typer.Exit(code=code)
