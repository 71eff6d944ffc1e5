from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import typer
from questionary import Choice

from .. import console, prompts
from ..config import ConfigError, DEFAULT_IMAGE_TAG, DeploymentConfig, PayramPaths, load_config, resolve_paths, save_config
from ..container import ContainerController, ContainerError, build_spec, check_tcp
from ..keys import generate_aes_key, store_aes_key
from ..lock import LockBusy, run_lock
from ..netinfo import registry_reachable
from ..system import MIN_DISK_GB, check_disk_space

log = logging.getLogger(__name__)

CHOICE_PROCEED = "proceed"
CHOICE_KEEP = "keep"
CHOICE_CANCEL = "cancel"
_CHOICES = (CHOICE_PROCEED, CHOICE_KEEP, CHOICE_CANCEL)

DB_TIMEOUT = 5.0
_LOCAL_DB_HOSTS = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class ReadinessCheck:
    label: str
    ok: bool
    critical: bool = True
    hint: str = ""


def _choose(current: str, target: str, preset: str | None) -> str:
    if preset:
        return preset
    return prompts.select_item(
        "Update options",
        [
            Choice(title=f"Update to {target}", value=CHOICE_PROCEED),
            Choice(title=f"Keep current version {current}", value=CHOICE_KEEP),
            Choice(title="Cancel", value=CHOICE_CANCEL),
        ],
    )


def _database_reachable(cfg: DeploymentConfig, probe: Callable[[str, int, float], bool]) -> bool:
    try:
        port = int(cfg.DB_PORT)
    except ValueError:
        return False
    return probe(cfg.DB_HOST, port, DB_TIMEOUT)


def check_upgrade_readiness(
    controller: ContainerController,
    paths: PayramPaths,
    cfg: DeploymentConfig,
    tag: str,
    *,
    disk_space: Callable = check_disk_space,
    db_reachable: Callable[[str, int, float], bool] = check_tcp,
    registry: Callable[[], bool] = registry_reachable,
) -> list[ReadinessCheck]:
    """Everything that must hold before the running container is stopped."""
    checks = [ReadinessCheck("Configuration file found", paths.config_file.is_file())]

    daemon = controller.daemon_available()
    checks.append(
        ReadinessCheck("Docker service is running", daemon, hint="Start Docker (e.g. systemctl start docker) and retry.")
    )
    checks.append(
        ReadinessCheck(
            f"PayRam container '{controller.name}' present",
            daemon and controller.exists(),
            critical=False,
            hint="No container found; the update deploys a fresh one.",
        )
    )

    enough, free_gb = disk_space(paths.home)
    checks.append(
        ReadinessCheck(
            f"Disk space: {free_gb:.1f} GB free ({MIN_DISK_GB} GB minimum)",
            enough,
            hint="Free space with: docker system prune -a",
        )
    )
    checks.append(
        ReadinessCheck(
            "Docker registry reachable",
            registry(),
            critical=False,
            hint="Check outbound access to registry-1.docker.io.",
        )
    )
    checks.append(
        ReadinessCheck(
            f"Image {controller.repository}:{tag} available",
            daemon and controller.validate_tag(tag),
            hint="Pick an existing tag with --tag.",
        )
    )

    if cfg.DB_HOST in _LOCAL_DB_HOSTS:
        checks.append(ReadinessCheck("Internal database (no check needed)", True))
    else:
        checks.append(
            ReadinessCheck(
                f"External database {cfg.DB_HOST}:{cfg.DB_PORT} reachable",
                _database_reachable(cfg, db_reachable),
                hint="Make sure the database server is up and accepts connections from this host.",
            )
        )
    return checks


def _report_readiness(checks: list[ReadinessCheck]) -> None:
    console.rule("Upgrade readiness")
    for number, check in enumerate(checks, start=1):
        prefix = f"{number}/{len(checks)} {check.label}"
        if check.ok:
            console.ok(prefix)
            continue
        if check.critical:
            console.err(prefix)
        else:
            console.warn(prefix)
        if check.hint:
            console.detail(check.hint)


def run_update(
    controller: ContainerController,
    paths: PayramPaths,
    *,
    tag: str,
    choice: str | None = None,
    assume_yes: bool = False,
    disk_space: Callable = check_disk_space,
    db_reachable: Callable[[str, int, float], bool] = check_tcp,
    registry: Callable[[], bool] = registry_reachable,
) -> int:
    try:
        cfg = load_config(paths)
    except ConfigError as exc:
        console.err(f"Cannot update: {exc}")
        console.detail("Run `payram-setup install` first.")
        return 2

    current = cfg.IMAGE_TAG
    console.info(f"Current version: {current}")
    console.info(f"Target version:  {tag}")
    selected = _choose(current, tag, choice)
    if selected == CHOICE_CANCEL:
        console.warn("Update cancelled.")
        return 1
    cfg.IMAGE_TAG = tag if selected == CHOICE_PROCEED else current

    checks = check_upgrade_readiness(
        controller,
        paths,
        cfg,
        cfg.IMAGE_TAG,
        disk_space=disk_space,
        db_reachable=db_reachable,
        registry=registry,
    )
    _report_readiness(checks)
    passed = sum(1 for c in checks if c.ok)
    if any(not c.ok and c.critical for c in checks):
        console.err(f"Upgrade not possible ({passed}/{len(checks)} checks passed); the existing container remains running.")
        return 1
    if passed < len(checks):
        if not prompts.confirm_choice("Some non-critical checks failed. Continue?", default=False, assume_yes=assume_yes):
            console.warn("Update cancelled; the existing container remains running.")
            return 1

    if not cfg.AES_KEY:
        cfg.AES_KEY = generate_aes_key()
        store_aes_key(cfg.AES_KEY, paths)
        console.warn("No AES key was saved; generated a new one.")

    if controller.is_running():
        console.info(f"Stopping container '{controller.name}'...")
        if not controller.stop():
            console.err("Could not stop the running container.")
            return 1

    save_config(cfg, paths)
    try:
        controller.deploy(build_spec(cfg, paths), paths=paths)
    except ContainerError as exc:
        console.err(str(exc))
        return 1
    if not controller.health_check():
        console.warn("Health check did not pass yet; check the container logs.")
    log.info("updated %s from %s to %s", controller.name, current, cfg.IMAGE_TAG)
    console.ok(f"PayRam is running {cfg.image_ref}.")
    return 0


def update(
    tag: str = typer.Option(DEFAULT_IMAGE_TAG, "--tag", "-T", help="Image tag to update to."),
    choice: str | None = typer.Option(None, "--choice", help="proceed, keep or cancel (skips the menu)."),
    assume_yes: bool = typer.Option(False, "--yes", "-y", help="Continue past non-critical readiness warnings."),
) -> None:
    """Move an existing installation to another image tag."""
    if choice is not None and choice not in _CHOICES:
        console.err(f"--choice must be one of: {', '.join(_CHOICES)}")
        raise typer.Exit(code=2)
    paths = resolve_paths()
    try:
        with run_lock(paths.lock_file):
            code = run_update(ContainerController(), paths, tag=tag, choice=choice, assume_yes=assume_yes)
    except LockBusy as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    if code:
        raise typer.Exit(code=code)
