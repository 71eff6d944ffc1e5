from __future__ import annotations

import logging
import platform
from pathlib import Path

import typer

from .. import console, prompts
from ..certs import configure_ssl
from ..config import DEFAULT_IMAGE_TAG, DeploymentConfig, PayramPaths, resolve_paths, save_config
from ..container import ContainerController, ContainerError, build_spec
from ..database import configure_database
from ..keys import find_aes_key, generate_aes_key, store_aes_key
from ..lock import LockBusy, run_lock
from ..manifest import Manifest, ManifestError, load_manifest
from ..netinfo import access_urls, detect_public_ip
from ..state_store import MARKER_CONTAINER, MARKER_DEPENDENCIES, StateStore
from ..system import (
    MIN_DISK_GB,
    RECOMMENDED_DISK_GB,
    SystemInfo,
    UnsupportedSystem,
    check_disk_space,
    detect_system,
    install_dependencies,
    is_root,
)
from .provision_cmd import run_provisioning

log = logging.getLogger(__name__)


def _require_privileges() -> None:
    if platform.system() == "Darwin" or is_root():
        return
    console.err("Installation must run as root. Re-run with: sudo payram-setup install")
    raise typer.Exit(code=2)


def _load_manifest_early(path: Path | None) -> Manifest | None:
    if path is None:
        return None
    try:
        return load_manifest(path)
    except ManifestError as exc:
        console.err("Manifest is invalid:")
        for problem in exc.problems:
            console.detail(problem)
        raise typer.Exit(code=2)


def _check_existing(
    controller: ContainerController,
    store: StateStore,
    paths: PayramPaths,
    *,
    resuming_provisioning: bool,
) -> bool:
    """True when the container is already deployed and only provisioning is left."""
    deployed = store.has_completed(MARKER_CONTAINER)
    if controller.is_running():
        if deployed and resuming_provisioning:
            console.info("PayRam is already deployed; resuming provisioning.")
            return True
        console.warn(f"A PayRam container ('{controller.name}') is already running.")
        console.detail("Use `payram-setup update --tag TAG` to change version or `payram-setup reset` to start over.")
        raise typer.Exit(code=0 if deployed else 1)
    if deployed or controller.exists() or paths.config_file.exists():
        console.err("Found leftovers of a previous installation but no running container.")
        console.detail("Start it with `payram-setup restart`, or remove everything with `payram-setup reset`.")
        raise typer.Exit(code=1)
    return False


def _check_disk(paths: PayramPaths, assume_yes: bool) -> None:
    ok, free_gb = check_disk_space(paths.home)
    console.info(f"Disk space: {free_gb:.1f} GB available ({MIN_DISK_GB} GB minimum, {RECOMMENDED_DISK_GB} GB recommended).")
    if not ok:
        console.err(f"Only {free_gb:.1f} GB available; installation may fail.")
        if not prompts.confirm_choice("Continue anyway?", default=False, assume_yes=assume_yes):
            console.detail("Free space with: docker system prune -a")
            raise typer.Exit(code=1)
    elif free_gb < RECOMMENDED_DISK_GB:
        console.warn("Disk space is below the recommended amount; monitor usage closely.")


def _prepare_config(system: SystemInfo, paths: PayramPaths, *, tag: str, testnet: bool) -> DeploymentConfig:
    cfg = DeploymentConfig(IMAGE_TAG=tag)
    cfg.use_testnet(testnet)
    cfg.OS_FAMILY = system.family.value
    cfg.OS_DISTRO = system.distro
    cfg.ORIGINAL_USER = paths.user
    cfg.PAYRAM_HOME = str(paths.home)

    if not configure_database(cfg):
        console.err("Database configuration cancelled.")
        raise typer.Exit(code=1)
    if not configure_ssl(cfg, system):
        console.err("SSL configuration cancelled.")
        raise typer.Exit(code=1)

    console.rule("Hot wallet encryption")
    existing = find_aes_key(paths)
    if existing:
        console.info("Reusing the AES key from a previous attempt.")
        cfg.AES_KEY = existing
    else:
        cfg.AES_KEY = generate_aes_key()
        key_path = store_aes_key(cfg.AES_KEY, paths)
        console.ok(f"AES-256 key generated; back up {key_path.parent} together with the database.")
    return cfg


def _print_summary(cfg: DeploymentConfig) -> None:
    console.rule("Summary")
    console.print(f"  Image:     {cfg.image_ref}")
    console.print(f"  Network:   {cfg.NETWORK_TYPE} ({cfg.SERVER})")
    console.print(f"  Database:  {cfg.DB_USER}@{cfg.DB_HOST}:{cfg.DB_PORT}/{cfg.DB_NAME}")
    console.print(f"  SSL:       {cfg.SSL_MODE or 'none'} {cfg.SSL_CERT_PATH}".rstrip())


def _print_access(cfg: DeploymentConfig) -> None:
    domain = Path(cfg.SSL_CERT_PATH).name if cfg.SSL_CERT_PATH else None
    public_ip = detect_public_ip()
    console.rule("Access")
    for label, url in access_urls(public_ip, domain):
        console.print(f"  {label:<16} {url}")
    if public_ip is None:
        console.detail("Public IP could not be detected; use this server's address.")


def _deploy(
    controller: ContainerController,
    store: StateStore,
    paths: PayramPaths,
    *,
    tag: str,
    testnet: bool,
    assume_yes: bool,
) -> DeploymentConfig:
    try:
        system = detect_system()
    except UnsupportedSystem as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    console.ok(f"Detected {system.distro} {system.version} ({system.family.value}, {system.strategy.manager}).")

    if store.has_completed(MARKER_DEPENDENCIES):
        console.ok("Dependencies already installed.")
    else:
        try:
            install_dependencies(system)
        except RuntimeError as exc:
            console.err(str(exc))
            raise typer.Exit(code=1)
        store.mark_completed(MARKER_DEPENDENCIES)

    _check_disk(paths, assume_yes)
    cfg = _prepare_config(system, paths, tag=tag, testnet=testnet)
    _print_summary(cfg)
    if not prompts.confirm_choice("Deploy PayRam with these settings?", default=True, assume_yes=assume_yes):
        console.err("Installation cancelled.")
        raise typer.Exit(code=1)

    try:
        controller.deploy(build_spec(cfg, paths), paths=paths)
    except ContainerError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)
    store.mark_completed(MARKER_CONTAINER)

    if not controller.health_check():
        console.warn("Continuing; the application may need more time to start.")
    path = save_config(cfg, paths)
    console.ok(f"Configuration saved to {path}")
    log.info("deployment of %s complete", cfg.image_ref)
    return cfg


def install(
    testnet: bool = typer.Option(False, "--testnet", help="Deploy against test networks (DEVELOPMENT server)."),
    tag: str = typer.Option(DEFAULT_IMAGE_TAG, "--tag", "-T", help="Image tag to deploy."),
    manifest: Path | None = typer.Option(None, "--manifest", "-m", help="Provision the gateway from this manifest."),
    assume_yes: bool = typer.Option(False, "--yes", "-y", help="Assume yes for confirmations."),
) -> None:
    """Install PayRam on this machine and optionally provision it.

    Exit codes: 0 ready, 1 failed or cancelled, 2 invalid usage or manifest,
    3 incomplete (provisioning steps failed; rerun to resume).
    """
    _require_privileges()
    loaded = _load_manifest_early(manifest)
    paths = resolve_paths()
    store = StateStore(paths.state_file)
    controller = ContainerController()

    try:
        with run_lock(paths.lock_file):
            resume = _check_existing(controller, store, paths, resuming_provisioning=manifest is not None)
            cfg = None
            if not resume:
                cfg = _deploy(controller, store, paths, tag=tag, testnet=testnet, assume_yes=assume_yes)
            exit_code = 0
            if manifest is not None:
                result = run_provisioning(paths, manifest, manifest=loaded, container=controller)
                exit_code = result.exit_code
            if cfg is not None:
                _print_access(cfg)
    except LockBusy as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    if exit_code:
        raise typer.Exit(code=exit_code)
