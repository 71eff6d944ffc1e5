from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import typer

from .. import console
from ..certs import LETSENCRYPT_LIVE, SSL_LETSENCRYPT
from ..config import ConfigError, PayramPaths, load_config, resolve_paths
from ..container import ContainerController, Runner, local_runner
from ..lock import LockBusy, run_lock

log = logging.getLogger(__name__)

CONFIRM_TOKEN = "DELETE"
CRON_DIR = Path("/etc/cron.d")
RENEWAL_HOOKS_DIR = Path("/etc/letsencrypt/renewal-hooks")


@dataclass
class ResetReport:
    failed: list[str] = field(default_factory=list)

    def step(self, name: str, ok: bool, detail: str = "") -> None:
        if ok:
            console.ok(f"{name}{': ' + detail if detail else ''}")
        else:
            console.err(f"{name} failed{': ' + detail if detail else ''}")
            self.failed.append(name)


def confirm_reset(token: str | None) -> bool:
    console.warn("This permanently removes the PayRam container, images, database files, keys and configuration.")
    console.detail("Back up the database and the .payraminfo/aes directory first if you need them.")
    if token is None:
        token = typer.prompt(f"Type {CONFIRM_TOKEN} to confirm", default="", show_default=False)
    return token == CONFIRM_TOKEN


def _remove_tree(path: Path, report: ResetReport, name: str) -> None:
    if not path.exists():
        console.detail(f"{name}: {path} not found")
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        report.step(name, False, str(exc))
        return
    report.step(name, True, str(path))


def _remove_certificate(paths: PayramPaths, runner: Runner, report: ResetReport, live_dir: Path) -> None:
    try:
        cfg = load_config(paths)
    except ConfigError:
        console.detail("No saved configuration; skipping certificate removal.")
        return
    if cfg.SSL_MODE != SSL_LETSENCRYPT or not cfg.SSL_CERT_PATH:
        console.detail("No Let's Encrypt certificate configured for this installation.")
        return
    domain = Path(cfg.SSL_CERT_PATH.rstrip("/")).name
    if not (live_dir / domain).is_dir():
        console.warn(f"Certificate directory for {domain} not found; skipping.")
        return
    if shutil.which("certbot") is None:
        console.warn(f"certbot not found; remove the certificate manually: certbot delete --cert-name {domain}")
        return
    res = runner(["certbot", "delete", "--cert-name", domain, "--non-interactive", "--quiet"])
    report.step(f"Delete certificate {domain}", res.returncode == 0, (res.stderr or "").strip())


def _remove_matching(directory: Path, pattern: str, report: ResetReport, name: str) -> None:
    if not directory.is_dir():
        return
    for path in sorted(directory.rglob(pattern)):
        if not path.is_file():
            continue
        try:
            path.unlink()
        except OSError as exc:
            report.step(name, False, f"{path}: {exc}")
            continue
        report.step(name, True, str(path))


def run_reset(
    controller: ContainerController,
    paths: PayramPaths,
    *,
    runner: Runner | None = None,
    cron_dir: Path = CRON_DIR,
    hooks_dir: Path = RENEWAL_HOOKS_DIR,
    live_dir: Path = LETSENCRYPT_LIVE,
) -> ResetReport:
    """Remove everything an installation created; each step runs even when an earlier one failed."""
    runner = runner or local_runner()
    report = ResetReport()

    if controller.is_running():
        report.step("Stop container", controller.stop())
    if controller.exists():
        report.step("Remove container and volumes", controller.remove())
    if controller.image_ids():
        report.step("Remove images", controller.remove_images())

    _remove_certificate(paths, runner, report, live_dir)
    _remove_matching(hooks_dir, "*payram*", report, "Remove renewal hook")
    _remove_matching(cron_dir, "payram-*", report, "Remove cron job")

    _remove_tree(paths.core_dir, report, "Remove data directory")
    _remove_tree(paths.info_dir, report, "Remove config directory")
    return report


def reset(
    confirm: str | None = typer.Option(None, "--confirm", help="Confirmation token (must be DELETE)."),
) -> None:
    """Remove the PayRam installation from this machine."""
    if not confirm_reset(confirm):
        console.err(f"Reset cancelled. Type {CONFIRM_TOKEN} exactly to proceed.")
        raise typer.Exit(code=1)
    paths = resolve_paths()
    try:
        # the lock file lives inside the config dir removed at the end
        with run_lock(paths.lock_file):
            report = run_reset(ContainerController(), paths)
    except LockBusy as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    if report.failed:
        log.warning("reset finished with failures: %s", ", ".join(report.failed))
        console.err(f"Reset finished with {len(report.failed)} failed step(s); see above.")
        raise typer.Exit(code=1)
    console.ok("PayRam has been removed. Run `payram-setup install` for a fresh installation.")
