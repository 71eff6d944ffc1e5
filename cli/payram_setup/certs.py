from __future__ import annotations

import logging
import random
import re
import shutil
from pathlib import Path

from questionary import Choice

from . import console, prompts
from .config import CONTAINER_NAME, DeploymentConfig
from .container import Runner, local_runner
from .system import SystemInfo

log = logging.getLogger(__name__)

SSL_LETSENCRYPT = "letsencrypt"
SSL_CUSTOM = "custom"
SSL_EXTERNAL = "external"

LETSENCRYPT_LIVE = Path("/etc/letsencrypt/live")
RENEWAL_CRON = Path("/etc/cron.d/payram-certbot-renewal")
CERT_FILES = ("fullchain.pem", "privkey.pem")

_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PORT80_SERVICES = ("apache2", "nginx", "httpd")


def valid_domain(value: str) -> bool:
    return bool(_DOMAIN_RE.match(value)) and "." in value


def valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def missing_cert_files(cert_dir: Path) -> list[str]:
    missing = []
    for name in CERT_FILES:
        path = cert_dir / name
        if not path.is_file():
            missing.append(name)
        else:
            try:
                path.open("rb").close()
            except OSError:
                missing.append(f"{name} (not readable)")
    return missing


def renewal_cron_entry(container: str = CONTAINER_NAME, *, rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    minute, hour = rng.randint(0, 59), rng.randint(0, 23)
    return (
        "# PayRam Let's Encrypt certificate renewal\n"
        f'{minute} {hour} * * * root certbot renew --quiet --deploy-hook "docker restart {container} 2>/dev/null || true"\n'
    )


def install_certbot(system: SystemInfo, runner: Runner) -> bool:
    if shutil.which("certbot"):
        return True
    console.info("Installing certbot...")
    res = runner(system.strategy.install_cmd("certbot"))
    if res.returncode != 0:
        log.error("certbot install failed: %s", (res.stderr or "").strip())
        return False
    return True


def issue_certificate(domain: str, email: str, runner: Runner) -> bool:
    # standalone mode needs port 80
    for service in _PORT80_SERVICES:
        runner(["systemctl", "stop", service])
    res = runner(
        [
            "certbot",
            "certonly",
            "--standalone",
            "--non-interactive",
            "--agree-tos",
            "--email",
            email,
            "--domains",
            domain,
            "--expand",
            "--keep-until-expiring",
        ]
    )
    if res.returncode != 0:
        log.error("certbot failed for %s: %s", domain, (res.stderr or "").strip())
        return False
    return True


def install_renewal_hook(runner: Runner, cron_path: Path = RENEWAL_CRON) -> None:
    try:
        cron_path.write_text(renewal_cron_entry(), encoding="utf-8")
        cron_path.chmod(0o644)
    except OSError as exc:
        console.warn(f"Could not write renewal schedule {cron_path}: {exc}")
        return
    if runner(["certbot", "renew", "--dry-run", "--quiet"]).returncode == 0:
        console.ok("Automatic renewal configured and tested.")
    else:
        console.warn("Automatic renewal configured but the dry run failed.")


def configure_letsencrypt(cfg: DeploymentConfig, system: SystemInfo, runner: Runner) -> bool:
    while True:
        domain = prompts.ask_text("Domain name (e.g. payram.example.com)")
        if valid_domain(domain):
            break
        console.err("Invalid domain format.")
    while True:
        email = prompts.ask_text("Email for certificate expiry notices")
        if valid_email(email):
            break
        console.err("Invalid email format.")

    console.detail("The domain must already point to this server and port 80 must be reachable.")
    if not prompts.confirm_choice("Generate the certificate now?", default=True):
        console.warn("Continuing without SSL.")
        return True
    if not install_certbot(system, runner):
        console.err("Failed to install certbot. Continuing without SSL.")
        return True
    console.info(f"Requesting certificate for {domain}...")
    if not issue_certificate(domain, email, runner):
        console.err("Certificate generation failed.")
        console.detail("Check DNS for the domain and that port 80 is open.")
        return prompts.confirm_choice("Continue without SSL?", default=False)

    cert_dir = LETSENCRYPT_LIVE / domain
    cfg.SSL_CERT_PATH, cfg.SSL_MODE = str(cert_dir), SSL_LETSENCRYPT
    console.ok(f"Certificate issued: {cert_dir / 'fullchain.pem'}")
    install_renewal_hook(runner)
    return True


def configure_custom(cfg: DeploymentConfig) -> bool:
    while True:
        raw = prompts.ask_text("Certificate directory")
        cert_dir = Path(raw).expanduser()
        if not cert_dir.is_dir():
            console.err(f"Directory '{cert_dir}' does not exist.")
            continue
        missing = missing_cert_files(cert_dir)
        if not missing:
            cfg.SSL_CERT_PATH, cfg.SSL_MODE = str(cert_dir), SSL_CUSTOM
            console.ok("Certificate files found.")
            return True
        console.err(f"Missing or unreadable certificate files: {', '.join(missing)}")
        if not prompts.confirm_choice("Try a different path?", default=True):
            console.warn("Continuing without SSL certificates.")
            return True


def configure_ssl(cfg: DeploymentConfig, system: SystemInfo, runner: Runner | None = None) -> bool:
    """Returns False when the operator chose to stop the installation."""
    runner = runner or local_runner()
    console.rule("SSL")
    cfg.SSL_CERT_PATH, cfg.SSL_MODE = "", ""
    choice = prompts.select_item(
        "How should HTTPS be provided?",
        [
            Choice(title="Let's Encrypt (free certificate via certbot)", value=SSL_LETSENCRYPT),
            Choice(title="Custom certificates (fullchain.pem + privkey.pem)", value=SSL_CUSTOM),
            Choice(title="External (Cloudflare, load balancer or reverse proxy)", value=SSL_EXTERNAL),
        ],
    )
    if choice == SSL_LETSENCRYPT:
        return configure_letsencrypt(cfg, system, runner)
    if choice == SSL_CUSTOM:
        return configure_custom(cfg)
    cfg.SSL_MODE = SSL_EXTERNAL
    console.ok("External SSL termination selected; PayRam will serve plain HTTP behind it.")
    console.detail("Forward X-Forwarded-For, X-Real-IP and X-Forwarded-Proto from your proxy.")
    return True
