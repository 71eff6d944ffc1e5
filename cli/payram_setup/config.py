from __future__ import annotations

import os
import pwd
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path

from . import console

IMAGE_REPOSITORY = "payramapp/payram"
DEFAULT_IMAGE_TAG = "1.6.3"
CONTAINER_NAME = "payram"
API_PORT = 8080

CONFIG_FILENAME = "config.env"
STATE_FILENAME = "state.txt"
LOCK_FILENAME = ".lock"

NETWORK_MAINNET = "mainnet"
NETWORK_TESTNET = "testnet"
SERVER_PRODUCTION = "PRODUCTION"
SERVER_DEVELOPMENT = "DEVELOPMENT"

_REQUIRED_KEYS = ("IMAGE_TAG", "DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD")


class ConfigError(Exception):
    """Saved deployment configuration is missing or unusable."""


@dataclass(frozen=True)
class PayramPaths:
    home: Path
    user: str

    @property
    def info_dir(self) -> Path:
        return self.home / ".payraminfo"

    @property
    def core_dir(self) -> Path:
        return self.home / ".payram-core"

    @property
    def config_file(self) -> Path:
        return self.info_dir / CONFIG_FILENAME

    @property
    def state_file(self) -> Path:
        return self.info_dir / STATE_FILENAME

    @property
    def lock_file(self) -> Path:
        return self.info_dir / LOCK_FILENAME

    @property
    def aes_dir(self) -> Path:
        return self.info_dir / "aes"

    @property
    def log_dir(self) -> Path:
        return self.core_dir / "log" / "supervisord"

    @property
    def postgres_dir(self) -> Path:
        return self.core_dir / "db" / "postgres"


def resolve_paths() -> PayramPaths:
    """Directories belong to the user who invoked sudo, not to root."""
    sudo_user = os.getenv("SUDO_USER", "").strip()
    if sudo_user and sudo_user != "root":
        try:
            return PayramPaths(home=Path(pwd.getpwnam(sudo_user).pw_dir), user=sudo_user)
        except KeyError:
            pass
    user = pwd.getpwuid(os.getuid()).pw_name if hasattr(os, "getuid") else os.getenv("USER", "")
    if user == "root":
        return PayramPaths(home=Path("/root"), user=user)
    return PayramPaths(home=Path.home(), user=user)


def hand_over(path: Path, paths: PayramPaths, *, recursive: bool = False) -> None:
    """chown ``path`` to the invoking user when running as root on their behalf."""
    if paths.user in ("", "root") or not hasattr(os, "geteuid") or os.geteuid() != 0:
        return
    try:
        entry = pwd.getpwnam(paths.user)
    except KeyError:
        return
    targets = [path]
    if recursive and path.is_dir():
        targets.extend(path.rglob("*"))
    for target in targets:
        try:
            os.chown(target, entry.pw_uid, entry.pw_gid)
        except OSError as exc:
            console.warn(f"Could not hand {target} over to {paths.user}: {exc}")


@dataclass
class DeploymentConfig:
    IMAGE_TAG: str = DEFAULT_IMAGE_TAG
    NETWORK_TYPE: str = NETWORK_MAINNET
    SERVER: str = SERVER_PRODUCTION
    AES_KEY: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: str = "5432"
    DB_NAME: str = "payram"
    DB_USER: str = "payram"
    DB_PASSWORD: str = ""
    POSTGRES_SSLMODE: str = "prefer"
    SSL_CERT_PATH: str = ""
    SSL_MODE: str = ""
    OS_FAMILY: str = ""
    OS_DISTRO: str = ""
    ORIGINAL_USER: str = ""
    PAYRAM_HOME: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def image_ref(self) -> str:
        return f"{IMAGE_REPOSITORY}:{self.IMAGE_TAG or DEFAULT_IMAGE_TAG}"

    def use_testnet(self, testnet: bool) -> None:
        if testnet:
            self.NETWORK_TYPE, self.SERVER = NETWORK_TESTNET, SERVER_DEVELOPMENT
        else:
            self.NETWORK_TYPE, self.SERVER = NETWORK_MAINNET, SERVER_PRODUCTION


def _config_keys() -> list[str]:
    return [f.name for f in fields(DeploymentConfig) if f.name != "extra"]


def read_env_content(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            quote, value = value[0], value[1:-1]
            if quote == '"':
                value = value.replace('\\"', '"')
        data[key.strip()] = value
    return data


def render_config(cfg: DeploymentConfig) -> str:
    lines = [
        f"# PayRam Configuration - Generated {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "# Do not edit manually unless you know what you are doing",
        "",
    ]
    for key in _config_keys():
        value = str(getattr(cfg, key) or "").replace('"', '\\"')
        lines.append(f'{key}="{value}"')
    for key, value in sorted(cfg.extra.items()):
        value = str(value).replace('"', '\\"')
        lines.append(f'{key}="{value}"')
    return "\n".join(lines) + "\n"


def load_config(paths: PayramPaths) -> DeploymentConfig:
    path = paths.config_file
    try:
        data = read_env_content(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}") from None
    known = set(_config_keys())
    cfg = DeploymentConfig(**{k: v for k, v in data.items() if k in known})
    cfg.extra = {k: v for k, v in data.items() if k not in known}
    missing = [key for key in _REQUIRED_KEYS if not str(getattr(cfg, key) or "").strip()]
    if missing:
        raise ConfigError(f"Required configuration values missing or empty: {', '.join(missing)}")
    return cfg


def save_config(cfg: DeploymentConfig, paths: PayramPaths) -> Path:
    path = paths.config_file
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(render_config(cfg))
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    hand_over(path, paths)
    return path
