from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from . import console
from .container import Runner, local_runner

log = logging.getLogger(__name__)

MIN_DISK_GB = 5
RECOMMENDED_DISK_GB = 10


class OsFamily(str, Enum):
    DEBIAN = "debian"
    RHEL = "rhel"
    FEDORA = "fedora"
    ARCH = "arch"
    ALPINE = "alpine"
    MACOS = "macos"


@dataclass(frozen=True)
class PackageStrategy:
    manager: str
    update: tuple[str, ...]
    install: tuple[str, ...]
    postgres_client: str
    service_start: tuple[str, ...]
    service_enable: tuple[str, ...]
    docker_script: bool = True

    def install_cmd(self, *packages: str) -> list[str]:
        return [*self.install, *packages]


STRATEGIES: dict[OsFamily, PackageStrategy] = {
    OsFamily.DEBIAN: PackageStrategy(
        manager="apt",
        update=("apt-get", "update", "-qq"),
        install=("apt-get", "install", "-y", "-qq"),
        postgres_client="postgresql-client",
        service_start=("systemctl", "start"),
        service_enable=("systemctl", "enable"),
    ),
    OsFamily.RHEL: PackageStrategy(
        manager="yum",
        update=("yum", "makecache", "-q"),
        install=("yum", "install", "-y", "-q"),
        postgres_client="postgresql",
        service_start=("systemctl", "start"),
        service_enable=("systemctl", "enable"),
    ),
    OsFamily.FEDORA: PackageStrategy(
        manager="dnf",
        update=("dnf", "makecache", "-q"),
        install=("dnf", "install", "-y", "-q"),
        postgres_client="postgresql",
        service_start=("systemctl", "start"),
        service_enable=("systemctl", "enable"),
    ),
    OsFamily.ARCH: PackageStrategy(
        manager="pacman",
        update=("pacman", "-Sy", "--noconfirm"),
        install=("pacman", "-S", "--noconfirm", "--needed"),
        postgres_client="postgresql",
        service_start=("systemctl", "start"),
        service_enable=("systemctl", "enable"),
        docker_script=False,
    ),
    OsFamily.ALPINE: PackageStrategy(
        manager="apk",
        update=("apk", "update", "-q"),
        install=("apk", "add", "-q"),
        postgres_client="postgresql-client",
        service_start=("rc-service",),
        service_enable=("rc-update", "add"),
        docker_script=False,
    ),
    OsFamily.MACOS: PackageStrategy(
        manager="brew",
        update=("brew", "update", "-q"),
        install=("brew", "install", "-q"),
        postgres_client="libpq",
        service_start=("open", "-a"),
        service_enable=(),
        docker_script=False,
    ),
}

_ID_FAMILIES = {
    "ubuntu": OsFamily.DEBIAN,
    "debian": OsFamily.DEBIAN,
    "linuxmint": OsFamily.DEBIAN,
    "pop": OsFamily.DEBIAN,
    "centos": OsFamily.RHEL,
    "rhel": OsFamily.RHEL,
    "rocky": OsFamily.RHEL,
    "almalinux": OsFamily.RHEL,
    "amzn": OsFamily.RHEL,
    "fedora": OsFamily.FEDORA,
    "arch": OsFamily.ARCH,
    "manjaro": OsFamily.ARCH,
    "alpine": OsFamily.ALPINE,
}


class UnsupportedSystem(Exception):
    pass


@dataclass(frozen=True)
class SystemInfo:
    family: OsFamily
    distro: str
    version: str

    @property
    def strategy(self) -> PackageStrategy:
        return STRATEGIES[self.family]


def parse_os_release(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for line in content.splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip().strip('"').strip("'")
    return data


def detect_system(os_release: Path = Path("/etc/os-release")) -> SystemInfo:
    if platform.system() == "Darwin":
        return SystemInfo(OsFamily.MACOS, "macos", platform.mac_ver()[0])
    try:
        info = parse_os_release(os_release.read_text(encoding="utf-8"))
    except OSError:
        raise UnsupportedSystem(f"Cannot read {os_release}; unsupported operating system.") from None
    distro = info.get("ID", "").lower()
    candidates = [distro, *info.get("ID_LIKE", "").lower().split()]
    for candidate in candidates:
        family = _ID_FAMILIES.get(candidate)
        if family is not None:
            return SystemInfo(family, distro, info.get("VERSION_ID", ""))
    raise UnsupportedSystem(f"Unsupported distribution '{distro or 'unknown'}'.")


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def _check(runner: Runner, cmd: list[str], what: str) -> None:
    res = runner(cmd)
    if res.returncode != 0:
        log.error("%s failed: %s", what, (res.stderr or "").strip())
        raise RuntimeError(f"{what} failed: {(res.stderr or res.stdout or '').strip()[-400:]}")


def install_docker(system: SystemInfo, runner: Runner | None = None) -> None:
    runner = runner or local_runner()
    if _command_exists("docker"):
        console.ok("Docker is already installed.")
    else:
        strategy = system.strategy
        console.info(f"Installing Docker via {strategy.manager}...")
        if system.family is OsFamily.MACOS:
            _check(runner, ["brew", "install", "--cask", "docker"], "Docker Desktop install")
        elif strategy.docker_script:
            try:
                subprocess.run(
                    "curl -fsSL https://get.docker.com | sh",
                    shell=True,
                    check=True,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except subprocess.CalledProcessError:
                raise RuntimeError("Docker convenience script failed") from None
        else:
            _check(runner, strategy.install_cmd("docker"), "Docker package install")

    if system.family is OsFamily.MACOS:
        runner([*system.strategy.service_start, "Docker"])
    else:
        runner([*system.strategy.service_start, "docker"])
        if system.strategy.service_enable:
            runner([*system.strategy.service_enable, "docker"])
    _check(runner, ["docker", "info"], "Docker daemon check")
    console.ok("Docker daemon is running.")


def install_postgres_client(system: SystemInfo, runner: Runner | None = None) -> None:
    runner = runner or local_runner()
    if _command_exists("psql"):
        console.ok("PostgreSQL client is already installed.")
        return
    strategy = system.strategy
    console.info(f"Installing PostgreSQL client ({strategy.postgres_client})...")
    _check(runner, strategy.install_cmd(strategy.postgres_client), "PostgreSQL client install")
    console.ok("PostgreSQL client installed.")


def install_dependencies(system: SystemInfo, runner: Runner | None = None) -> None:
    runner = runner or local_runner()
    console.info(f"Updating {system.strategy.manager} package index...")
    res = runner(list(system.strategy.update))
    if res.returncode != 0:
        console.warn("Package index update failed; continuing with cached index.")
    install_docker(system, runner)
    install_postgres_client(system, runner)


def check_disk_space(path: Path) -> tuple[bool, float]:
    """Returns (meets minimum, available GB)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    free_gb = shutil.disk_usage(probe).free / (1024**3)
    return free_gb >= MIN_DISK_GB, free_gb
