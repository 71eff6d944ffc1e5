from __future__ import annotations

import logging
import re
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import console
from .config import API_PORT, CONTAINER_NAME, IMAGE_REPOSITORY, DeploymentConfig, PayramPaths, hand_over

log = logging.getLogger(__name__)

Runner = Callable[[list[str]], "subprocess.CompletedProcess[str]"]
Streamer = Callable[[list[str], Callable[[str], None]], int]

PUBLISHED_PORTS = (8080, 8443, 80, 443, 5432)
START_SETTLE_SECONDS = 5
HEALTH_ATTEMPTS = 6
HEALTH_INTERVAL = 10
HEALTH_LOG_TAIL = 20
TCP_TIMEOUT = 5.0

_READY_RE = re.compile(r"server.*start|ready|listening|started|running", re.IGNORECASE)
_ERROR_RE = re.compile(r"error|failed|exception|fatal", re.IGNORECASE)
_PULL_PROGRESS_RE = re.compile(r"Pulling|Downloading|Extracting|Pull complete")
_PULL_DONE_RE = re.compile(r"Status:.*(Downloaded|Image is up to date)")


class ContainerError(Exception):
    """Fatal failure of a container lifecycle operation."""


def local_runner() -> Runner:
    def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(cmd, text=True, capture_output=True)
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))

    return _run


def local_streamer() -> Streamer:
    def _stream(cmd: list[str], on_line: Callable[[str], None]) -> int:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except FileNotFoundError:
            return 127
        assert proc.stdout is not None
        for line in proc.stdout:
            on_line(line.rstrip("\n"))
        return proc.wait()

    return _stream


def check_tcp(host: str, port: int, timeout: float) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            sock.connect((host, port))
            return True
        except OSError:
            return False


@dataclass(frozen=True)
class Mount:
    host: str
    container: str
    read_only: bool = False

    def arg(self) -> str:
        return f"{self.host}:{self.container}" + (":ro" if self.read_only else "")


@dataclass(frozen=True)
class ContainerSpec:
    image_ref: str
    env: dict[str, str]
    ports: tuple[int, ...] = PUBLISHED_PORTS
    mounts: tuple[Mount, ...] = ()
    host_dirs: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def tag(self) -> str:
        return self.image_ref.rsplit(":", 1)[-1]

    def run_args(self, name: str) -> list[str]:
        cmd = ["docker", "run", "-d", "--name", name, "--restart", "unless-stopped"]
        for port in self.ports:
            cmd += ["--publish", f"{port}:{port}"]
        for key, value in self.env.items():
            cmd += ["-e", f"{key}={value}"]
        for mount in self.mounts:
            cmd += ["-v", mount.arg()]
        cmd.append(self.image_ref)
        return cmd


def build_spec(cfg: DeploymentConfig, paths: PayramPaths) -> ContainerSpec:
    env = {
        "AES_KEY": cfg.AES_KEY,
        "BLOCKCHAIN_NETWORK_TYPE": cfg.NETWORK_TYPE,
        "SERVER": cfg.SERVER,
        "POSTGRES_SSLMODE": cfg.POSTGRES_SSLMODE,
        "POSTGRES_HOST": cfg.DB_HOST,
        "POSTGRES_PORT": cfg.DB_PORT,
        "POSTGRES_DATABASE": cfg.DB_NAME,
        "POSTGRES_USERNAME": cfg.DB_USER,
        "POSTGRES_PASSWORD": cfg.DB_PASSWORD,
        "SSL_CERT_PATH": cfg.SSL_CERT_PATH,
    }
    mounts = (
        Mount(str(paths.core_dir), "/root/payram"),
        Mount(str(paths.log_dir), "/var/log"),
        Mount(str(paths.postgres_dir), "/var/lib/payram/db/postgres"),
        Mount("/etc/letsencrypt", "/etc/letsencrypt", read_only=True),
    )
    return ContainerSpec(
        image_ref=cfg.image_ref,
        env=env,
        mounts=mounts,
        host_dirs=(paths.core_dir, paths.log_dir, paths.postgres_dir),
    )


class ContainerController:
    def __init__(
        self,
        name: str = CONTAINER_NAME,
        repository: str = IMAGE_REPOSITORY,
        *,
        runner: Runner | None = None,
        streamer: Streamer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        tcp_check: Callable[[str, int, float], bool] = check_tcp,
    ):
        self.name = name
        self.repository = repository
        self._run = runner or local_runner()
        self._stream = streamer or local_streamer()
        self._sleep = sleep
        self._tcp_check = tcp_check

    # --- queries ---
    def _names(self, *extra_filters: str) -> list[str]:
        cmd = ["docker", "ps", "-a", "--filter", f"name=^{self.name}$"]
        for flt in extra_filters:
            cmd += ["--filter", flt]
        cmd += ["--format", "{{.Names}}"]
        res = self._run(cmd)
        if res.returncode != 0:
            return []
        return [line.strip() for line in (res.stdout or "").splitlines() if line.strip()]

    def daemon_available(self) -> bool:
        return self._run(["docker", "info"]).returncode == 0

    def is_running(self) -> bool:
        return self.name in self._names("status=running")

    def exists(self) -> bool:
        return self.name in self._names()

    def status_line(self) -> str:
        res = self._run(["docker", "ps", "-a", "--filter", f"name=^{self.name}$", "--format", "{{.Status}}"])
        return (res.stdout or "").strip() if res.returncode == 0 else ""

    def image_ids(self) -> list[str]:
        res = self._run(["docker", "images", f"--filter=reference={self.repository}", "-q"])
        if res.returncode != 0:
            return []
        return sorted({line.strip() for line in (res.stdout or "").splitlines() if line.strip()})

    def recent_logs(self, tail: int = HEALTH_LOG_TAIL) -> str:
        res = self._run(["docker", "logs", "--tail", str(tail), self.name])
        # the app logs to stderr as often as stdout
        return "\n".join(part for part in ((res.stdout or "").strip(), (res.stderr or "").strip()) if part)

    def validate_tag(self, tag: str) -> bool:
        ref = f"{self.repository}:{tag}"
        console.info(f"Validating image tag {ref}...")
        res = self._run(["docker", "manifest", "inspect", ref])
        if res.returncode != 0:
            log.warning("tag %s rejected: %s", ref, (res.stderr or "").strip())
            console.err(f"Image tag '{tag}' not found in {self.repository}.")
            return False
        console.ok(f"Image tag '{tag}' is valid.")
        return True

    # --- mutations ---
    def stop(self) -> bool:
        return self._run(["docker", "stop", self.name]).returncode == 0

    def remove(self) -> bool:
        return self._run(["docker", "rm", "-v", self.name]).returncode == 0

    def start(self) -> bool:
        return self._run(["docker", "start", self.name]).returncode == 0

    def restart(self) -> bool:
        return self._run(["docker", "restart", self.name]).returncode == 0

    def remove_images(self) -> bool:
        ids = self.image_ids()
        if not ids:
            return True
        return self._run(["docker", "rmi", "-f", *ids]).returncode == 0

    def pull(self, image_ref: str) -> bool:
        console.info(f"Pulling {image_ref} (this may take several minutes)...")

        def _on_line(line: str) -> None:
            log.debug("pull: %s", line)
            if _PULL_DONE_RE.search(line):
                console.ok("Download completed.")
            elif _PULL_PROGRESS_RE.search(line):
                console.detail(line)

        return self._stream(["docker", "pull", image_ref], _on_line) == 0

    def deploy(self, spec: ContainerSpec, *, paths: PayramPaths | None = None) -> bool:
        """Start a fresh container from ``spec``.

        Returns False when a healthy instance was already running and left alone.
        """
        if not self.validate_tag(spec.tag):
            raise ContainerError(f"Cannot deploy: image tag '{spec.tag}' is invalid.")

        if self.is_running():
            console.warn(f"Container '{self.name}' is already running; leaving it untouched.")
            return False

        if self.exists():
            console.info(f"Removing stopped container '{self.name}'...")
            if not self.remove():
                console.warn(f"Could not remove stopped container '{self.name}'.")

        console.info(f"Cleaning up old {self.repository} images...")
        if not self.remove_images():
            console.warn("Some old images could not be removed (possibly in use).")

        if not self.pull(spec.image_ref):
            raise ContainerError(f"Failed to pull {spec.image_ref}. Check network access and the tag.")

        for directory in spec.host_dirs:
            directory.mkdir(parents=True, exist_ok=True)
        if paths is not None:
            hand_over(paths.core_dir, paths, recursive=True)

        console.info(f"Starting container '{self.name}'...")
        res = self._run(spec.run_args(self.name))
        if res.returncode != 0:
            log.error("docker run failed: %s", (res.stderr or "").strip())
            raise ContainerError(
                f"docker run failed: {(res.stderr or '').strip() or 'unknown error'}. "
                f"Check logs with: docker logs {self.name}"
            )

        self._sleep(START_SETTLE_SECONDS)
        if not self.is_running():
            raise ContainerError(f"Container '{self.name}' failed to start. Check logs with: docker logs {self.name}")
        console.ok(f"Container '{self.name}' is running ({spec.image_ref}).")
        return True

    def health_check(
        self,
        *,
        attempts: int = HEALTH_ATTEMPTS,
        interval: float = HEALTH_INTERVAL,
        port: int = API_PORT,
    ) -> bool:
        console.info("Performing application health check...")
        for attempt in range(1, attempts + 1):
            console.detail(f"Attempt {attempt}/{attempts}: checking application status")
            if not self.is_running():
                console.err("Container stopped unexpectedly.")
                return False

            logs = self.recent_logs()
            if _READY_RE.search(logs):
                if self._tcp_check("127.0.0.1", port, TCP_TIMEOUT):
                    console.ok(f"Application is up and port {port} accepts connections.")
                    return True
                console.detail(f"Application starting, port {port} not ready yet")
            elif _ERROR_RE.search(logs):
                console.err("Error detected in application logs:")
                for line in logs.splitlines()[-5:]:
                    console.detail(line)
                return False
            else:
                console.detail("Application still initializing")

            if attempt < attempts:
                self._sleep(interval)

        console.warn(f"Health check timed out; the application may still be starting. See: docker logs {self.name}")
        return False
