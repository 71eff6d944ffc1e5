from __future__ import annotations

import json
import subprocess
from pathlib import Path

import httpx
import pytest

from payram_client import GatewayClient
from payram_client.config_types import ClientConfig
from payram_setup.config import PayramPaths
from payram_setup.container import ContainerController

MANIFEST_YAML = """\
email: admin@example.com
password: s3cret
backend: https://api.example.com
frontend: https://pay.example.com
postal_endpoint: https://postal.example.com
postal_api_key: postal-key
webhook_key: fixed-webhook-key
projects:
  shop:
    name: My Shop
    website: https://shop.example.com
    successEndpoint: https://shop.example.com/thanks
    webhookEndpoint: https://shop.example.com/hook
blockchain:
  eth:
    client: geth
    server: https://eth.example.com
    explorer_tx_url: https://etherscan.io/tx/{tx}
    explorer_address_url: https://etherscan.io/address/{address}
    confirmations: 12
wallets:
  eth:
    xpub: xpub6CUGRUonZSQ4TWtTMmzXdrXDtypWKiKrhko4egpiMZbpiaQL2jkwSB1icqYh2cfDfVxdx4df189oLKnC5fSwqPfgyP3hooxujYzAu3fDVmz
    count: 5
configuration:
  payram.currency: USD
"""


def _done(cmd: list[str], code: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(cmd, code, stdout, stderr)


class FakeDocker:
    """Answers docker CLI calls from a tiny in-memory container model."""

    def __init__(self, *, running: bool = False, exists: bool | None = None, valid_tags=("1.6.3",)) -> None:
        self.running = running
        self.exists = running if exists is None else exists
        self.valid_tags = set(valid_tags)
        self.images = ["sha256-old"]
        self.logs = "INFO server started on :8080"
        self.fail: set[str] = set()
        self.calls: list[list[str]] = []

    def __call__(self, cmd: list[str]) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        if cmd[0] != "docker":
            return _done(cmd, 1 if cmd[0] in self.fail else 0)
        sub = cmd[1]
        if sub in self.fail:
            return _done(cmd, 1, stderr=f"{sub} failed")
        if sub == "ps":
            if cmd[-1] == "{{.Status}}":
                status = "Up 2 minutes" if self.running else ("Exited (0) 1 minute ago" if self.exists else "")
                return _done(cmd, 0, status)
            present = self.running if "status=running" in cmd else self.exists
            return _done(cmd, 0, "payram\n" if present else "")
        if sub == "manifest":
            tag = cmd[-1].rsplit(":", 1)[-1]
            if tag in self.valid_tags:
                return _done(cmd, 0, "{}")
            return _done(cmd, 1, stderr="no such manifest")
        if sub == "images":
            return _done(cmd, 0, "\n".join(self.images))
        if sub == "rmi":
            self.images = []
        elif sub == "stop":
            self.running = False
        elif sub == "rm":
            self.exists = False
        elif sub in ("start", "restart", "run"):
            self.running = self.exists = True
        elif sub == "logs":
            return _done(cmd, 0, self.logs)
        return _done(cmd)

    def stream(self, cmd: list[str], on_line) -> int:
        self.calls.append(list(cmd))
        if "pull" in self.fail:
            return 1
        on_line("Pulling fs layer")
        on_line("Status: Downloaded newer image")
        return 0

    def subcommands(self) -> list[str]:
        return [c[1] for c in self.calls if c and c[0] == "docker"]


class FakeGateway:
    """httpx.MockTransport handler with per-route canned answers.

    A route may map to a list of answers; they are served in order and the
    last one repeats.
    """

    DEFAULTS = {
        ("POST", "/signin"): (200, {"key": "session-key"}),
        ("POST", "/external-platform"): (201, {"id": 7}),
        ("POST", "/api-key"): (201, {"key": "pk_live_123"}),
    }

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[tuple[int, object]]] = {}

    def respond(self, method: str, path: str, *answers: tuple[int, object]) -> None:
        self.routes[(method, path)] = list(answers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        answers = self.routes.get(key)
        if answers:
            status, body = answers.pop(0) if len(answers) > 1 else answers[0]
        else:
            status, body = self.DEFAULTS.get(key, (200, {}))
        return httpx.Response(status, json=body)

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]

    def bodies(self, method: str, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if (r.method, r.url.path) == (method, path)]


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker(running=True)


@pytest.fixture
def controller(docker: FakeDocker) -> ContainerController:
    return ContainerController(
        runner=docker,
        streamer=docker.stream,
        sleep=lambda _s: None,
        tcp_check=lambda *_a: True,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(gateway: FakeGateway):
    c = GatewayClient(ClientConfig(base_url="http://gateway.test"), http_transport=httpx.MockTransport(gateway.handler))
    yield c
    c.close()


@pytest.fixture
def paths(tmp_path: Path) -> PayramPaths:
    return PayramPaths(home=tmp_path / "home", user="")


@pytest.fixture
def manifest_path(tmp_path: Path) -> Path:
    path = tmp_path / "manifest.yaml"
    path.write_text(MANIFEST_YAML, encoding="utf-8")
    return path
