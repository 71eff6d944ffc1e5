"""Idempotent provisioning of a running gateway through its REST API.

Every remote mutation is wrapped in a step guarded by a marker in the
:class:`~payram_setup.state_store.StateStore`. A marker is written only after
the step's last call answered 200/201, so a rerun resumes where the previous
run stopped and never repeats completed work.
"""
from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

from payram_client import ApiResponse, GatewayClient, redact_body

from . import console
from .container import ContainerController
from .manifest import (
    KEY_BACKEND,
    KEY_FRONTEND,
    KEY_POSTAL_API_KEY,
    KEY_POSTAL_ENDPOINT,
    KEY_WEBHOOK,
    KEY_WEBSOCKET,
    ConfigurationEntry,
    Manifest,
    ManifestError,
    ProjectDefinition,
    WalletKey,
    load_manifest,
)
from .state_store import MARKER_CONTAINER, MARKER_DEPENDENCIES, MARKER_RESTARTED, MARKER_SIGNUP, StateStore

log = logging.getLogger(__name__)

PROBE_ATTEMPTS = 12
PROBE_INTERVAL = 5.0
WEBHOOK_KEY_FILE = "webhook.key"
_BODY_PREVIEW = 500

Action = Callable[[], "ApiResponse | int"]


class StepOutcome(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunState(str, Enum):
    UNINITIALIZED = "uninitialized"
    MANIFEST_LOADED = "manifest_loaded"
    SIGNED_UP = "signed_up"
    AUTHENTICATED = "authenticated"
    CONFIG_APPLIED = "config_applied"
    PROJECTS_APPLIED = "projects_applied"
    BLOCKCHAIN_APPLIED = "blockchain_applied"
    WALLETS_APPLIED = "wallets_applied"
    TEMPLATES_APPLIED = "templates_applied"
    READY = "ready"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class StepResult:
    marker: str
    outcome: StepOutcome
    status: int | None = None


def file_slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def step_marker(kind: str, key: str) -> str:
    """Markers embed the manifest key verbatim so distinct keys never share one."""
    return f"{kind}_{key}_done"


def config_marker(key: str) -> str:
    return step_marker("config", key)


def project_marker(key: str) -> str:
    return step_marker("project", key)


def blockchain_marker(symbol: str) -> str:
    return step_marker("blockchain", symbol)


def wallet_marker(family: str) -> str:
    return step_marker("xpub", family)


def template_marker(name: str) -> str:
    return step_marker("template", name)


def websocket_url(backend: str) -> str:
    parts = urlsplit(backend.strip().rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    if not parts.netloc:
        # bare host without scheme
        return f"ws://{backend.strip().strip('/')}/ws"
    return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + "/ws", "", ""))


def fixed_entries(manifest: Manifest, webhook_key: str) -> list[ConfigurationEntry]:
    """Entries derived from top-level settings, applied after wallets."""
    return [
        ConfigurationEntry(KEY_BACKEND, manifest.get("backend")),
        ConfigurationEntry(KEY_FRONTEND, manifest.get("frontend")),
        ConfigurationEntry(KEY_WEBSOCKET, websocket_url(manifest.get("backend"))),
        ConfigurationEntry(KEY_POSTAL_ENDPOINT, manifest.get("postal_endpoint")),
        ConfigurationEntry(KEY_POSTAL_API_KEY, manifest.get("postal_api_key")),
        ConfigurationEntry(KEY_WEBHOOK, webhook_key),
    ]


def _status_of(result: ApiResponse | int) -> tuple[int, str]:
    if isinstance(result, ApiResponse):
        return result.status, redact_body(result.body)
    return int(result), ""


class StepExecutor:
    def __init__(self, store: StateStore):
        self.store = store

    def execute(self, marker: str, action: Action, *, description: str | None = None) -> StepResult:
        label = description or marker
        if self.store.has_completed(marker):
            console.detail(f"{label}: already done, skipping")
            return StepResult(marker, StepOutcome.SKIPPED)

        console.info(label)
        status, body = _status_of(action())
        if body:
            console.detail(f"response: {body[:_BODY_PREVIEW]}")
        console.detail(f"status: {status}")
        if status in (200, 201):
            self.store.mark_completed(marker)
            log.info("step %s succeeded (HTTP %s)", marker, status)
            return StepResult(marker, StepOutcome.SUCCEEDED, status)
        log.warning("step %s failed (HTTP %s): %s", marker, status, body[:_BODY_PREVIEW])
        console.warn(f"{label} failed (HTTP {status}); it will be retried on the next run.")
        return StepResult(marker, StepOutcome.FAILED, status)


@dataclass
class ProvisioningContext:
    store: StateStore
    client: GatewayClient
    container: ContainerController | None = None
    manifest_path: Path | None = None
    manifest: Manifest | None = None
    keys_dir: Path | None = None
    session_key: str | None = None
    probe_attempts: int = PROBE_ATTEMPTS
    probe_interval: float = PROBE_INTERVAL
    sleep: Callable[[float], None] = time.sleep


@dataclass
class RunResult:
    state: RunState
    steps: list[StepResult] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    reason: str = ""
    recovery: str = ""

    @property
    def exit_code(self) -> int:
        if self.state is RunState.READY:
            return 0
        # 3: incomplete, rerun resumes the missing steps
        return 3 if self.state is RunState.INCOMPLETE else 1

    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.outcome is StepOutcome.FAILED]


class ProvisioningAborted(Exception):
    def __init__(self, reason: str, recovery: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.recovery = recovery


class ProvisioningRun:
    def __init__(self, ctx: ProvisioningContext):
        self.ctx = ctx
        self.executor = StepExecutor(ctx.store)
        self.state = RunState.UNINITIALIZED
        self.steps: list[StepResult] = []
        self._fixed: list[ConfigurationEntry] = []

    # --- helpers ---
    @property
    def manifest(self) -> Manifest:
        assert self.ctx.manifest is not None
        return self.ctx.manifest

    def _step(self, marker: str, action: Action, description: str) -> StepResult:
        result = self.executor.execute(marker, action, description=description)
        self.steps.append(result)
        return result

    def _finish(self, state: RunState, **kwargs) -> RunResult:
        self.state = state
        return RunResult(state=state, steps=self.steps, **kwargs)

    def remote_markers(self) -> list[str]:
        """Markers of every remote step after sign-in, in execution order."""
        m = self.manifest
        markers = [config_marker(e.key) for e in m.configuration]
        markers += [project_marker(p.key) for p in m.projects]
        markers += [blockchain_marker(c.symbol) for c in m.blockchains if c.is_complete]
        markers += [wallet_marker(w.family) for w in m.wallets if w.xpub]
        markers += [config_marker(e.key) for e in self._fixed]
        markers += [template_marker(name) for name in m.email_templates]
        return list(dict.fromkeys(markers))

    def required_markers(self) -> list[str]:
        return [MARKER_DEPENDENCIES, MARKER_CONTAINER, MARKER_SIGNUP, *self.remote_markers()]

    # --- state machine ---
    def run(self) -> RunResult:
        try:
            self._load_manifest()
            self._sign_up()
            if self.ctx.store.missing(self.remote_markers()):
                self._sign_in()
                self._apply_configuration(self.manifest.configuration)
                self.state = RunState.CONFIG_APPLIED
                self._apply_projects()
                self._apply_blockchains()
                self._apply_wallets()
                self._apply_templates()
            else:
                console.ok("All provisioning steps already completed.")
                self.state = RunState.TEMPLATES_APPLIED
        except ManifestError as exc:
            return self._finish(
                RunState.FAILED,
                reason="Manifest is invalid: " + "; ".join(exc.problems),
                recovery="Fix the manifest and rerun.",
            )
        except ProvisioningAborted as exc:
            return self._finish(RunState.FAILED, reason=exc.reason, recovery=exc.recovery)
        return self._readiness_gate()

    def _load_manifest(self) -> None:
        if self.ctx.manifest is None:
            if self.ctx.manifest_path is None:
                raise ManifestError(["no manifest given"])
            self.ctx.manifest = load_manifest(self.ctx.manifest_path)
        webhook_key = self.manifest.get("webhook_key")
        if not webhook_key and not self.ctx.store.has_completed(config_marker(KEY_WEBHOOK)):
            webhook_key = self._generated_webhook_key()
        self._fixed = fixed_entries(self.ctx.manifest, webhook_key)
        self.state = RunState.MANIFEST_LOADED

    def _generated_webhook_key(self) -> str:
        """A random webhook key, kept next to the project keys so reruns push the same value."""
        path = self.ctx.keys_dir / WEBHOOK_KEY_FILE if self.ctx.keys_dir is not None else None
        if path is not None and path.is_file():
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.startswith("WEBHOOK_KEY="):
                    return line[len("WEBHOOK_KEY=") :]
        key = os.urandom(32).hex()
        console.ok(f"Generated webhook key (merchants verify webhooks with it): {key}")
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"WEBHOOK_KEY={key}\n")
            console.detail(f"saved to {path}")
        return key

    def _sign_up(self) -> None:
        m = self.manifest
        result = self._step(
            MARKER_SIGNUP,
            lambda: self.ctx.client.signup(email=m.get("email"), password=m.get("password")),
            "Creating root account",
        )
        if result.outcome is StepOutcome.FAILED:
            raise ProvisioningAborted(
                f"Signup was rejected (HTTP {result.status}).",
                "Check the gateway logs (docker logs payram); if the account already exists, "
                f"append '{MARKER_SIGNUP}' to the state file and rerun.",
            )
        self.state = RunState.SIGNED_UP

    def _sign_in(self) -> None:
        m = self.manifest
        console.info("Signing in")
        res = self.ctx.client.signin(email=m.get("email"), password=m.get("password"))
        console.detail(f"status: {res.status}")
        key = res.field("key") if res.ok else None
        if not isinstance(key, str) or not key:
            raise ProvisioningAborted(
                f"Sign-in failed (HTTP {res.status}); no API key returned.",
                "Verify email/password in the manifest match the root account and rerun.",
            )
        self.ctx.session_key = key
        self.ctx.client.use_api_key(key)
        self.state = RunState.AUTHENTICATED

    def _apply_configuration(self, entries: Iterable[ConfigurationEntry]) -> None:
        for entry in entries:
            self._step(
                config_marker(entry.key),
                lambda entry=entry: self.ctx.client.set_configuration(entry.key, entry.value),
                f"Configuring {entry.key}",
            )

    def _apply_projects(self) -> None:
        for project in self.manifest.projects:
            self._step(
                project_marker(project.key),
                lambda project=project: self._create_project(project),
                f"Creating project {project.name}",
            )
        self.state = RunState.PROJECTS_APPLIED

    def _create_project(self, project: ProjectDefinition) -> ApiResponse:
        client = self.ctx.client
        created = client.create_external_platform(
            name=project.name,
            website=project.website,
            success_endpoint=project.success_endpoint,
            webhook_endpoint=project.webhook_endpoint,
        )
        if not created.ok:
            return created
        platform_id = created.field("id")
        if isinstance(platform_id, str) and platform_id.isdigit():
            platform_id = int(platform_id)
        if not isinstance(platform_id, int) or isinstance(platform_id, bool):
            console.warn(f"Project {project.name}: response carried no numeric id.")
            return ApiResponse(status=0, body=created.body)
        minted = client.create_api_key(platform_id)
        if minted.ok:
            self._store_api_key(project, platform_id, minted)
        return minted

    def _store_api_key(self, project: ProjectDefinition, platform_id: int, minted: ApiResponse) -> None:
        api_key = minted.field("key") or minted.field("apiKey")
        if not isinstance(api_key, str) or not api_key:
            return
        console.ok(f"Project {project.name} (id {platform_id}) API key: {api_key}")
        if self.ctx.keys_dir is None:
            return
        self.ctx.keys_dir.mkdir(parents=True, exist_ok=True)
        path = self.ctx.keys_dir / f"{file_slug(project.key)}_{platform_id}.key"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"PLATFORM_ID={platform_id}\nAPI_KEY={api_key}\n")
        console.detail(f"saved to {path}")

    def _apply_blockchains(self) -> None:
        for chain in self.manifest.blockchains:
            if not chain.is_complete:
                console.warn(f"Skipping blockchain {chain.symbol}: missing {', '.join(chain.missing_fields)}")
                continue
            self._step(
                blockchain_marker(chain.symbol),
                lambda chain=chain: self.ctx.client.update_blockchain(chain.symbol, chain.payload()),
                f"Configuring blockchain {chain.symbol}",
            )
        self.state = RunState.BLOCKCHAIN_APPLIED

    def _apply_wallets(self) -> None:
        for wallet in self.manifest.wallets:
            if not wallet.xpub:
                console.warn(f"Skipping wallet {wallet.family}: no xpub configured")
                continue
            self._step(
                wallet_marker(wallet.family),
                lambda wallet=wallet: self._register_wallet(wallet),
                f"Registering {wallet.family} xpub and generating {wallet.count} addresses",
            )
        self.state = RunState.WALLETS_APPLIED

    def _register_wallet(self, wallet: WalletKey) -> ApiResponse:
        registered = self.ctx.client.register_xpub(wallet.family, wallet.xpub)
        if not registered.ok:
            return registered
        return self.ctx.client.generate_addresses(wallet.family, wallet.count)

    def _apply_templates(self) -> None:
        self._apply_configuration(self._fixed)
        for name, body in self.manifest.email_templates.items():
            self._step(
                template_marker(name),
                lambda name=name, body=body: self.ctx.client.set_configuration(f"email.template.{name}", body),
                f"Uploading email template {name}",
            )
        self.state = RunState.TEMPLATES_APPLIED

    def _readiness_gate(self) -> RunResult:
        store = self.ctx.store
        missing = store.missing(self.required_markers())
        if missing:
            console.warn("Provisioning incomplete; missing steps: " + ", ".join(missing))
            return self._finish(
                RunState.INCOMPLETE,
                missing=missing,
                reason="Some provisioning steps have not completed yet.",
                recovery="Rerun the same command; completed steps are skipped.",
            )
        if store.has_completed(MARKER_RESTARTED):
            console.ok("Gateway already restarted with provisioned configuration.")
            return self._finish(RunState.READY)

        container = self.ctx.container
        if container is None or not container.is_running():
            return self._finish(
                RunState.INCOMPLETE,
                reason="Container is not running; skipped the final restart.",
                recovery="Start it with `payram-setup restart`, then rerun.",
            )

        console.info("Restarting container to apply provisioned configuration...")
        if not container.restart():
            return self._finish(
                RunState.FAILED,
                reason="docker restart failed.",
                recovery=f"Inspect with: docker logs {container.name}, then rerun.",
            )
        for attempt in range(1, self.ctx.probe_attempts + 1):
            status = self.ctx.client.probe_root()
            console.detail(f"readiness probe {attempt}/{self.ctx.probe_attempts}: HTTP {status}")
            if status == 200:
                store.mark_completed(MARKER_RESTARTED)
                console.ok("Gateway is ready.")
                return self._finish(RunState.READY)
            if attempt < self.ctx.probe_attempts:
                self.ctx.sleep(self.ctx.probe_interval)
        return self._finish(
            RunState.FAILED,
            reason="Gateway did not answer HTTP 200 after restart.",
            recovery=f"Check docker logs {container.name}; rerun to retry only the readiness probe.",
        )
