from __future__ import annotations

from pathlib import Path

import typer

from .. import console
from ..config import PayramPaths, resolve_paths
from ..container import ContainerController
from ..http import make_client
from ..lock import LockBusy, run_lock
from ..manifest import Manifest
from ..provisioning import ProvisioningContext, ProvisioningRun, RunResult, RunState, StepOutcome
from ..state_store import StateStore

_OUTCOME_STYLE = {
    StepOutcome.SUCCEEDED: "[green]ok[/]",
    StepOutcome.SKIPPED: "[dim]skip[/]",
    StepOutcome.FAILED: "[red]failed[/]",
}


def api_keys_dir(paths: PayramPaths) -> Path:
    return paths.info_dir / "api-keys"


def run_provisioning(
    paths: PayramPaths,
    manifest_path: Path,
    *,
    manifest: Manifest | None = None,
    container: ContainerController | None = None,
) -> RunResult:
    console.rule("Provisioning")
    client = make_client()
    try:
        ctx = ProvisioningContext(
            store=StateStore(paths.state_file),
            client=client,
            container=container or ContainerController(),
            manifest_path=manifest_path,
            manifest=manifest,
            keys_dir=api_keys_dir(paths),
        )
        result = ProvisioningRun(ctx).run()
    finally:
        client.close()
    report(result)
    return result


def report(result: RunResult) -> None:
    for step in result.steps:
        status = f" (HTTP {step.status})" if step.outcome is not StepOutcome.SKIPPED else ""
        console.print(f"  {_OUTCOME_STYLE[step.outcome]:<22} {step.marker}{status}")
    if result.state is RunState.READY:
        console.ok("Provisioning finished; the gateway is ready.")
        return
    label = "incomplete" if result.state is RunState.INCOMPLETE else "failed"
    console.err(f"Provisioning {label}: {result.reason}")
    if result.missing:
        console.detail("Missing: " + ", ".join(result.missing))
    if result.recovery:
        console.info(result.recovery)


def provision(
    manifest: Path = typer.Option(..., "--manifest", "-m", help="Provisioning manifest (YAML)."),
) -> None:
    """Apply a manifest to an already deployed gateway.

    Exit codes: 0 ready, 1 failed or cancelled, 2 invalid usage or manifest,
    3 incomplete (some steps failed; rerun to resume).
    """
    paths = resolve_paths()
    try:
        with run_lock(paths.lock_file):
            result = run_provisioning(paths, manifest)
    except LockBusy as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    if result.exit_code:
        raise typer.Exit(code=result.exit_code)
