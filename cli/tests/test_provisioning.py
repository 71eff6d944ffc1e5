import logging
import os
import stat

import httpx

from conftest import FakeGateway
from payram_client import GatewayClient
from payram_client.config_types import ClientConfig
from payram_setup.provisioning import (
    ProvisioningContext,
    ProvisioningRun,
    RunState,
    StepOutcome,
    blockchain_marker,
    config_marker,
    project_marker,
    wallet_marker,
    websocket_url,
)
from payram_setup.state_store import MARKER_CONTAINER, MARKER_DEPENDENCIES, MARKER_RESTARTED, StateStore

EXPECTED_FIRST_RUN = [
    ("POST", "/signup"),
    ("POST", "/signin"),
    ("POST", "/configuration"),
    ("POST", "/external-platform"),
    ("POST", "/api-key"),
    ("PUT", "/blockchain/ETH"),
    ("POST", "/blockchain-family/ETH/xpub"),
    ("POST", "/blockchain-family/ETH/generate"),
] + [("POST", "/configuration")] * 6 + [("GET", "/")]


def _store(tmp_path) -> StateStore:
    store = StateStore(tmp_path / "state.txt")
    store.mark_completed(MARKER_DEPENDENCIES)
    store.mark_completed(MARKER_CONTAINER)
    return store


def _client(gateway: FakeGateway) -> GatewayClient:
    return GatewayClient(ClientConfig(base_url="http://gateway.test"), http_transport=httpx.MockTransport(gateway.handler))


def _run(tmp_path, store, client, controller, manifest_path, **kwargs):
    ctx = ProvisioningContext(
        store=store,
        client=client,
        container=controller,
        manifest_path=manifest_path,
        keys_dir=tmp_path / "api-keys",
        probe_interval=0,
        sleep=lambda _s: None,
        **kwargs,
    )
    return ProvisioningRun(ctx).run()


def test_first_run_reaches_ready(tmp_path, client, gateway, controller, docker, manifest_path) -> None:
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.READY
    assert result.exit_code == 0
    assert gateway.calls() == EXPECTED_FIRST_RUN
    assert "restart" in docker.subcommands()
    assert store.has_completed(MARKER_RESTARTED)
    assert store.has_completed(project_marker("shop"))
    assert store.has_completed(config_marker("payram.websocketServerUrl"))


def test_session_key_is_sent_only_after_sign_in(tmp_path, client, gateway, controller, manifest_path) -> None:
    _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    signup, signin, first_config = gateway.requests[:3]
    assert "API-Key" not in signup.headers
    assert "API-Key" not in signin.headers
    assert first_config.headers["API-Key"] == "session-key"


def test_request_bodies(tmp_path, client, gateway, controller, manifest_path) -> None:
    _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    assert gateway.bodies("POST", "/api-key") == [{"externalPlatformID": 7, "role": "admin"}]
    assert gateway.bodies("POST", "/blockchain-family/ETH/generate") == [{"count": 5}]
    configs = {b["key"]: b["value"] for b in gateway.bodies("POST", "/configuration")}
    assert configs["payram.currency"] == "USD"
    assert configs["payram.websocketServerUrl"] == "wss://api.example.com/ws"
    assert configs["payram.webhookKey"] == "fixed-webhook-key"
    assert configs["postal.apiKey"] == "postal-key"


def test_minted_api_key_is_saved_privately(tmp_path, client, controller, manifest_path) -> None:
    _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    key_file = tmp_path / "api-keys" / "shop_7.key"
    assert key_file.read_text(encoding="utf-8") == "PLATFORM_ID=7\nAPI_KEY=pk_live_123\n"
    assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600


def test_rerun_after_success_issues_no_requests(tmp_path, client, controller, docker, manifest_path) -> None:
    store = _store(tmp_path)
    _run(tmp_path, store, client, controller, manifest_path)
    docker.calls.clear()

    second = FakeGateway()
    result = _run(tmp_path, StateStore(store.path), _client(second), controller, manifest_path)

    assert result.state is RunState.READY
    assert result.exit_code == 0
    assert second.requests == []
    assert "restart" not in docker.subcommands()
    assert all(step.outcome is StepOutcome.SKIPPED for step in result.steps)


def test_signup_rejection_halts_the_run(tmp_path, client, gateway, controller, docker, manifest_path) -> None:
    gateway.respond("POST", "/signup", (400, {"error": "bad request"}))
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.FAILED
    assert result.exit_code != 0
    assert gateway.calls() == [("POST", "/signup")]
    assert result.recovery
    assert store.markers() == [MARKER_DEPENDENCIES, MARKER_CONTAINER]
    assert "restart" not in docker.subcommands()


def test_sign_in_without_key_is_fatal(tmp_path, client, gateway, controller, manifest_path) -> None:
    gateway.respond("POST", "/signin", (200, {"message": "welcome"}))
    result = _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    assert result.state is RunState.FAILED
    assert gateway.calls() == [("POST", "/signup"), ("POST", "/signin")]


def test_one_rejected_config_entry_does_not_stop_later_steps(
    tmp_path, client, gateway, controller, docker, manifest_path
) -> None:
    gateway.respond("POST", "/configuration", (500, {"error": "boom"}), (200, {}))
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.INCOMPLETE
    assert result.exit_code == 3
    assert result.missing == [config_marker("payram.currency")]
    assert [s.marker for s in result.failed_steps()] == [config_marker("payram.currency")]
    assert store.has_completed(project_marker("shop"))
    assert store.has_completed(config_marker("postal.endpoint"))
    assert "restart" not in docker.subcommands()

    second = FakeGateway()
    rerun = _run(tmp_path, StateStore(store.path), _client(second), controller, manifest_path)

    assert rerun.state is RunState.READY
    assert second.calls() == [("POST", "/signin"), ("POST", "/configuration"), ("GET", "/")]


def test_project_without_minted_key_is_retried_whole(tmp_path, client, gateway, controller, manifest_path) -> None:
    gateway.respond("POST", "/api-key", (500, {"error": "later"}))
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.INCOMPLETE
    assert not store.has_completed(project_marker("shop"))

    second = FakeGateway()
    _run(tmp_path, StateStore(store.path), _client(second), controller, manifest_path)
    assert second.calls().count(("POST", "/external-platform")) == 1
    assert StateStore(store.path).has_completed(project_marker("shop"))


def test_invalid_manifest_makes_no_requests(tmp_path, client, gateway, controller) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text(
        "email: a@b.c\npassword: p\nbackend: https://b\nfrontend: https://f\n"
        "postal_endpoint: https://p\npostal_api_key: k\n"
        "projects:\n  shop:\n    name: Shop\n    website: https://s\n    successEndpoint: https://s/ok\n",
        encoding="utf-8",
    )
    store = StateStore(tmp_path / "state.txt")
    result = _run(tmp_path, store, client, controller, path)

    assert result.state is RunState.FAILED
    assert "webhookEndpoint" in result.reason
    assert gateway.requests == []
    assert not store.path.exists()


def test_stopped_container_leaves_run_incomplete(tmp_path, client, gateway, controller, docker, manifest_path) -> None:
    docker.running = False
    result = _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    assert result.state is RunState.INCOMPLETE
    assert ("GET", "/") not in gateway.calls()


def test_missing_deploy_marker_leaves_run_incomplete(tmp_path, client, controller, manifest_path) -> None:
    store = StateStore(tmp_path / "state.txt")
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.INCOMPLETE
    assert result.missing == [MARKER_DEPENDENCIES, MARKER_CONTAINER]


def test_readiness_probe_exhaustion_fails(tmp_path, client, gateway, controller, manifest_path) -> None:
    gateway.respond("GET", "/", (502, {}))
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path, probe_attempts=3)

    assert result.state is RunState.FAILED
    assert gateway.calls().count(("GET", "/")) == 3
    assert not store.has_completed(MARKER_RESTARTED)


def test_websocket_url() -> None:
    assert websocket_url("https://api.example.com") == "wss://api.example.com/ws"
    assert websocket_url("http://10.0.0.5:8080/") == "ws://10.0.0.5:8080/ws"
    assert websocket_url("api.example.com") == "ws://api.example.com/ws"


def test_distinct_configuration_keys_get_distinct_markers(tmp_path, client, gateway, controller, manifest_path) -> None:
    path = tmp_path / "cased.yaml"
    path.write_text(
        manifest_path.read_text(encoding="utf-8").replace(
            "  payram.currency: USD\n",
            "  payram.currency: USD\n  payram_currency: EUR\n  Payram.Currency: GBP\n",
        ),
        encoding="utf-8",
    )
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, path)

    assert result.state is RunState.READY
    configs = {b["key"]: b["value"] for b in gateway.bodies("POST", "/configuration")}
    assert (configs["payram.currency"], configs["payram_currency"], configs["Payram.Currency"]) == ("USD", "EUR", "GBP")
    markers = {config_marker("payram.currency"), config_marker("payram_currency"), config_marker("Payram.Currency")}
    assert len(markers) == 3
    assert markers <= set(store.markers())


def test_wallet_with_failed_generation_is_retried_whole(tmp_path, client, gateway, controller, manifest_path) -> None:
    gateway.respond("POST", "/blockchain-family/ETH/generate", (500, {"error": "busy"}))
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, manifest_path)

    assert result.state is RunState.INCOMPLETE
    assert ("POST", "/blockchain-family/ETH/xpub") in gateway.calls()
    assert not store.has_completed(wallet_marker("ETH"))
    assert result.missing == [wallet_marker("ETH")]

    second = FakeGateway()
    rerun = _run(tmp_path, StateStore(store.path), _client(second), controller, manifest_path)

    assert rerun.state is RunState.READY
    assert second.calls() == [
        ("POST", "/signin"),
        ("POST", "/blockchain-family/ETH/xpub"),
        ("POST", "/blockchain-family/ETH/generate"),
        ("GET", "/"),
    ]
    assert StateStore(store.path).has_completed(wallet_marker("ETH"))


def test_incomplete_blockchain_is_skipped_and_not_required(tmp_path, client, gateway, controller, manifest_path) -> None:
    path = tmp_path / "no-server.yaml"
    path.write_text(
        manifest_path.read_text(encoding="utf-8").replace("    server: https://eth.example.com\n", ""),
        encoding="utf-8",
    )
    store = _store(tmp_path)
    result = _run(tmp_path, store, client, controller, path)

    assert result.state is RunState.READY
    assert ("PUT", "/blockchain/ETH") not in gateway.calls()
    assert not store.has_completed(blockchain_marker("ETH"))
    assert store.has_completed(MARKER_RESTARTED)


def test_generated_webhook_key_is_saved_and_reused(tmp_path, client, gateway, controller, manifest_path) -> None:
    path = tmp_path / "no-webhook.yaml"
    path.write_text(
        manifest_path.read_text(encoding="utf-8").replace("webhook_key: fixed-webhook-key\n", ""),
        encoding="utf-8",
    )
    store = _store(tmp_path)
    _run(tmp_path, store, client, controller, path)

    key_file = tmp_path / "api-keys" / "webhook.key"
    assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600
    saved = key_file.read_text(encoding="utf-8").strip().removeprefix("WEBHOOK_KEY=")
    configs = {b["key"]: b["value"] for b in gateway.bodies("POST", "/configuration")}
    assert len(saved) == 64
    assert configs["payram.webhookKey"] == saved


def test_webhook_key_survives_a_failed_push(tmp_path, client, gateway, controller, manifest_path) -> None:
    path = tmp_path / "no-webhook.yaml"
    path.write_text(
        manifest_path.read_text(encoding="utf-8").replace("webhook_key: fixed-webhook-key\n", ""),
        encoding="utf-8",
    )
    # payram.currency, then the five fixed entries before the webhook key
    gateway.respond("POST", "/configuration", *([(200, {})] * 6 + [(500, {}), (500, {})]))
    store = _store(tmp_path)
    first = _run(tmp_path, store, client, controller, path)
    assert first.missing == [config_marker("payram.webhookKey")]

    second = FakeGateway()
    _run(tmp_path, StateStore(store.path), _client(second), controller, path)

    saved = (tmp_path / "api-keys" / "webhook.key").read_text(encoding="utf-8").strip().removeprefix("WEBHOOK_KEY=")
    assert second.bodies("POST", "/configuration") == [{"key": "payram.webhookKey", "value": saved}]


def test_api_keys_never_reach_the_log(tmp_path, client, controller, manifest_path, caplog) -> None:
    with caplog.at_level(logging.DEBUG):
        _run(tmp_path, _store(tmp_path), client, controller, manifest_path)

    assert "Sign in root user: status=200" in caplog.text
    assert "session-key" not in caplog.text
    assert "pk_live_123" not in caplog.text
