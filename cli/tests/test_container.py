import pytest

from conftest import FakeDocker
from payram_setup.config import DeploymentConfig
from payram_setup.container import ContainerController, ContainerError, ContainerSpec, Mount, build_spec


def _controller(docker: FakeDocker, *, tcp_ok: bool = True, sleeps: list | None = None) -> ContainerController:
    return ContainerController(
        runner=docker,
        streamer=docker.stream,
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
        tcp_check=lambda *_a: tcp_ok,
    )


def _spec(tag: str = "1.6.3") -> ContainerSpec:
    return ContainerSpec(image_ref=f"payramapp/payram:{tag}", env={"AES_KEY": "k"}, mounts=(Mount("/data", "/root/payram"),))


def test_run_args_publish_ports_and_mounts() -> None:
    args = _spec().run_args("payram")
    assert args[:4] == ["docker", "run", "-d", "--name"]
    assert "8443:8443" in args
    assert "AES_KEY=k" in args
    assert "/data:/root/payram" in args
    assert args[-1] == "payramapp/payram:1.6.3"


def test_build_spec_env_contract(paths) -> None:
    cfg = DeploymentConfig(IMAGE_TAG="1.7.0", AES_KEY="aes", DB_PASSWORD="pw")
    cfg.use_testnet(True)
    spec = build_spec(cfg, paths)

    assert spec.image_ref == "payramapp/payram:1.7.0"
    assert spec.tag == "1.7.0"
    assert spec.env["BLOCKCHAIN_NETWORK_TYPE"] == "testnet"
    assert spec.env["SERVER"] == "DEVELOPMENT"
    assert spec.env["POSTGRES_PASSWORD"] == "pw"
    assert Mount("/etc/letsencrypt", "/etc/letsencrypt", read_only=True) in spec.mounts


def test_deploy_replaces_stopped_container(tmp_path) -> None:
    docker = FakeDocker(running=False, exists=True)
    spec = ContainerSpec(image_ref="payramapp/payram:1.6.3", env={}, host_dirs=(tmp_path / "core",))
    assert _controller(docker).deploy(spec) is True

    subs = docker.subcommands()
    assert subs.index("manifest") < subs.index("rm") < subs.index("rmi") < subs.index("pull") < subs.index("run")
    assert (tmp_path / "core").is_dir()
    assert docker.running


def test_deploy_leaves_running_container_alone() -> None:
    docker = FakeDocker(running=True)
    assert _controller(docker).deploy(_spec()) is False
    assert "run" not in docker.subcommands()
    assert "rm" not in docker.subcommands()


def test_deploy_rejects_unknown_tag_before_touching_anything() -> None:
    docker = FakeDocker(running=False, exists=True)
    with pytest.raises(ContainerError):
        _controller(docker).deploy(_spec("bad-tag"))
    assert docker.subcommands() == ["manifest"]


def test_deploy_reports_pull_failure() -> None:
    docker = FakeDocker(running=False)
    docker.fail.add("pull")
    with pytest.raises(ContainerError, match="pull"):
        _controller(docker).deploy(_spec())
    assert "run" not in docker.subcommands()


def test_deploy_reports_container_that_exits_immediately() -> None:
    docker = FakeDocker(running=False)
    original = docker.__call__

    def _dies_after_run(cmd):
        res = original(cmd)
        if cmd[1] == "run":
            docker.running = False
        return res

    controller = ContainerController(runner=_dies_after_run, streamer=docker.stream, sleep=lambda _s: None)
    with pytest.raises(ContainerError, match="docker logs payram"):
        controller.deploy(_spec())


def test_health_check_passes_when_logs_ready_and_port_open() -> None:
    assert _controller(FakeDocker(running=True)).health_check(attempts=2, interval=0) is True


def test_health_check_stops_on_error_logs() -> None:
    docker = FakeDocker(running=True)
    docker.logs = "FATAL could not connect to database"
    sleeps: list = []
    assert _controller(docker, sleeps=sleeps).health_check(attempts=6, interval=10) is False
    assert sleeps == []


def test_health_check_times_out_softly() -> None:
    sleeps: list = []
    docker = FakeDocker(running=True)
    assert _controller(docker, tcp_ok=False, sleeps=sleeps).health_check(attempts=3, interval=10) is False
    assert sleeps == [10, 10]


def test_health_check_fails_when_container_stopped() -> None:
    assert _controller(FakeDocker(running=False)).health_check(attempts=3, interval=0) is False
