"""
원격 배포 모듈 테스트 (FakeRemote 사용)
"""

import threading

import pytest

from conftest import wait_until
from tunnel_agent.deployer import Deployer
from tunnel_agent.exceptions import (
    AlreadyConnected, Cancelled, DependencyUnavailable, DeploymentError, HealthCheckError,
    InvalidKey, NotConnected, OutOfRange, PrivilegeError
)
from tunnel_agent.installer import InstallStrategy
from tunnel_agent.keys import generate_keypair


class Available(InstallStrategy):
    name = "stub"

    def attempt(self, shell, info):
        return self.ok("already installed")


class Unavailable(InstallStrategy):
    name = "stub"

    def attempt(self, shell, info):
        return self.fail("nothing works")


def make_deployer(remote, strategies=None, output=None):
    return Deployer(
        output=output or (lambda line: None),
        strategies=strategies if strategies is not None else [Available()],
        executor_factory=lambda target: remote,
        poll_interval=0.001,
        heartbeat_interval=0.01,
    )


@pytest.fixture
def deployer(remote, target):
    d = make_deployer(remote)
    d.connect(target)
    yield d
    d.disconnect()


def start_in_thread(deployer, endpoint_config, cancel):
    errors = []

    def serve():
        try:
            deployer.start_server("/tmp/vpn-server", endpoint_config, cancel)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    return thread, errors


def test_operations_require_connection(remote, target, endpoint_config):
    """connect() 전에는 모든 작업이 NotConnected"""
    d = make_deployer(remote)
    with pytest.raises(NotConnected):
        d.deploy(target, endpoint_config)
    with pytest.raises(NotConnected):
        d.get_server_status()
    with pytest.raises(NotConnected):
        d.check_health()
    assert remote.commands == []


def test_connect_twice(deployer, target):
    with pytest.raises(AlreadyConnected):
        deployer.connect(target)


def test_disconnect_closes_session(remote, target):
    d = make_deployer(remote)
    d.connect(target)
    d.disconnect()
    assert remote.closed
    assert d.connected == False
    with pytest.raises(NotConnected):
        d.stop_server()


def test_deploy_uploads_binary_and_config(deployer, remote, target, endpoint_config):
    info = deployer.deploy(target, endpoint_config)

    assert info.listen_port == 51821
    assert info.server_public_key == endpoint_config.public_key
    assert info.binary_path == "/tmp/vpn-server/tunnel-endpoint"
    assert info.config_path == "/tmp/vpn-server/server-config.yaml"
    assert info.log_file == "/tmp/vpn-server/server.log"

    assert remote.files[info.binary_path] == b"\x7fELF fake endpoint"
    assert remote.modes[info.config_path] == 0o600
    assert b"listen_port: 51821" in remote.files[info.config_path]
    assert remote.ran("chmod +x /tmp/vpn-server/tunnel-endpoint")
    assert remote.ran("mkdir -p /tmp/vpn-server")


def test_deploy_dependency_unavailable(remote, target, endpoint_config):
    d = make_deployer(remote, strategies=[Unavailable()])
    d.connect(target)
    with pytest.raises(DependencyUnavailable) as exc:
        d.deploy(target, endpoint_config)
    assert "stub: nothing works" in str(exc.value)
    assert remote.files == {}


def test_deploy_chmod_failure(deployer, remote, target, endpoint_config):
    remote.on("chmod +x", exit_code=1, stderr="Operation not permitted")
    with pytest.raises(DeploymentError) as exc:
        deployer.deploy(target, endpoint_config)
    assert "Operation not permitted" in str(exc.value)


def test_redeploy_leaves_single_process(deployer, remote, target, endpoint_config):
    """재배포는 이전 프로세스를 정리하므로 항상 하나만 실행"""
    deployer.deploy(target, endpoint_config)
    first_cancel = threading.Event()
    thread, _ = start_in_thread(deployer, endpoint_config, first_cancel)
    assert wait_until(lambda: len(remote.processes) == 1)

    deployer.deploy(target, endpoint_config)
    assert remote.processes == []
    assert remote.ran("pkill -TERM -x tunnel-endpoint")

    second_cancel = threading.Event()
    second, _ = start_in_thread(deployer, endpoint_config, second_cancel)
    assert wait_until(lambda: len(remote.processes) == 1)

    first_cancel.set()
    second_cancel.set()
    thread.join(5)
    second.join(5)
    assert remote.processes == []


def test_start_server_requires_passwordless_sudo(deployer, remote, endpoint_config):
    remote.on("sudo -n true", exit_code=1)
    with pytest.raises(PrivilegeError) as exc:
        deployer.start_server("/tmp/vpn-server", endpoint_config)
    message = str(exc.value)
    assert "ops ALL=(ALL) NOPASSWD: ALL" in message
    assert "ssh 192.168.1.50" in message
    assert remote.ran("setsid") == []


def test_start_server_binary_not_executable(deployer, remote, endpoint_config):
    remote.on("test -x", exit_code=1)
    with pytest.raises(DeploymentError):
        deployer.start_server("/tmp/vpn-server", endpoint_config)
    assert remote.ran("setsid") == []


def test_start_server_nonzero_exit(deployer, remote, endpoint_config):
    remote.server_exit_code = 2
    remote.server_output = ["starting endpoint", "ERROR: failed to create interface"]
    with pytest.raises(DeploymentError) as exc:
        deployer.start_server("/tmp/vpn-server", endpoint_config)
    assert "exit code 2" in str(exc.value)
    assert "failed to create interface" in exc.value.output


def test_start_server_streams_output(remote, target, endpoint_config):
    lines = []
    d = make_deployer(remote, output=lines.append)
    d.connect(target)
    d.start_server("/tmp/vpn-server", endpoint_config)
    assert "starting endpoint" in lines
    assert "--- Server Exited Normally ---" in lines


def test_start_command_arguments(deployer, endpoint_config):
    command = deployer.build_start_command("/tmp/vpn-server", endpoint_config)
    assert command.startswith("setsid sudo env PATH=$PATH /tmp/vpn-server/tunnel-endpoint ")
    assert "--port 51821" in command
    assert "--server-ip 10.99.1.1" in command
    assert "--vpn-network 10.99.1.0/24" in command
    assert "--private-ips 172.21.101.10,172.21.101.11" in command
    assert "--heartbeat-file /tmp/vpn-server/heartbeat" in command
    assert "--interface eth0" in command


def test_cancel_terminates_gracefully(deployer, remote, endpoint_config):
    cancel = threading.Event()
    thread, errors = start_in_thread(deployer, endpoint_config, cancel)
    assert wait_until(lambda: len(remote.processes) == 1)

    cancel.set()
    thread.join(5)
    assert isinstance(errors[0], Cancelled)
    assert remote.processes == []
    assert remote.ran("pkill -TERM -x tunnel-endpoint")
    assert remote.ran("pkill -9") == []


def test_cancel_escalates_to_sigkill(deployer, remote, endpoint_config):
    remote.ignore_term = True
    cancel = threading.Event()
    thread, errors = start_in_thread(deployer, endpoint_config, cancel)
    assert wait_until(lambda: len(remote.processes) == 1)

    cancel.set()
    thread.join(5)
    assert isinstance(errors[0], Cancelled)
    # TERM 대기 10회 + SIGKILL 후 종료 확인 1회
    assert len(remote.ran("pgrep -x tunnel-endpoint")) == 11
    kill_index = remote.commands.index(remote.ran("pkill -9 -x tunnel-endpoint")[0])
    assert "pgrep -x tunnel-endpoint" in remote.commands[kill_index + 1]
    assert remote.processes == []


def test_stop_server(deployer, remote):
    assert deployer.stop_server() == False
    remote.processes.append(77)
    assert deployer.get_server_status() == (True, "77")
    assert deployer.stop_server() == True
    assert deployer.get_server_status() == (False, None)


def test_register_peer(deployer, remote):
    _, public_key = generate_keypair()
    deployer.register_peer(public_key, "10.99.1.2", 51821)
    assert remote.ran(f"sudo wg set wg21 peer {public_key} allowed-ips 10.99.1.2/32")


def test_register_peer_rejects_bad_key(deployer, remote):
    with pytest.raises(InvalidKey):
        deployer.register_peer("not-a-key", "10.99.1.2", 51821)
    assert remote.ran("wg set") == []


def test_register_peer_failure(deployer, remote):
    _, public_key = generate_keypair()
    remote.on("wg set", exit_code=1, stderr="Unable to access interface: No such device")
    with pytest.raises(DeploymentError):
        deployer.register_peer(public_key, "10.99.1.2", 51821)


def test_port_allocation(deployer, remote):
    remote.on(":51821 ", stdout="in-use\n")
    remote.on(":51822 ", stdout="in-use\n")
    remote.on("ss -ulnH", stdout="available\n")

    assert deployer.is_port_in_use(51821)
    assert deployer.is_port_in_use(51823) == False
    assert deployer.allocate_port() == 51823


def test_port_allocation_exhausted(deployer, remote):
    remote.on("ss -ulnH", stdout="in-use\n")
    with pytest.raises(OutOfRange):
        deployer.allocate_port(51821, 51825)


def test_server_logs_and_download(deployer, remote, tmp_path):
    remote.on("tail -n 20 /tmp/vpn-server/server.log", stdout="line1\nline2\n")
    assert deployer.get_server_logs("/tmp/vpn-server", lines=20) == "line1\nline2\n"

    remote.files["/tmp/vpn-server/server.log"] = b"full log"
    local = tmp_path / "server.log"
    deployer.download_file("/tmp/vpn-server/server.log", str(local))
    assert local.read_bytes() == b"full log"


def test_heartbeat_lifecycle(deployer, remote):
    """시작, 재시작(교체), 중지"""
    deployer.start_heartbeat("/tmp/vpn-server")
    assert wait_until(lambda: len(remote.ran("> /tmp/vpn-server/heartbeat")) >= 2)
    assert deployer.heartbeat_running

    deployer.start_heartbeat("/tmp/other")
    assert wait_until(lambda: remote.ran("> /tmp/other/heartbeat"))
    assert deployer.heartbeat_running

    deployer.stop_heartbeat()
    assert deployer.heartbeat_running == False


def test_heartbeat_stops_on_disconnect(remote, target):
    d = make_deployer(remote)
    d.connect(target)
    d.start_heartbeat("/tmp/vpn-server")
    d.disconnect()
    assert d.heartbeat_running == False


def test_check_health_pings_private_addr(deployer, remote):
    deployer.set_private_addrs(["172.21.101.10", ""])
    deployer.check_health()
    assert remote.ran("ping -c 1 -W 2 172.21.101.10")


def test_check_health_without_private_addrs(deployer, remote):
    deployer.check_health()
    assert remote.ran("echo health_check")


def test_check_health_failures(deployer, remote):
    deployer.set_private_addrs(["172.21.101.10"])
    remote.on("ping -c 1", exit_code=1, stdout="1 packets transmitted, 0 received")
    with pytest.raises(HealthCheckError):
        deployer.check_health()

    remote.alive = False
    with pytest.raises(HealthCheckError) as exc:
        deployer.check_health()
    assert "not active" in str(exc.value)


def test_detect_platform_and_select_binary(remote, target, tmp_path):
    binaries = tmp_path / "bin"
    binaries.mkdir()
    (binaries / "tunnel-endpoint-linux-arm64").write_bytes(b"arm")

    remote.on("uname -m", stdout="aarch64\n")
    d = make_deployer(remote)
    d.binaries_dir = str(binaries)
    d.connect(target)

    assert d.detect_platform() == ("linux", "arm64")

    target.server_binary_path = ""
    assert d.select_binary(target) == str(binaries / "tunnel-endpoint-linux-arm64")


def test_select_binary_missing(deployer, remote, target, tmp_path):
    remote.on("uname -m", stdout="x86_64\n")
    deployer.binaries_dir = str(tmp_path)
    target.server_binary_path = ""
    with pytest.raises(DeploymentError) as exc:
        deployer.select_binary(target)
    assert "linux/amd64" in str(exc.value)


def test_detect_platform_unsupported_arch(deployer, remote):
    remote.on("uname -m", stdout="mips\n")
    with pytest.raises(DeploymentError):
        deployer.detect_platform()
