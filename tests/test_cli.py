"""
CLI 명령 테스트 (원격 접속이 필요 없는 명령만)
"""

import threading

import pytest
from click.testing import CliRunner

from conftest import FakeRemote, FakeRunner
from tunnel_agent.cli import _monitor_tunnel, _preflight, cli, endpoint_cli
from tunnel_agent.connector import LocalConnector
from tunnel_agent.deployer import Deployer
from tunnel_agent.keys import derive_public, generate_keypair, generate_private_key
from tunnel_agent.models import ClientConfig, DeploymentTarget


def test_keygen():
    result = CliRunner().invoke(cli, ["keygen"])
    assert result.exit_code == 0
    assert "공개키" in result.output


def test_keygen_from_private_key():
    private_key = generate_private_key()
    result = CliRunner().invoke(cli, ["keygen", "--private-key", private_key])
    assert result.exit_code == 0
    assert derive_public(private_key) in result.output


def test_keygen_invalid_key():
    result = CliRunner().invoke(cli, ["keygen", "--private-key", "invalid"])
    assert result.exit_code == 1


def test_allocate():
    result = CliRunner().invoke(cli, ["allocate", "7"])
    assert result.exit_code == 0
    assert "10.99.7.0/24" in result.output
    assert "51827" in result.output


def test_allocate_out_of_range():
    result = CliRunner().invoke(cli, ["allocate", "255"])
    assert result.exit_code == 1


def test_init_and_validate(tmp_path):
    path = tmp_path / "config.yaml"
    runner = CliRunner()

    result = runner.invoke(cli, ["init", str(path)])
    assert result.exit_code == 0
    assert path.exists()

    result = runner.invoke(cli, ["validate", "--config", str(path)])
    assert result.exit_code == 0
    assert "10.99.1.0/24" in result.output


def test_validate_reports_errors(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("endpoint:\n  client_id: 300\n")
    result = CliRunner().invoke(cli, ["validate", "--config", str(path)])
    assert result.exit_code == 1
    assert "remote.host" in result.output


def test_endpoint_rejects_bad_private_ips(tmp_path):
    result = CliRunner().invoke(endpoint_cli, [
        "--server-ip", "10.99.1.1",
        "--vpn-network", "10.99.1.0/24",
        "--private-ips", "not-an-ip",
        "--log-file", str(tmp_path / "server.log"),
    ])
    assert result.exit_code == 1
    assert "Invalid arguments" in (tmp_path / "server.log").read_text()


class StubChecker:
    """NetworkChecker 대체 - 각 점검 결과를 고정"""

    def __init__(self, dns=True, ping=True, port=True):
        self.results = {"dns": dns, "ping": ping, "port": port}
        self.calls = []

    def check_dns(self, host):
        self.calls.append(("dns", host))
        return self.results["dns"], f"DNS {host}"

    def check_ping(self, host, count=3, timeout=5):
        self.calls.append(("ping", host, count, timeout))
        return self.results["ping"], f"ping {host}"

    def check_port(self, host, port, timeout=3):
        self.calls.append(("port", host, port))
        return self.results["port"], f"port {host}:{port}"


def test_preflight_runs_all_checks():
    checker = StubChecker()
    assert _preflight(checker, "192.168.1.50", 22) == True
    assert checker.calls == [
        ("dns", "192.168.1.50"),
        ("ping", "192.168.1.50", 1, 2),
        ("port", "192.168.1.50", 22),
    ]


def test_preflight_ping_failure_is_warning_only():
    """ICMP 차단 환경에서도 SSH 포트만 열려 있으면 진행"""
    assert _preflight(StubChecker(ping=False), "192.168.1.50", 22) == True
    assert _preflight(StubChecker(port=False), "192.168.1.50", 22) == False


class AliveThread:
    def __init__(self, alive=True):
        self.alive = alive

    def is_alive(self):
        return self.alive


@pytest.fixture
def tunnel(tmp_path):
    """연결된 로컬 커넥터와 원격 디플로이어"""
    private_key, public_key = generate_keypair()
    _, server_public_key = generate_keypair()
    client_config = ClientConfig(
        private_key=private_key,
        public_key=public_key,
        server_public_key=server_public_key,
        server_endpoint="192.168.1.50:51821",
        client_addr="10.99.1.2",
        server_addr="10.99.1.1",
        routed_addrs=["172.21.101.10"],
    )
    connector = LocalConnector(client_config, runner=FakeRunner(), verify_tools=False, settle_delay=0,
                               work_root=str(tmp_path), output=lambda line: None)
    connector.connect("pw")

    binary = tmp_path / "tunnel-endpoint"
    binary.write_bytes(b"\x7fELF fake endpoint")
    remote = FakeRemote()
    deployer = Deployer(output=lambda line: None, strategies=[], executor_factory=lambda target: remote,
                        poll_interval=0.001, heartbeat_interval=0.01)
    deployer.connect(DeploymentTarget(host="192.168.1.50", username="ops", password="secret",
                                      server_binary_path=str(binary)))
    deployer.set_private_addrs(["172.21.101.10"])
    yield connector, deployer, remote
    deployer.disconnect()
    if connector.connected:
        connector.disconnect()


def test_monitor_tunnel_checks_health_until_cancelled(tunnel):
    connector, deployer, remote = tunnel
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        assert _monitor_tunnel(connector, deployer, AliveThread(), cancel, 0.01, 0.001) == True
    finally:
        timer.cancel()
    assert remote.ran("ping -c 1 -W 2 172.21.101.10")


def test_monitor_tunnel_stops_on_health_failure(tunnel):
    connector, deployer, remote = tunnel
    remote.on("ping -c 1", exit_code=1, stdout="100% packet loss")
    cancel = threading.Event()
    assert _monitor_tunnel(connector, deployer, AliveThread(), cancel, 0.01, 0.001) == False
    assert len(remote.ran("ping -c 1")) == 1


def test_monitor_tunnel_stops_when_endpoint_exits(tunnel):
    connector, deployer, remote = tunnel
    cancel = threading.Event()
    assert _monitor_tunnel(connector, deployer, AliveThread(alive=False), cancel, 0.01, 0) == False
    assert remote.ran("ping") == []
