"""
네트워크 할당 및 체커 모듈 테스트
"""

import subprocess

import pytest
from tunnel_agent import network
from tunnel_agent.exceptions import OutOfRange
from tunnel_agent.network import (
    NetworkChecker, allocate_network, host_routes, interface_name_for_port, parse_addr_list
)


def test_allocate_first_and_last():
    """경계 ID 할당"""
    first = allocate_network(1)
    assert first.subnet == "10.99.1.0/24"
    assert first.server_addr == "10.99.1.1"
    assert first.client_addr == "10.99.1.2"
    assert first.port == 51821

    last = allocate_network(254)
    assert last.subnet == "10.99.254.0/24"
    assert last.port == 52074


def test_allocate_is_unique():
    """모든 ID 에 대해 서브넷과 포트가 겹치지 않음"""
    allocations = [allocate_network(i) for i in range(1, 255)]
    assert len({a.subnet for a in allocations}) == 254
    assert len({a.port for a in allocations}) == 254


@pytest.mark.parametrize("client_id", [0, 255, -1, 1000, True, "1", 1.5, None])
def test_allocate_out_of_range(client_id):
    with pytest.raises(OutOfRange):
        allocate_network(client_id)


def test_interface_name_for_port():
    assert interface_name_for_port(51821) == "wg21"
    assert interface_name_for_port(52074) == "wg74"
    # 100 차이 포트는 같은 이름
    assert interface_name_for_port(51921) == interface_name_for_port(51821)


def test_host_routes():
    """서버 주소와 사설 주소 각각 /32"""
    routes = host_routes("10.99.1.1", ["172.21.101.10", "172.21.101.11"])
    assert routes == ["10.99.1.1/32", "172.21.101.10/32", "172.21.101.11/32"]


def test_parse_addr_list():
    assert parse_addr_list("172.21.101.10, 172.21.101.11,") == ["172.21.101.10", "172.21.101.11"]
    assert parse_addr_list("") == []
    with pytest.raises(ValueError):
        parse_addr_list("not-an-ip")


def test_check_dns():
    """DNS 체크 테스트"""
    checker = NetworkChecker()
    success, msg = checker.check_dns("localhost")
    assert success == True
    assert "DNS" in msg


def test_check_port_invalid():
    """잘못된 포트 테스트"""
    checker = NetworkChecker()
    success, msg = checker.check_port("127.0.0.1", 99999, timeout=1)
    assert success == False


def test_check_port_open():
    """열린 포트 테스트"""
    import socket

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    try:
        checker = NetworkChecker()
        success, msg = checker.check_port("127.0.0.1", server.getsockname()[1], timeout=1)
        assert success == True
    finally:
        server.close()


@pytest.mark.parametrize("returncode, expected", [(0, True), (1, False), (2, False)])
def test_check_ping(monkeypatch, returncode, expected):
    """ping 종료 코드에 따른 결과"""
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, returncode, "", "")

    monkeypatch.setattr(network.subprocess, "run", fake_run)
    success, msg = NetworkChecker().check_ping("192.168.1.50", count=1, timeout=2)
    assert success == expected
    assert "192.168.1.50" in msg
    assert calls == [["ping", "-c", "1", "-W", "2", "192.168.1.50"]]


@pytest.mark.parametrize("error", [
    subprocess.TimeoutExpired(["ping"], 7),
    FileNotFoundError("ping"),
])
def test_check_ping_errors(monkeypatch, error):
    """ping 타임아웃 또는 실행 불가"""
    def fake_run(cmd, **kwargs):
        raise error

    monkeypatch.setattr(network.subprocess, "run", fake_run)
    success, _ = NetworkChecker().check_ping("192.168.1.50")
    assert success == False
