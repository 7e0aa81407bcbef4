"""
네트워크 할당 및 연결성 체크 모듈
클라이언트 ID 기반 서브넷/포트 할당, ping, 포트, DNS, 인터페이스 체크
"""

import ipaddress
import socket
import subprocess
from typing import Iterable, List, Optional, Tuple

from .exceptions import OutOfRange
from .logger import get_logger
from .models import NetworkAllocation

BASE_PORT = 51820
MIN_CLIENT_ID = 1
MAX_CLIENT_ID = 254


def allocate_network(client_id: int) -> NetworkAllocation:
    """클라이언트 ID로부터 서브넷, 주소, 포트를 결정적으로 할당

    여러 터널이 충돌 없이 공존할 수 있도록 ID마다 10.99.<id>.0/24 사용
    """
    if isinstance(client_id, bool) or not isinstance(client_id, int):
        raise OutOfRange(f"client ID must be an integer, got {client_id!r}")
    if client_id < MIN_CLIENT_ID or client_id > MAX_CLIENT_ID:
        raise OutOfRange(f"client ID must be between {MIN_CLIENT_ID} and {MAX_CLIENT_ID}, got {client_id}")

    return NetworkAllocation(
        client_id=client_id,
        subnet=f"10.99.{client_id}.0/24",
        server_addr=f"10.99.{client_id}.1",
        client_addr=f"10.99.{client_id}.2",
        port=BASE_PORT + client_id,
    )


def interface_name_for_port(port: int) -> str:
    """리슨 포트 끝 두 자리로 인터페이스 이름 결정 (51821 -> wg21)

    100 차이 나는 포트는 같은 이름이 된다 (예: 51821, 51921).
    """
    return f"wg{port % 100}"


def host_routes(server_addr: str, routed_addrs: Iterable[str]) -> List[str]:
    """AllowedIPs 목록 - 넓은 서브넷 대신 개별 /32 호스트 라우트"""
    routes = [f"{ipaddress.ip_address(server_addr)}/32"]
    for addr in routed_addrs:
        routes.append(f"{ipaddress.ip_address(addr)}/32")
    return routes


def parse_addr_list(value: str) -> List[str]:
    """쉼표 구분 IP 목록 파싱"""
    addrs = []
    for item in (value or "").split(","):
        item = item.strip()
        if not item:
            continue
        addrs.append(str(ipaddress.ip_address(item)))
    return addrs


def detect_egress_interface() -> Optional[str]:
    """기본 라우트의 외부 인터페이스 감지

    예: "default via 10.27.14.1 dev eno1 proto static metric 100" -> eno1
    """
    try:
        result = subprocess.run(
            ["ip", "route", "show", "default"],
            capture_output=True,
            text=True,
            timeout=5
        )
    except (OSError, subprocess.TimeoutExpired):
        return None

    if result.returncode != 0:
        return None

    fields = result.stdout.split()
    for i, token in enumerate(fields):
        if token == "dev" and i + 1 < len(fields):
            return fields[i + 1]
    return None


class NetworkChecker:
    """네트워크 연결성 확인 클래스"""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.logger = get_logger()

    def check_ping(self, host: str, count: int = 3, timeout: int = 5) -> Tuple[bool, str]:
        """호스트 핑 테스트"""
        try:
            self.logger.debug(f"Pinging {host}...")
            cmd = ["ping", "-c", str(count), "-W", str(timeout), host]
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout + 5
            )

            if result.returncode == 0:
                self.logger.debug(f"✓ {host} is reachable")
                return True, f"✓ {host} 응답 성공"
            else:
                self.logger.warning(f"✗ {host} is unreachable")
                return False, f"✗ {host} 응답 실패"

        except subprocess.TimeoutExpired:
            self.logger.error(f"✗ Ping timeout for {host}")
            return False, f"✗ {host} 타임아웃"
        except OSError as e:
            self.logger.error(f"Ping error: {str(e)}")
            return False, f"✗ 핑 테스트 오류: {str(e)}"

    def check_port(self, host: str, port: int, timeout: int = 5) -> Tuple[bool, str]:
        """TCP 포트 연결 테스트"""
        try:
            self.logger.debug(f"Checking port {host}:{port}...")
            with socket.create_connection((host, port), timeout=timeout):
                pass
            self.logger.debug(f"✓ {host}:{port} is open")
            return True, f"✓ {host}:{port} 연결 성공"

        except socket.gaierror:
            self.logger.error(f"✗ Cannot resolve {host}")
            return False, f"✗ {host} 호스트를 찾을 수 없습니다"
        except (OSError, OverflowError) as e:
            self.logger.warning(f"✗ {host}:{port} is closed ({e})")
            return False, f"✗ {host}:{port} 연결 실패"

    def check_dns(self, domain: str = "localhost") -> Tuple[bool, str]:
        """DNS 조회 테스트"""
        try:
            self.logger.debug(f"Checking DNS for {domain}...")
            socket.gethostbyname(domain)
            self.logger.debug("✓ DNS resolution successful")
            return True, f"✓ DNS 조회 성공 ({domain})"
        except socket.gaierror:
            self.logger.warning("✗ DNS resolution failed")
            return False, f"✗ DNS 조회 실패 ({domain})"

    def check_interface(self, interface: str) -> Tuple[bool, str]:
        """네트워크 인터페이스 확인"""
        try:
            self.logger.debug(f"Checking interface {interface}...")
            result = subprocess.run(
                ["ip", "link", "show", interface],
                capture_output=True,
                text=True
            )
        except OSError as e:
            self.logger.error(f"Interface check error: {str(e)}")
            return False, f"✗ 인터페이스 확인 오류: {str(e)}"

        if result.returncode != 0:
            self.logger.warning(f"✗ Interface {interface} not found")
            return False, f"✗ {interface} 인터페이스를 찾을 수 없습니다"

        # WireGuard 인터페이스는 state UNKNOWN 으로 표시되므로 UP 플래그로 판단
        if "state UP" in result.stdout or ",UP" in result.stdout or "<UP" in result.stdout:
            self.logger.debug(f"✓ Interface {interface} is UP")
            return True, f"✓ {interface} 인터페이스 활성화"

        self.logger.warning(f"✗ Interface {interface} is DOWN")
        return False, f"✗ {interface} 인터페이스 비활성화"

