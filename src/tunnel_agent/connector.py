"""
로컬 터널 커넥터 모듈 (WireGuard wg-quick)
로컬 인터페이스 설정/해제, 연결 상태 및 전송량 추적, 진단
"""

import shutil
import socket
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from rich.console import Console

from .exceptions import (
    AlreadyConnected, DependencyUnavailable, HealthCheckError, NotConnected, PrivilegeError, TunnelError
)
from .logger import get_logger
from .models import ClientConfig, ConnectionStats
from .network import host_routes
from .runner import LocalRunner
from .templates import render_client_conf

console = Console()

DEFAULT_WORK_ROOT = "/tmp/tunnel-agent"
# 리눅스 인터페이스 이름 15자 제한
DEFAULT_INTERFACE = "wgtunnel"

INSTALL_HINT = """wg-quick not found. Please install WireGuard:
  Ubuntu/Debian: sudo apt install wireguard-tools
  RHEL/CentOS:   sudo yum install wireguard-tools
  Arch:          sudo pacman -S wireguard-tools
  macOS:         brew install wireguard-tools"""

WG_QUICK_REMEDY = """failed to bring up WireGuard interface. Please ensure:
  1. WireGuard is installed (wg-quick)
  2. You have sudo privileges
  3. The WireGuard kernel module is loaded"""


def check_tools_installed(which: Callable[[str], Optional[str]] = shutil.which):
    """wg-quick, wg 설치 확인

    Raises:
        DependencyUnavailable: 도구 없음
    """
    if which("wg-quick") is None:
        raise DependencyUnavailable(INSTALL_HINT)
    if which("wg") is None:
        raise DependencyUnavailable("wg command not found. Please install WireGuard tools")


def sudo_needs_password(runner: Optional[LocalRunner] = None) -> bool:
    """sudo 가 비밀번호를 요구하는지 확인"""
    runner = runner or LocalRunner()
    return runner.run(["sudo", "-n", "true"]).returncode != 0


def wg_quick_needs_password(runner: Optional[LocalRunner] = None) -> bool:
    """wg-quick 만 sudoers 에 등록된 경우까지 고려한 확인

    인자 없이 실행하므로 종료 코드 1(비밀번호 필요)만 실패로 본다.
    """
    runner = runner or LocalRunner()
    return runner.run(["sudo", "-n", "wg-quick"]).returncode == 1


def validate_sudo_password(password: str, runner: Optional[LocalRunner] = None):
    """sudo 비밀번호 검증

    Raises:
        PrivilegeError: 비밀번호가 틀렸거나 sudo 실행 실패
    """
    runner = runner or LocalRunner()
    result = runner.run(["sudo", "-S", "-k", "true"], input=password + "\n")
    if result.returncode == 0:
        return
    output = result.stdout or ""
    if "incorrect password" in output or "Sorry, try again" in output:
        raise PrivilegeError("invalid sudo password")
    raise PrivilegeError("sudo validation failed", operation="sudo -S -k true", output=output)


class LocalConnector:
    """로컬 WireGuard 연결 관리 클래스"""

    def __init__(self, config: ClientConfig, runner: Optional[LocalRunner] = None,
                 verify_tools: bool = True, settle_delay: float = 2.0,
                 work_root: str = DEFAULT_WORK_ROOT, interface_name: str = DEFAULT_INTERFACE,
                 output: Optional[Callable[[str], None]] = None):
        if verify_tools:
            check_tools_installed()

        self.config = config
        self.runner = runner or LocalRunner()
        self.settle_delay = settle_delay
        self.interface = interface_name
        self.output = output or (lambda line: console.print(line, markup=False, highlight=False))
        self.logger = get_logger()

        self.work_dir = Path(work_root) / socket.gethostname()
        self.config_path = self.work_dir / f"{interface_name}.conf"

        self._lock = threading.Lock()
        self._stats = ConnectionStats()

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._stats.connected

    def _require_connected(self):
        if not self.connected:
            raise NotConnected("not connected")

    def _sudo(self, argv: List[str], sudo_password: str):
        # -S: 비밀번호를 stdin 으로 전달 (비밀번호 없는 sudo 에서는 무시됨)
        return self.runner.run(["sudo", "-S"] + argv, input=sudo_password + "\n")

    def allowed_ips(self) -> List[str]:
        """서버 주소와 각 사설 주소의 /32 호스트 라우트 (넓은 서브넷 라우트 없음)"""
        return host_routes(self.config.server_addr, self.config.routed_addrs)

    def connect(self, sudo_password: str = ""):
        """터널 연결

        Raises:
            AlreadyConnected: 이미 연결됨
            PrivilegeError: wg-quick up 실패
        """
        with self._lock:
            if self._stats.connected:
                raise AlreadyConnected("client is already connected")

        self.output(f"Connecting to VPN server {self.config.server_endpoint} "
                    f"(client IP: {self.config.client_addr})")

        allowed = self.allowed_ips()
        if self.config.routed_addrs:
            self.output(f"Routing {len(self.config.routed_addrs)} private IPs through VPN (specific /32 routes)")

        self.work_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.config_path.write_text(render_client_conf(self.config, allowed), encoding="utf-8")
        self.config_path.chmod(0o600)
        self.logger.debug(f"Client config written: {self.config_path}")

        # 이전 세션의 인터페이스 정리 (없으면 실패해도 무시)
        self._sudo(["ip", "link", "delete", self.interface], sudo_password)

        self.output(f"Bringing up WireGuard interface: sudo wg-quick up {self.config_path}")
        result = self._sudo(["wg-quick", "up", str(self.config_path)], sudo_password)
        if result.stdout:
            self.output(result.stdout.rstrip())
        if result.returncode != 0:
            raise PrivilegeError(WG_QUICK_REMEDY, operation=f"wg-quick up {self.config_path}",
                                 output=result.stdout)

        with self._lock:
            self._stats = ConnectionStats(connected=True, connected_at=datetime.now())

        self.output("VPN connection established successfully")
        self.output(f"  - VPN Gateway: {self.config.server_addr}")
        for addr in self.config.routed_addrs:
            self.output(f"    • {addr}")
        self.logger.info(f"Tunnel connected: {self.interface} -> {self.config.server_endpoint}")

        time.sleep(self.settle_delay)

    def disconnect(self, sudo_password: str = ""):
        """터널 해제

        Raises:
            NotConnected: 연결되지 않음 (명령 실행 없음)
        """
        self._require_connected()

        self.output("Disconnecting from VPN server")
        result = self._sudo(["wg-quick", "down", str(self.config_path)], sudo_password)
        if result.returncode != 0:
            self.logger.warning(f"Failed to bring down interface: {(result.stdout or '').strip()}")

        try:
            self.config_path.unlink()
        except FileNotFoundError:
            pass

        with self._lock:
            self._stats = ConnectionStats()

        self.output("VPN connection closed")
        self.logger.info(f"Tunnel disconnected: {self.interface}")

    # ---------- 통계 ----------

    def stats(self) -> ConnectionStats:
        """연결 통계 스냅샷 (wg show 로 전송량 갱신, 실패는 무시)"""
        if self.connected:
            self._refresh_counters()
        with self._lock:
            return ConnectionStats(**vars(self._stats))

    def _refresh_counters(self):
        transfer = self.runner.run(["sudo", "-n", "wg", "show", self.interface, "transfer"])
        handshakes = self.runner.run(["sudo", "-n", "wg", "show", self.interface, "latest-handshakes"])

        received = sent = 0
        if transfer.returncode == 0:
            for line in (transfer.stdout or "").splitlines():
                fields = line.split()
                if len(fields) == 3 and fields[1].isdigit() and fields[2].isdigit():
                    received += int(fields[1])
                    sent += int(fields[2])

        latest = 0
        if handshakes.returncode == 0:
            for line in (handshakes.stdout or "").splitlines():
                fields = line.split()
                if len(fields) == 2 and fields[1].isdigit():
                    latest = max(latest, int(fields[1]))

        with self._lock:
            if not self._stats.connected:
                return
            if transfer.returncode == 0:
                self._stats.bytes_received = received
                self._stats.bytes_sent = sent
            if latest:
                self._stats.last_handshake = datetime.fromtimestamp(latest)

    def monitor(self, interval: float = 5.0,
                cancel_event: Optional[threading.Event] = None) -> Iterator[ConnectionStats]:
        """연결 중 interval 마다 통계 생성 (취소 또는 연결 해제 시 종료)"""
        cancel = cancel_event or threading.Event()
        while not cancel.wait(interval):
            if not self.connected:
                return
            yield self.stats()

    def status(self) -> dict:
        with self._lock:
            stats = ConnectionStats(**vars(self._stats))

        status = {
            "connected": stats.connected,
            "interface": self.interface,
            "server_endpoint": self.config.server_endpoint,
            "client_ip": self.config.client_addr,
            "server_ip": self.config.server_addr,
        }
        if stats.connected:
            status["connected_at"] = stats.connected_at
            status["uptime"] = datetime.now() - stats.connected_at
            status["bytes_sent"] = stats.bytes_sent
            status["bytes_received"] = stats.bytes_received
        return status

    # ---------- 진단 ----------

    def ping(self, host: str, timeout: float = 5.0) -> float:
        """TCP 22번 포트 연결로 지연 시간(초) 측정

        Raises:
            NotConnected: 연결되지 않음
            TunnelError: 연결 실패
        """
        self._require_connected()
        start = time.monotonic()
        try:
            with socket.create_connection((host, 22), timeout=timeout):
                pass
        except OSError as e:
            raise TunnelError(f"ping failed: {e}", operation=f"tcp {host}:22") from e
        return time.monotonic() - start

    def dial_tcp(self, addr: str, timeout: float = 10.0) -> socket.socket:
        """터널을 통한 TCP 연결 (addr: host:port)"""
        self._require_connected()
        host, _, port = addr.rpartition(":")
        return socket.create_connection((host.strip("[]"), int(port)), timeout=timeout)

    def resolve(self, hostname: str) -> List[str]:
        """호스트 이름 해석 (시스템 리졸버)"""
        self._require_connected()
        try:
            infos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as e:
            raise TunnelError(f"failed to resolve {hostname}: {e}") from e

        addrs = []
        for info in infos:
            addr = info[4][0]
            if addr not in addrs:
                addrs.append(addr)
        return addrs

    def check_tunnel_health(self, timeout: float = 5.0):
        """게이트웨이(서버 주소) 도달 확인

        Raises:
            NotConnected: 연결되지 않음
            HealthCheckError: 게이트웨이 도달 불가
        """
        self._require_connected()
        try:
            self.ping(self.config.server_addr, timeout)
        except TunnelError as e:
            raise HealthCheckError(
                f"VPN tunnel unhealthy (cannot reach gateway {self.config.server_addr})",
                output=str(e),
            ) from e
