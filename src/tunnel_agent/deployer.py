"""
원격 배포 모듈
SSH 세션 하나로 엔드포인트 설치, 업로드, 시작/중지, 하트비트, 헬스체크 수행
"""

import os
import posixpath
import random
import shlex
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from rich.console import Console

from . import commands, installer
from .exceptions import (
    AlreadyConnected, Cancelled, DeploymentError, HealthCheckError,
    NotConnected, OutOfRange, PrivilegeError
)
from .keys import validate_key
from .logger import get_logger
from .models import DeploymentInfo, DeploymentTarget, EndpointConfig
from .monitor import HEARTBEAT_INTERVAL, HeartbeatEmitter
from .network import BASE_PORT, MAX_CLIENT_ID, MIN_CLIENT_ID, interface_name_for_port
from .remote import RemoteExecutor, SSHExecutor
from .templates import render_endpoint_yaml

console = Console()

# pgrep/pkill -x 는 15자까지의 프로세스 이름만 비교
ENDPOINT_PROCESS = "tunnel-endpoint"
CONFIG_FILE = "server-config.yaml"
LOG_FILE = "server.log"
HEARTBEAT_FILE = "heartbeat"

SUPPORTED_PLATFORMS = (
    ("linux", "amd64"),
    ("linux", "arm64"),
    ("darwin", "amd64"),
    ("darwin", "arm64"),
)

SUDO_REMEDY = """sudo requires password authentication.

Please configure passwordless sudo for your user on the remote server:
  1. SSH to the remote: ssh {host}
  2. Edit sudoers: sudo visudo
  3. Add this line: {user} ALL=(ALL) NOPASSWD: ALL

Or configure sudo for specific commands only.
After configuring, try connecting again."""


def _print_line(line: str):
    console.print(line, markup=False, highlight=False)


class Deployer:
    """원격 호스트 한 대의 엔드포인트를 관리하는 클래스

    connect() 로 세션을 연 뒤에만 다른 작업을 호출할 수 있다.
    """

    def __init__(self, output: Optional[Callable[[str], None]] = None,
                 binaries_dir: Optional[str] = None,
                 strategies: Optional[Sequence[installer.InstallStrategy]] = None,
                 executor_factory: Callable[[DeploymentTarget], RemoteExecutor] = SSHExecutor.open,
                 poll_interval: float = 0.5,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL):
        self.output = output or _print_line
        self.binaries_dir = binaries_dir or os.environ.get("TUNNEL_AGENT_BINARIES", "./bin")
        self.strategies = list(strategies) if strategies is not None else installer.default_strategies()
        self.executor_factory = executor_factory
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.logger = get_logger()

        self.executor: Optional[RemoteExecutor] = None
        self.target: Optional[DeploymentTarget] = None
        self.private_addrs: List[str] = []
        self._heartbeat: Optional[HeartbeatEmitter] = None
        self._random = random.Random()

    # ---------- 세션 ----------

    @property
    def connected(self) -> bool:
        return self.executor is not None

    def connect(self, target: DeploymentTarget):
        """원격 호스트 SSH 연결

        Raises:
            AlreadyConnected: 이미 연결됨
            AuthError: 인증 실패
            ConnectError: 연결 실패
        """
        if self.executor is not None:
            raise AlreadyConnected("already connected", host=self.target.address if self.target else None)

        self.write(f"Connecting to {target.username}@{target.address}...")
        self.executor = self.executor_factory(target)
        self.target = target
        self.write(f"Connected to {target.host}")

    def disconnect(self):
        """하트비트 중지 후 세션 종료"""
        self.stop_heartbeat()
        if self.executor is not None:
            self.executor.close()
            self.logger.info(f"Disconnected from {self.target.address}")
        self.executor = None
        self.target = None

    def _require(self) -> RemoteExecutor:
        if self.executor is None:
            raise NotConnected("not connected to remote host")
        return self.executor

    @property
    def host(self) -> Optional[str]:
        return self.target.address if self.target else None

    # ---------- 설치 전략이 사용하는 원격 셸 기능 ----------

    def write(self, message: str):
        self.output(message)

    def run(self, command: str) -> Tuple[int, str]:
        result = self._require().run(command)
        return result.exit_code, result.output

    def run_logged(self, command: str) -> int:
        code = self._require().run_streaming(command, self.output)
        return -1 if code is None else code

    def upload_file(self, local_path: str, remote_path: str):
        data = Path(local_path).read_bytes()
        self._require().upload(data, remote_path)

    def _check(self, command: str, message: str):
        """명령 실행, 실패 시 DeploymentError"""
        result = self._require().run(command)
        if not result.ok:
            raise DeploymentError(message, operation=command, host=self.host, output=result.output)
        return result

    # ---------- 설치 및 배포 ----------

    def ensure_dependency_installed(self) -> installer.StrategyResult:
        """WireGuard 엔진 확보 (첫 성공 전략에서 중단)

        Raises:
            DependencyUnavailable: 모든 전략 실패
        """
        self._require()
        return installer.ensure_dependency(self, self.strategies, host=self.host)

    def detect_platform(self) -> Tuple[str, str]:
        """원격 (os, arch) 감지"""
        executor = self._require()
        if executor.run("cat /etc/os-release").ok:
            os_name = "linux"
        elif executor.run("sw_vers").ok:
            os_name = "darwin"
        else:
            raise DeploymentError("unable to detect remote operating system", host=self.host)

        result = executor.run("uname -m")
        arch = installer.go_arch(result.stdout) if result.ok else None
        if arch is None:
            raise DeploymentError(f"unsupported architecture: {result.stdout.strip()}",
                                  operation="uname -m", host=self.host)

        self.logger.info(f"Detected remote platform: {os_name}/{arch}")
        return os_name, arch

    def select_binary(self, target: DeploymentTarget) -> str:
        """업로드할 엔드포인트 바이너리 선택 (명시 경로 우선, 없으면 플랫폼별 빌드)"""
        if target.server_binary_path:
            if not os.path.isfile(target.server_binary_path):
                raise DeploymentError(f"server binary not found: {target.server_binary_path}")
            return target.server_binary_path

        os_name, arch = self.detect_platform()
        if (os_name, arch) not in SUPPORTED_PLATFORMS:
            raise DeploymentError(f"unsupported platform: {os_name}/{arch}", host=self.host)

        candidate = os.path.join(self.binaries_dir, f"{ENDPOINT_PROCESS}-{os_name}-{arch}")
        if not os.path.isfile(candidate):
            supported = ", ".join(f"{o}/{a}" for o, a in SUPPORTED_PLATFORMS)
            raise DeploymentError(
                f"no prebuilt endpoint binary for {os_name}/{arch} at {candidate} "
                f"(supported platforms: {supported})"
            )
        return candidate

    def deploy(self, target: DeploymentTarget, endpoint_config: EndpointConfig) -> DeploymentInfo:
        """엔드포인트 배포 (이전 실행의 잔여 상태가 있어도 재실행 가능)

        Raises:
            NotConnected: connect() 전 호출
            DependencyUnavailable: WireGuard 설치 실패
            DeploymentError: 업로드/권한 설정 실패
        """
        executor = self._require()
        self.write(f"Deploying tunnel endpoint to {target.host}")

        self.ensure_dependency_installed()

        self.write("Checking for existing server processes...")
        if self._kill_stale_endpoint():
            self.write("Old server processes stopped")
        else:
            self.write("No existing server processes found")

        work_dir = target.remote_work_dir
        self._check(f"mkdir -p {shlex.quote(work_dir)}", "failed to create remote directory")

        local_binary = self.select_binary(target)
        remote_binary = posixpath.join(work_dir, ENDPOINT_PROCESS)
        self.write(f"Uploading {local_binary} -> {remote_binary}")
        executor.upload(Path(local_binary).read_bytes(), remote_binary)
        self._check(f"chmod +x {shlex.quote(remote_binary)}", "failed to make binary executable")

        remote_config = posixpath.join(work_dir, CONFIG_FILE)
        executor.upload(render_endpoint_yaml(endpoint_config).encode("utf-8"), remote_config, mode=0o600)

        self.write(f"Deployment completed successfully\n  Binary: {remote_binary}\n  Config: {remote_config}")
        self.logger.info(f"Endpoint deployed to {target.host}:{work_dir}")

        return DeploymentInfo(
            host=target.host,
            listen_port=endpoint_config.listen_port,
            server_public_key=endpoint_config.public_key,
            server_addr=endpoint_config.server_addr,
            binary_path=remote_binary,
            config_path=remote_config,
            log_file=posixpath.join(work_dir, LOG_FILE),
        )

    # ---------- 프로세스 관리 ----------

    def _signal_endpoint(self, signal: str):
        self._require().run(f"sh -c 'sudo pkill -{signal} -x {ENDPOINT_PROCESS} 2>/dev/null; exit 0'")

    def _wait_for_exit(self, rounds: int) -> bool:
        """poll_interval 간격으로 rounds 회 확인, 종료되었으면 True"""
        for _ in range(rounds):
            time.sleep(self.poll_interval)
            running, _ = self.get_server_status()
            if not running:
                return True
        return False

    def _terminate(self, rounds: int) -> bool:
        """SIGTERM 후 대기, 종료되지 않으면 SIGKILL

        Returns:
            bool: 정상 종료 여부
        """
        self._signal_endpoint("TERM")
        if self._wait_for_exit(rounds):
            return True
        self.write("Server did not stop gracefully, sending SIGKILL...")
        self._signal_endpoint("9")
        # 바이너리를 덮어쓰기 전에 종료 확인
        if not self._wait_for_exit(rounds=2):
            self.logger.warning(f"{ENDPOINT_PROCESS} still running after SIGKILL")
        return False

    def _kill_stale_endpoint(self) -> bool:
        running, pid = self.get_server_status()
        if not running:
            self.logger.debug("No stale endpoint process")
            return False
        self.write(f"Found existing server process (pid {pid}), stopping...")
        # 3초간 대기
        self._terminate(rounds=6)
        return True

    def start_server(self, work_dir: str, endpoint_config: EndpointConfig,
                     cancel_event: Optional[threading.Event] = None):
        """엔드포인트 실행 (종료 또는 취소까지 블록)

        Raises:
            PrivilegeError: 비밀번호 없는 sudo 불가
            DeploymentError: 바이너리 실행 불가 또는 비정상 종료
            Cancelled: cancel_event 로 중단됨
        """
        executor = self._require()
        self.write(f"Starting tunnel endpoint on remote host (port: {endpoint_config.listen_port})")

        self.write("Checking sudo access...")
        if not executor.run("sudo -n true 2>/dev/null").ok:
            raise PrivilegeError(
                SUDO_REMEDY.format(host=self.target.host, user=self.target.username),
                operation="sudo -n true", host=self.host,
            )
        self.write("✓ Sudo access confirmed")

        remote_binary = posixpath.join(work_dir, ENDPOINT_PROCESS)
        self.write("Verifying endpoint binary...")
        if not executor.run(f"test -x {shlex.quote(remote_binary)}").ok:
            raise DeploymentError(f"endpoint binary is not executable: {remote_binary}",
                                  operation=f"test -x {remote_binary}", host=self.host)
        self.write("✓ Binary is executable")

        log_file = posixpath.join(work_dir, LOG_FILE)
        command = self.build_start_command(work_dir, endpoint_config)
        self.write(f"Server log file: {log_file}")
        self.write("--- Server Output ---")

        tail = deque(maxlen=20)

        def on_line(line: str):
            tail.append(line)
            self.output(line)

        code = executor.run_streaming(command, on_line, cancel_event)
        if code is None:
            self.write("--- Server cancelled, initiating graceful shutdown ---")
            # 최대 5초 대기
            if self._terminate(rounds=10):
                self.write("Server stopped gracefully")
            raise Cancelled("server stopped: cancelled", host=self.host)

        if code != 0:
            raise DeploymentError(f"server exited with error (exit code {code})",
                                  operation=command, host=self.host, output="\n".join(tail))
        self.write("--- Server Exited Normally ---")

    def build_start_command(self, work_dir: str, endpoint_config: EndpointConfig) -> str:
        """세션 종료와 분리된(setsid) 엔드포인트 실행 명령"""
        remote_binary = posixpath.join(work_dir, ENDPOINT_PROCESS)
        args = [
            "--port", str(endpoint_config.listen_port),
            "--server-ip", endpoint_config.server_addr,
            "--vpn-network", endpoint_config.vpn_subnet,
            "--private-ips", ",".join(endpoint_config.routed_addrs),
            "--private-key", endpoint_config.private_key,
            "--log-file", posixpath.join(work_dir, LOG_FILE),
            "--heartbeat-file", posixpath.join(work_dir, HEARTBEAT_FILE),
        ]
        if endpoint_config.egress_interface:
            args += ["--interface", endpoint_config.egress_interface]
        quoted = " ".join(shlex.quote(a) for a in [remote_binary] + args)
        # PATH 유지: /usr/local/bin/wireguard-go 탐색
        return f"setsid sudo env PATH=$PATH {quoted}"

    def stop_server(self) -> bool:
        """엔드포인트 중지

        Returns:
            bool: 실행 중이던 프로세스가 있었는지 여부
        """
        running, _ = self.get_server_status()
        if not running:
            self.logger.debug("Endpoint process already stopped")
            return False
        self.write("Stopping tunnel endpoint...")
        self._terminate(rounds=6)
        self.write("Endpoint stopped")
        return True

    def get_server_status(self) -> Tuple[bool, Optional[str]]:
        """정확한 프로세스 이름으로 조회, (실행 여부, 첫 번째 PID)"""
        result = self._require().run(f"pgrep -x {ENDPOINT_PROCESS}")
        pids = result.stdout.split()
        if not result.ok or not pids:
            return False, None
        return True, pids[0]

    # ---------- 피어 및 포트 ----------

    def register_peer(self, public_key: str, client_addr: str, port: int):
        """원격 인터페이스에 클라이언트 피어 등록"""
        validate_key(public_key)
        interface = interface_name_for_port(port)
        self.write(f"Registering client peer on server\n  Public Key: {public_key}\n"
                   f"  Client IP: {client_addr}\n  Interface: {interface}")
        command = commands.set_peer(interface, public_key, [f"{client_addr}/32"]).shell(sudo=True)
        self._check(command, "failed to register peer")
        self.write("Client peer registered successfully")

    def is_port_in_use(self, port: int) -> bool:
        """원격 UDP 포트 사용 여부 (확인 실패 시 사용 가능으로 간주)"""
        result = self._require().run(
            f"ss -ulnH | grep -q ':{port} ' && echo 'in-use' || echo 'available'"
        )
        return result.ok and result.stdout.strip() == "in-use"

    def allocate_port(self, start: int = BASE_PORT + MIN_CLIENT_ID,
                      end: int = BASE_PORT + MAX_CLIENT_ID) -> int:
        """범위 내 첫 번째 미사용 UDP 포트"""
        for port in range(start, end + 1):
            if not self.is_port_in_use(port):
                self.logger.debug(f"Allocated remote port {port}")
                return port
        raise OutOfRange(f"no free UDP port in range {start}-{end}", host=self.host)

    # ---------- 로그 및 파일 ----------

    def get_server_logs(self, work_dir: str, lines: int = 50) -> str:
        log_file = posixpath.join(work_dir, LOG_FILE)
        result = self._check(f"tail -n {int(lines)} {shlex.quote(log_file)}", "failed to read server logs")
        return result.stdout

    def download_file(self, remote_path: str, local_path: str):
        data = self._require().download(remote_path)
        Path(local_path).write_bytes(data)
        self.logger.debug(f"Downloaded {remote_path} -> {local_path} ({len(data)} bytes)")

    # ---------- 하트비트 ----------

    def start_heartbeat(self, work_dir: str, interval: Optional[float] = None):
        """원격 하트비트 파일에 타임스탬프 주기 기록 (재시작 시 기존 송신 교체)"""
        self._require()
        self.stop_heartbeat()
        path = posixpath.join(work_dir, HEARTBEAT_FILE)
        self._heartbeat = HeartbeatEmitter(
            send=lambda ts: self._write_heartbeat(path, ts),
            interval=interval or self.heartbeat_interval,
        )
        self._heartbeat.start()
        self.write(f"Heartbeat started: {path}")

    def _write_heartbeat(self, path: str, timestamp: int):
        if self.executor is None:
            raise NotConnected("not connected to remote host")
        self._check(f"echo {timestamp} > {shlex.quote(path)}", "failed to write heartbeat")

    def stop_heartbeat(self):
        if self._heartbeat is not None:
            self._heartbeat.stop(timeout=self.heartbeat_interval + 1)
            self._heartbeat = None

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and self._heartbeat.running

    # ---------- 헬스체크 ----------

    def set_private_addrs(self, addrs: Iterable[str]):
        self.private_addrs = [a for a in addrs if a]

    def check_health(self, timeout: float = 5.0):
        """세션 생존 및 사설 주소 도달 확인

        Raises:
            NotConnected: 연결 안 됨
            HealthCheckError: 세션 종료 또는 프로브 실패
            TunnelTimeout: 제한 시간 초과
        """
        executor = self._require()
        if not executor.is_alive():
            raise HealthCheckError("SSH session is not active", host=self.host)

        if self.private_addrs:
            target = self._random.choice(self.private_addrs)
            command = f"ping -c 1 -W 2 {shlex.quote(target)}"
        else:
            command = "echo health_check"

        result = executor.run(command, timeout=timeout)
        if not result.ok:
            raise HealthCheckError("health check failed", operation=command,
                                   host=self.host, output=result.output)
        self.logger.debug(f"Health check OK: {command}")
