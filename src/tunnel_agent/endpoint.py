"""
터널 엔드포인트 모듈
원격 호스트에서 WireGuard 인터페이스 하나를 소유하고 피어 등록, 포워딩/NAT 설정,
하트비트가 끊기면 스스로 정리 후 종료
"""

import ipaddress
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from . import commands, installer
from .exceptions import (
    AlreadyRunning, DependencyUnavailable, DeploymentError, DuplicatePeer, PeerNotFound
)
from .firewall import FirewallManager
from .keys import validate_key
from .logger import get_logger
from .models import EndpointConfig, EndpointState, PeerSession
from .monitor import HEARTBEAT_TIMEOUT, WATCHDOG_INTERVAL, HeartbeatStatus, HeartbeatWatchdog
from .network import interface_name_for_port
from .runner import LocalRunner
from .templates import render_endpoint_conf

# 인터페이스가 없을 때 ip 명령이 내는 메시지
ABSENT_MARKERS = ("Cannot find device", "does not exist")


class RWLock:
    """읽기/쓰기 잠금 (읽기는 동시에, 쓰기는 단독)"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_lock(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TunnelEndpoint:
    """WireGuard 엔드포인트

    상태: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
    start/stop/add_peer/remove_peer 는 동시에 호출하지 않는다.
    """

    def __init__(self, config: EndpointConfig, heartbeat_file: Optional[str] = None,
                 runner: Optional[LocalRunner] = None, work_root: Optional[str] = None,
                 startup_delay: float = 0.5,
                 watchdog_interval: float = WATCHDOG_INTERVAL,
                 heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
                 engine_finder: Callable[[], Tuple[Optional[str], str]] = installer.find_engine,
                 engine_installer: Callable[[LocalRunner], None] = installer.install_engine_locally,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.heartbeat_file = heartbeat_file
        self.runner = runner or LocalRunner()
        self.startup_delay = startup_delay
        self.engine_finder = engine_finder
        self.engine_installer = engine_installer
        self.logger = get_logger()

        self.interface = interface_name_for_port(config.listen_port)
        self.work_dir = Path(work_root or tempfile.gettempdir()) / f"vpn-server-{config.listen_port}"
        self.work_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.config_path = self.work_dir / "wg.conf"
        self.log_path = self.work_dir / "server.log"
        self.pid_path = self.work_dir / "server.pid"

        self.firewall = FirewallManager(self.interface, config.vpn_subnet,
                                        config.egress_interface, self.runner)

        self._state = EndpointState.STOPPED
        self._state_lock = threading.Lock()
        self._peers: Dict[str, PeerSession] = {}
        self._peers_lock = RWLock()

        self._active = False
        self._stopping = False
        self._process = None
        self._engine_mode = ""
        self._log_file = None
        self._exit_watcher: Optional[threading.Thread] = None
        self._terminated = threading.Event()
        # 정리까지 끝난 상태
        self._idle = threading.Event()
        self._idle.set()
        self.exit_code: Optional[int] = None
        self.self_destructed = False

        self._watchdog: Optional[HeartbeatWatchdog] = None
        if heartbeat_file:
            self._watchdog = HeartbeatWatchdog(
                heartbeat_file,
                on_stale=self._self_destruct,
                interval=watchdog_interval,
                timeout=heartbeat_timeout,
                clock=clock,
            )

    # ---------- 상태 ----------

    @property
    def state(self) -> EndpointState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: EndpointState):
        with self._state_lock:
            self._state = state

    @property
    def running(self) -> bool:
        return self.state == EndpointState.RUNNING

    @property
    def pid(self) -> Optional[int]:
        if self._process is not None:
            return self._process.pid
        return os.getpid() if self._active else None

    def status(self) -> dict:
        """엔드포인트 상태"""
        with self._peers_lock.read_lock():
            peer_count = len(self._peers)

        status = {
            "running": self.running,
            "state": self.state.value,
            "interface": self.interface,
            "port": self.config.listen_port,
            "server_ip": self.config.server_addr,
            "client_count": peer_count,
            "config_dir": str(self.work_dir),
            "self_destructed": self.self_destructed,
        }
        if self.pid is not None:
            status["pid"] = self.pid
        return status

    def peers(self) -> List[PeerSession]:
        with self._peers_lock.read_lock():
            return list(self._peers.values())

    # ---------- 시작/중지 ----------

    def start(self):
        """엔드포인트 시작

        Raises:
            AlreadyRunning: 이미 시작됨
            DependencyUnavailable: WireGuard 엔진 없음
            DeploymentError: 인터페이스 설정 실패
        """
        with self._state_lock:
            if self._state != EndpointState.STOPPED:
                raise AlreadyRunning("server is already running")
            leftover = self._active
            self._state = EndpointState.STARTING

        if leftover:
            # 엔진이 예기치 않게 종료된 뒤 남은 인터페이스/규칙 정리
            self.logger.info("Cleaning up after previous engine exit")
            self._teardown()

        try:
            engine = self._ensure_engine()
        except DependencyUnavailable:
            self._set_state(EndpointState.STOPPED)
            raise

        self._active = True
        self._idle.clear()
        self._stopping = False
        self.self_destructed = False
        self.exit_code = None
        self._terminated.clear()

        try:
            self.logger.info(f"Checking for existing interface {self.interface}")
            if self._delete_interface():
                self.logger.info(f"Cleaned up existing interface from previous session: {self.interface}")
            self.firewall.remove()

            self._write_config()
            self._log_file = open(self.log_path, "a", encoding="utf-8")
            self.logger.info(
                f"Starting tunnel endpoint (interface={self.interface}, "
                f"port={self.config.listen_port}, log={self.log_path})"
            )
            self._launch(engine)
            self._configure_interface()
        except (DeploymentError, OSError) as e:
            self.logger.error(f"Failed to start endpoint: {e}")
            self._teardown()
            self._set_state(EndpointState.STOPPED)
            if isinstance(e, DeploymentError):
                raise
            raise DeploymentError(f"failed to start endpoint: {e}") from e

        try:
            self.pid_path.write_text(str(self.pid), encoding="utf-8")
            os.chmod(self.pid_path, 0o600)
        except OSError as e:
            self.logger.warning(f"Failed to write PID file: {e}")

        self._set_state(EndpointState.RUNNING)
        if self._process is not None:
            self._exit_watcher = threading.Thread(target=self._watch_exit, name="engine-exit-watcher",
                                                  daemon=True)
            self._exit_watcher.start()
        if self._watchdog is not None:
            self._watchdog.start()
            self.logger.info(f"Heartbeat self-destruction enabled (file={self.heartbeat_file})")

        self.logger.info(f"Tunnel endpoint started (pid={self.pid}, server_ip={self.config.server_addr})")

    def _ensure_engine(self) -> Tuple[str, str]:
        path, mode = self.engine_finder()
        if path is None:
            self.logger.warning("WireGuard not found, attempting to install...")
            self.engine_installer(self.runner)
            path, mode = self.engine_finder()
            if path is None:
                raise DependencyUnavailable("WireGuard installation finished but no engine was found on PATH")
            self.logger.info("WireGuard installed successfully")
        self.logger.info(f"Using WireGuard: {path} ({mode})")
        return path, mode

    def _launch(self, engine: Tuple[str, str]):
        path, mode = engine
        self._engine_mode = mode
        if mode == "userspace":
            self._process = self.runner.spawn([path, "-f", self.interface])
            # 인터페이스 생성 대기
            time.sleep(self.startup_delay)
            return

        result = self.runner.run(commands.create_interface(self.interface))
        if result.returncode != 0:
            raise DeploymentError("failed to create interface",
                                  operation=str(commands.create_interface(self.interface)),
                                  output=result.stdout)

    def _write_config(self):
        content = render_endpoint_conf(self.config, self.peers())
        fd = os.open(self.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)

    def _configure_interface(self):
        steps = (
            (commands.set_config(self.interface, str(self.config_path)), "failed to set config", ()),
            (commands.link_up(self.interface), "failed to bring up interface", ()),
            (commands.add_address(self.interface, self._server_cidr()), "failed to add IP address",
             ("File exists",)),
        )
        for command, message, tolerated in steps:
            result = self.runner.run(command)
            if result.returncode == 0:
                continue
            output = result.stdout or ""
            if any(marker in output for marker in tolerated):
                self.logger.debug(f"Already configured: {command}")
                continue
            raise DeploymentError(message, operation=str(command), output=output)

        self.firewall.enable_ip_forwarding()
        self.firewall.apply()
        self.logger.info(f"Interface configured: {self.interface} ({self._server_cidr()})")

    def _server_cidr(self) -> str:
        prefix = ipaddress.ip_network(self.config.vpn_subnet, strict=False).prefixlen
        return f"{self.config.server_addr}/{prefix}"

    def _delete_interface(self) -> bool:
        """인터페이스 삭제, 없으면 False"""
        result = self.runner.run(commands.delete_interface(self.interface))
        if result.returncode == 0:
            return True
        output = result.stdout or ""
        if any(marker in output for marker in ABSENT_MARKERS):
            self.logger.debug(f"Interface {self.interface} does not exist")
        else:
            self.logger.warning(f"Failed to delete interface {self.interface}: {output.strip()}")
        return False

    def _watch_exit(self):
        process = self._process
        for line in process.stdout:
            line = line.rstrip("\n")
            if self._log_file is not None and not self._log_file.closed:
                self._log_file.write(line + "\n")
                self._log_file.flush()
            self.logger.info(f"[engine] {line}")
        code = process.wait()
        self.exit_code = code

        if not self._stopping:
            self.logger.error(f"Tunnel engine exited unexpectedly (exit code {code})")
            self._set_state(EndpointState.STOPPED)
            self._terminated.set()

    def stop(self):
        """엔드포인트 중지 및 정리 (시작하지 않았거나 이미 중지된 경우 아무 것도 하지 않음)"""
        with self._state_lock:
            if not self._active:
                self.logger.debug("Endpoint is not running, nothing to stop")
                return
            if self._state == EndpointState.STOPPING:
                # 다른 스레드(하트비트 감시 등)가 정리 중
                self.logger.debug("Endpoint is already stopping")
                return
            self._state = EndpointState.STOPPING
            self._stopping = True

        self.logger.info("Stopping tunnel endpoint...")
        self._teardown()
        self._set_state(EndpointState.STOPPED)
        self.logger.info("Tunnel endpoint stopped")

    def _teardown(self):
        self._stopping = True
        self.firewall.remove()
        if self._delete_interface():
            self.logger.info(f"WireGuard interface deleted: {self.interface}")

        if self._watchdog is not None:
            self._watchdog.stop()

        process = self._process
        if process is not None and process.poll() is None:
            process.kill()
            process.wait()

        watcher = self._exit_watcher
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join()
        self._exit_watcher = None
        self._process = None

        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass

        self._active = False
        self._terminated.set()
        self._idle.set()

    # ---------- 피어 ----------

    def add_peer(self, public_key: str, client_addr: str, allowed_subnets: Optional[List[str]] = None):
        """피어 등록, 실행 중이면 즉시 적용

        Raises:
            DuplicatePeer: 이미 등록된 공개키
        """
        validate_key(public_key)
        host_route = f"{client_addr}/32"
        allowed = list(allowed_subnets or [])
        if host_route not in allowed:
            allowed.insert(0, host_route)

        with self._peers_lock.write_lock():
            if public_key in self._peers:
                raise DuplicatePeer("client already exists", operation=f"add peer {public_key}")
            self._peers[public_key] = PeerSession(public_key, client_addr, allowed)

            if self.running:
                command = commands.set_peer(self.interface, public_key, allowed)
                result = self.runner.run(command)
                if result.returncode != 0:
                    del self._peers[public_key]
                    raise DeploymentError("failed to apply peer", operation=str(command), output=result.stdout)

        self.logger.info(f"Peer added: {public_key} ({client_addr})")

    def remove_peer(self, public_key: str):
        """피어 제거, 실행 중이면 즉시 적용

        Raises:
            PeerNotFound: 등록되지 않은 공개키
        """
        with self._peers_lock.write_lock():
            if public_key not in self._peers:
                raise PeerNotFound("client not found", operation=f"remove peer {public_key}")
            del self._peers[public_key]

            if self.running:
                command = commands.remove_peer(self.interface, public_key)
                result = self.runner.run(command)
                if result.returncode != 0:
                    self.logger.warning(f"Failed to remove peer from interface: {(result.stdout or '').strip()}")

        self.logger.info(f"Peer removed: {public_key}")

    # ---------- 하트비트 ----------

    def check_heartbeat(self, now: Optional[float] = None) -> bool:
        """하트비트 1회 확인, 오래되었으면 중지 후 True"""
        if self._watchdog is None:
            return False
        return self._watchdog.check_once(now) == HeartbeatStatus.STALE

    def _self_destruct(self, age: float):
        self.logger.error(f"Self-destructing: no heartbeat for {age:.1f}s")
        self.self_destructed = True
        self.stop()

    # ---------- 실행 ----------

    def serve(self, cancel_event: Optional[threading.Event] = None, poll: float = 0.2) -> int:
        """취소, 엔진 종료, 자가 종료 중 하나가 일어날 때까지 대기 후 정리

        Returns:
            int: 프로세스 종료 코드
        """
        cancel = cancel_event or threading.Event()
        while not self._terminated.wait(poll):
            if cancel.is_set():
                self.logger.info("Shutdown requested")
                break

        unexpected = not self._stopping and not cancel.is_set()
        self.stop()
        self._idle.wait()
        if self.self_destructed or not unexpected:
            return 0
        return self.exit_code or 1

    def read_logs(self, lines: int = 50) -> List[str]:
        """로그 파일 마지막 N 줄"""
        with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
            all_lines = f.read().splitlines()
        return all_lines[-lines:] if lines > 0 else []
