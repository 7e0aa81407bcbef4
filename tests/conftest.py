"""
테스트 공용 가짜 구현
로컬 명령 실행기, 엔진 프로세스, 원격 호스트
"""

import subprocess
import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from tunnel_agent.commands import Command
from tunnel_agent.keys import generate_keypair
from tunnel_agent.models import DeploymentTarget, EndpointConfig
from tunnel_agent.remote import RemoteExecutor, RemoteResult


class FakeProcess:
    """wireguard-go 대신 사용하는 프로세스 (kill 또는 exit 전까지 출력 대기)"""

    def __init__(self, argv, lines=None, pid=4242):
        self.argv = list(argv)
        self.pid = pid
        self.returncode = None
        self._lines = list(lines or [])
        self._done = threading.Event()
        self.killed = False

    @property
    def stdout(self):
        for line in self._lines:
            yield line + "\n"
        self._done.wait()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self._done.wait(timeout)
        return self.returncode

    def kill(self):
        self.killed = True
        self.exit(-9)

    def exit(self, code):
        if self.returncode is None:
            self.returncode = code
        self._done.set()


class FakeRunner:
    """LocalRunner 대체 - 인터페이스와 iptables 규칙 상태를 흉내냄"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.inputs: List[Optional[str]] = []
        self.rules: List[tuple] = []
        self.interfaces = set()
        self.iptables: List[tuple] = []
        self.processes: List[FakeProcess] = []

    def on(self, prefix, returncode=0, stdout=""):
        """argv 가 prefix 로 시작하면 지정된 결과 반환"""
        self.rules.append((tuple(prefix), returncode, stdout))

    def commands(self, prefix=()):
        prefix = tuple(prefix)
        return [c for c in self.calls if c[:len(prefix)] == prefix]

    def run(self, argv, input=None, timeout=None):
        if isinstance(argv, Command):
            argv = argv.argv
        argv = tuple(argv)
        self.calls.append(argv)
        self.inputs.append(input)

        for prefix, code, out in self.rules:
            if argv[:len(prefix)] == prefix:
                return subprocess.CompletedProcess(list(argv), code, stdout=out)

        code, out = self._simulate(argv)
        return subprocess.CompletedProcess(list(argv), code, stdout=out)

    def _simulate(self, argv):
        if argv[:3] == ("ip", "link", "delete"):
            name = argv[3]
            if name not in self.interfaces:
                return 1, f'Cannot find device "{name}"\n'
            self.interfaces.discard(name)
            return 0, ""
        if argv[:3] == ("ip", "link", "add"):
            self.interfaces.add(argv[4])
            return 0, ""
        if argv[:1] == ("iptables",):
            action = "-D" if "-D" in argv else "-A"
            spec = tuple(a for a in argv if a not in ("-A", "-D"))
            if action == "-A":
                self.iptables.append(spec)
                return 0, ""
            if spec in self.iptables:
                self.iptables.remove(spec)
                return 0, ""
            return 1, "iptables: Bad rule (does a matching rule exist in that chain?).\n"
        return 0, ""

    def spawn(self, argv):
        argv = list(argv)
        self.calls.append(tuple(argv))
        process = FakeProcess(argv, lines=["INFO: (wg21) Device started"])
        if "-f" in argv:
            self.interfaces.add(argv[argv.index("-f") + 1])
        self.processes.append(process)
        return process


class FakeRemote(RemoteExecutor):
    """원격 호스트 대체 - tunnel-endpoint 프로세스 테이블과 업로드 파일 보관"""

    def __init__(self, host="remote:22"):
        self.host = host
        self.commands: List[str] = []
        self.handlers: List[tuple] = []
        self.files: Dict[str, bytes] = {}
        self.modes: Dict[str, int] = {}
        self.processes: List[int] = []
        self.ignore_term = False
        self.server_exit_code = 0
        self.server_output = ["starting endpoint"]
        self.alive = True
        self.closed = False
        self._next_pid = 1000
        self.lock = threading.Lock()

    def on(self, pattern: str, exit_code=0, stdout="", stderr=""):
        """pattern 이 포함된 명령은 지정된 결과 반환"""
        self.handlers.append((pattern, RemoteResult(exit_code, stdout, stderr)))

    def ran(self, pattern: str) -> List[str]:
        with self.lock:
            return [c for c in self.commands if pattern in c]

    def run(self, command, timeout=None):
        with self.lock:
            self.commands.append(command)
        for pattern, result in self.handlers:
            if pattern in command:
                return result

        if command.startswith("pgrep -x tunnel-endpoint"):
            if self.processes:
                return RemoteResult(0, "\n".join(str(p) for p in self.processes) + "\n")
            return RemoteResult(1)
        if "pkill -TERM -x tunnel-endpoint" in command:
            if not self.ignore_term:
                self.processes.clear()
            return RemoteResult(0)
        if "pkill -9 -x tunnel-endpoint" in command:
            self.processes.clear()
            return RemoteResult(0)
        return RemoteResult(0)

    def run_streaming(self, command, on_line, cancel_event=None):
        with self.lock:
            self.commands.append(command)
        for pattern, result in self.handlers:
            if pattern in command:
                return result.exit_code

        if "setsid sudo" not in command:
            return 0

        self._next_pid += 1
        pid = self._next_pid
        self.processes.append(pid)
        for line in self.server_output:
            on_line(line)

        if cancel_event is not None:
            cancel_event.wait()
            return None
        if pid in self.processes:
            self.processes.remove(pid)
        return self.server_exit_code

    def upload(self, data, remote_path, mode=None):
        self.files[remote_path] = data
        if mode is not None:
            self.modes[remote_path] = mode

    def download(self, remote_path):
        return self.files[remote_path]

    def is_alive(self):
        return self.alive

    def close(self):
        self.closed = True


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def endpoint_config():
    private_key, public_key = generate_keypair()
    return EndpointConfig(
        private_key=private_key,
        public_key=public_key,
        listen_port=51821,
        server_addr="10.99.1.1",
        vpn_subnet="10.99.1.0/24",
        routed_addrs=("172.21.101.10", "172.21.101.11"),
        egress_interface="eth0",
    )


@pytest.fixture
def target(tmp_path):
    binary = tmp_path / "tunnel-endpoint"
    binary.write_bytes(b"\x7fELF fake endpoint")
    return DeploymentTarget(
        host="192.168.1.50",
        username="ops",
        password="secret",
        remote_work_dir="/tmp/vpn-server",
        server_binary_path=str(binary),
    )


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """predicate 가 참이 될 때까지 대기"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
