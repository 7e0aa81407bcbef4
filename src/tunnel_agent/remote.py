"""
원격 실행 모듈
SSH(paramiko) 세션 하나로 명령 실행, 출력 스트리밍, 파일 전송
"""

import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import paramiko

from .exceptions import AuthError, ConnectError, TunnelTimeout
from .logger import get_logger
from .models import DeploymentTarget

CONNECT_TIMEOUT = 30


@dataclass
class RemoteResult:
    """원격 명령 실행 결과"""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


class RemoteExecutor:
    """원격 실행 인터페이스 (테스트에서는 메모리 가짜 구현 사용)"""

    host = ""

    def run(self, command: str, timeout: Optional[float] = None) -> RemoteResult:
        raise NotImplementedError

    def run_streaming(self, command: str, on_line: Callable[[str], None],
                      cancel_event: Optional[threading.Event] = None) -> Optional[int]:
        """명령 실행 중 출력 한 줄씩 전달

        Returns:
            종료 코드, 취소되었으면 None
        """
        raise NotImplementedError

    def upload(self, data: bytes, remote_path: str, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def download(self, remote_path: str) -> bytes:
        raise NotImplementedError

    def is_alive(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class SSHExecutor(RemoteExecutor):
    """paramiko 기반 원격 실행"""

    def __init__(self, client: paramiko.SSHClient, host: str, poll_interval: float = 0.1):
        self.client = client
        self.host = host
        self.poll_interval = poll_interval
        self.logger = get_logger()

    @classmethod
    def open(cls, target: DeploymentTarget) -> "SSHExecutor":
        """인증된 SSH 세션 열기

        Raises:
            AuthError: 인증 실패
            ConnectError: 네트워크 오류 또는 인증 수단 없음
        """
        if not target.password and not target.private_key_path:
            raise ConnectError("no authentication method provided (need password or private key)",
                               host=target.address)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=target.host,
                port=target.port,
                username=target.username,
                password=target.password or None,
                key_filename=target.private_key_path or None,
                timeout=CONNECT_TIMEOUT,
                allow_agent=False,
                look_for_keys=False
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthError(f"SSH authentication failed: {e}", host=target.address) from e
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            raise ConnectError(f"failed to connect to SSH server: {e}", host=target.address) from e

        get_logger().info(f"SSH connected: {target.username}@{target.address}")
        return cls(client, target.address)

    def run(self, command: str, timeout: Optional[float] = None) -> RemoteResult:
        self.logger.debug(f"[{self.host}] $ {command}")
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise TunnelTimeout(f"remote command timed out after {timeout}s",
                                operation=command, host=self.host) from e
        except paramiko.SSHException as e:
            raise ConnectError(f"SSH session error: {e}", operation=command, host=self.host) from e
        return RemoteResult(code, out, err)

    def run_streaming(self, command, on_line, cancel_event=None):
        self.logger.debug(f"[{self.host}] $ {command} (streaming)")
        try:
            channel = self.client.get_transport().open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except (AttributeError, paramiko.SSHException) as e:
            raise ConnectError(f"failed to open SSH session: {e}", operation=command, host=self.host) from e

        buffer = ""
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                if channel.recv_ready():
                    buffer = self._emit_lines(buffer, channel.recv(4096), on_line)
                    continue
                if channel.exit_status_ready():
                    # 종료 직후 도착한 출력까지 읽음
                    while channel.recv_ready():
                        buffer = self._emit_lines(buffer, channel.recv(4096), on_line)
                    break
                time.sleep(self.poll_interval)

            if buffer:
                on_line(buffer)
            return channel.recv_exit_status()
        finally:
            channel.close()

    @staticmethod
    def _emit_lines(buffer: str, chunk: bytes, on_line: Callable[[str], None]) -> str:
        """완성된 줄은 전달하고 남은 조각 반환"""
        buffer += chunk.decode("utf-8", errors="replace")
        *lines, rest = buffer.split("\n")
        for line in lines:
            on_line(line)
        return rest

    def upload(self, data, remote_path, mode=None):
        self.logger.debug(f"[{self.host}] upload {len(data)} bytes -> {remote_path}")
        sftp = self.client.open_sftp()
        try:
            with sftp.file(remote_path, "wb") as f:
                f.write(data)
            if mode is not None:
                sftp.chmod(remote_path, mode)
        except IOError as e:
            raise ConnectError(f"failed to upload file: {e}", operation=f"sftp put {remote_path}",
                               host=self.host) from e
        finally:
            sftp.close()

    def download(self, remote_path):
        sftp = self.client.open_sftp()
        try:
            with sftp.file(remote_path, "rb") as f:
                return f.read()
        except IOError as e:
            raise ConnectError(f"failed to download file: {e}", operation=f"sftp get {remote_path}",
                               host=self.host) from e
        finally:
            sftp.close()

    def is_alive(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def close(self):
        self.client.close()
        self.logger.debug(f"SSH session closed: {self.host}")
