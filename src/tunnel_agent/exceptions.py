"""
터널 에이전트 예외 정의
"""

from typing import Optional


class TunnelError(Exception):
    """모든 터널 에이전트 오류의 기본 클래스"""

    def __init__(self, message: str, operation: Optional[str] = None,
                 host: Optional[str] = None, output: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.host = host
        self.output = output

    def __str__(self) -> str:
        parts = [self.message]
        if self.host:
            parts.append(f"host: {self.host}")
        if self.operation:
            parts.append(f"command: {self.operation}")
        if self.output:
            parts.append(f"output: {self.output.strip()}")
        return "\n".join(parts)


class AuthError(TunnelError):
    """SSH 인증 실패"""


class ConnectError(TunnelError):
    """원격 호스트 연결 실패"""


class NotConnected(TunnelError):
    """연결되지 않은 상태에서 작업을 요청함"""


class AlreadyConnected(TunnelError):
    """이미 연결된 상태"""


class DependencyUnavailable(TunnelError):
    """WireGuard 엔진을 사용할 수 없음 (모든 설치 방법 실패)"""


class DeploymentError(TunnelError):
    """배포 또는 서버 시작 실패"""


class AlreadyRunning(TunnelError):
    """엔드포인트가 이미 실행 중"""


class NotRunning(TunnelError):
    """엔드포인트가 실행 중이 아님"""


class DuplicatePeer(TunnelError):
    """이미 등록된 피어"""


class PeerNotFound(TunnelError):
    """등록되지 않은 피어"""


class PrivilegeError(TunnelError):
    """권한 상승(sudo) 불가 - 조치 방법을 메시지에 포함"""


class Cancelled(TunnelError):
    """외부 취소 요청으로 중단됨"""


class HealthCheckError(TunnelError):
    """헬스체크 실패"""


class TunnelTimeout(TunnelError, TimeoutError):
    """제한 시간 초과"""


class InvalidKey(TunnelError, ValueError):
    """키 인코딩 또는 길이 오류"""


class OutOfRange(TunnelError, ValueError):
    """허용 범위를 벗어난 값"""
