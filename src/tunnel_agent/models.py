"""
공용 데이터 모델
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class NetworkAllocation:
    """클라이언트 ID 기반 네트워크 할당 결과"""
    client_id: int
    subnet: str
    server_addr: str
    client_addr: str
    port: int


@dataclass
class DeploymentTarget:
    """원격 배포 대상 (하나의 배포 세션에서만 사용, 저장하지 않음)"""
    host: str
    port: int = 22
    username: str = "root"
    password: str = ""
    private_key_path: str = ""
    remote_work_dir: str = "/tmp/vpn-server"
    server_binary_path: str = ""

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class EndpointConfig:
    """엔드포인트 설정 - 시작 후 변경 불가 (재배포로만 변경)"""
    private_key: str
    public_key: str
    listen_port: int
    server_addr: str
    vpn_subnet: str
    routed_addrs: Tuple[str, ...] = ()
    egress_interface: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["routed_addrs"] = list(self.routed_addrs)
        return data


@dataclass
class ClientConfig:
    """로컬 커넥터 설정"""
    private_key: str
    public_key: str
    server_public_key: str
    server_endpoint: str
    client_addr: str
    server_addr: str
    routed_addrs: List[str] = field(default_factory=list)
    persistent_keepalive: int = 25


@dataclass
class PeerSession:
    """엔드포인트에 등록된 피어"""
    public_key: str
    client_addr: str
    allowed_subnets: List[str]
    connected_at: datetime = field(default_factory=datetime.now)
    last_handshake: Optional[datetime] = None
    bytes_sent: int = 0
    bytes_received: int = 0


@dataclass
class ConnectionStats:
    """로컬 연결 상태 스냅샷"""
    connected: bool = False
    connected_at: Optional[datetime] = None
    last_handshake: Optional[datetime] = None
    bytes_sent: int = 0
    bytes_received: int = 0


@dataclass
class DeploymentInfo:
    """배포 결과 정보"""
    host: str
    listen_port: int
    server_public_key: str
    server_addr: str
    binary_path: str
    config_path: str
    log_file: str


class EndpointState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
