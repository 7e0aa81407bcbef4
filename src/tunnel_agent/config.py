"""
설정 관리 모듈
YAML/JSON 기반 설정 파일 관리 및 기본값 제공
"""

import os
import yaml
import json
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from .models import DeploymentTarget


@dataclass
class RemoteConfig:
    """원격 배포 대상 설정"""
    host: str = ""
    port: int = 22
    username: str = "root"
    password: str = ""
    private_key_path: str = ""
    remote_work_dir: str = "/tmp/vpn-server"
    server_binary_path: str = ""
    binaries_dir: str = "./bin"
    wireguard_go_url: str = ""  # 예: https://example.com/wireguard-go-{os}-{arch}


@dataclass
class EndpointSection:
    """엔드포인트(터널) 설정"""
    client_id: int = 1
    private_ips: list = field(default_factory=list)
    egress_interface: str = ""  # 비워두면 원격에서 자동 감지
    heartbeat_interval: int = 5


@dataclass
class ClientSection:
    """로컬 커넥터 설정"""
    interface_name: str = "wgtunnel"
    work_root: str = "/tmp/tunnel-agent"
    settle_delay: float = 2.0
    persistent_keepalive: int = 25
    monitor_interval: int = 5


@dataclass
class AgentConfig:
    """에이전트 설정"""
    log_dir: str = ""
    log_level: str = "INFO"
    health_check_interval: int = 30


class Config:
    """전체 설정 관리 클래스"""

    DEFAULT_CONFIG_PATHS = [
        "/etc/tunnel-agent/config.yaml",
        "~/.tunnel-agent/config.yaml",
        "./config.yaml",
    ]

    SECTIONS = ("remote", "endpoint", "client", "agent")

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.remote = RemoteConfig()
        self.endpoint = EndpointSection()
        self.client = ClientSection()
        self.agent = AgentConfig()

        if config_path:
            self.load(config_path)
        else:
            self._load_from_default_paths()

    def _load_from_default_paths(self):
        """기본 경로에서 설정 파일 로드"""
        for path in self.DEFAULT_CONFIG_PATHS:
            expanded_path = os.path.expanduser(path)
            if os.path.exists(expanded_path):
                self.load(expanded_path)
                return

    def load(self, path: str):
        """설정 파일 로드"""
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            return

        with open(path, 'r', encoding='utf-8') as f:
            if path.endswith('.json'):
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        self._update_from_dict(data)
        self.config_path = path

    def _update_from_dict(self, data: Dict[str, Any]):
        """딕셔너리에서 설정 업데이트 (알 수 없는 키는 무시)"""
        for section in self.SECTIONS:
            values = data.get(section) or {}
            target = getattr(self, section)
            for key, value in values.items():
                if hasattr(target, key):
                    setattr(target, key, value)

    def save(self, path: Optional[str] = None, include_secrets: bool = False):
        """설정 파일 저장 (기본적으로 비밀번호는 저장하지 않음)"""
        save_path = path or self.config_path or self.DEFAULT_CONFIG_PATHS[0]
        save_path = os.path.expanduser(save_path)

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        data = self.to_dict()
        if not include_secrets:
            data['remote']['password'] = ""

        with open(save_path, 'w', encoding='utf-8') as f:
            if save_path.endswith('.json'):
                json.dump(data, f, indent=2)
            else:
                yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {section: asdict(getattr(self, section)) for section in self.SECTIONS}

    def deployment_target(self) -> DeploymentTarget:
        """remote 섹션으로 배포 대상 생성"""
        return DeploymentTarget(
            host=self.remote.host,
            port=int(self.remote.port),
            username=self.remote.username,
            password=self.remote.password,
            private_key_path=os.path.expanduser(self.remote.private_key_path),
            remote_work_dir=self.remote.remote_work_dir,
            server_binary_path=self.remote.server_binary_path,
        )

    def validate(self) -> List[str]:
        """설정 오류 목록 (비어 있으면 유효)"""
        errors = []
        if not self.remote.host:
            errors.append("remote.host 미설정")
        if not self.remote.password and not self.remote.private_key_path:
            errors.append("remote.password 또는 remote.private_key_path 필요")
        client_id = self.endpoint.client_id
        if isinstance(client_id, bool) or not isinstance(client_id, int) or not 1 <= client_id <= 254:
            errors.append(f"endpoint.client_id 범위 오류 (1-254): {client_id}")
        if self.agent.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"agent.log_level 알 수 없음: {self.agent.log_level}")
        return errors

    def create_sample(self, output_path: str):
        """샘플 설정 파일 생성"""
        template = """# Tunnel Agent Configuration File
# 이 파일을 복사하여 config.yaml로 사용하세요

# 원격 배포 대상
remote:
  host: "192.168.1.50"
  port: 22
  username: "root"
  password: ""  # 비밀번호 또는 private_key_path 중 하나 필요
  private_key_path: "~/.ssh/id_ed25519"
  remote_work_dir: "/tmp/vpn-server"
  server_binary_path: ""  # 비워두면 binaries_dir 에서 플랫폼별 바이너리 선택
  binaries_dir: "./bin"  # tunnel-endpoint-<os>-<arch>
  wireguard_go_url: ""  # 미리 빌드된 wireguard-go 다운로드 URL (선택사항)

# 엔드포인트 설정
endpoint:
  client_id: 1  # 1-254, 서브넷 10.99.<id>.0/24, 포트 51820+<id>
  private_ips:  # 터널을 통해 접근할 원격 사설 주소
    - "172.21.101.10"
    - "172.21.101.11"
  egress_interface: ""  # 비워두면 자동 감지
  heartbeat_interval: 5

# 로컬 커넥터 설정
client:
  interface_name: "wgtunnel"  # 15자 이하
  work_root: "/tmp/tunnel-agent"
  settle_delay: 2.0
  persistent_keepalive: 25
  monitor_interval: 5

# 에이전트 설정
agent:
  log_dir: ""  # 비워두면 콘솔만 사용
  log_level: "INFO"  # DEBUG, INFO, WARNING, ERROR
  health_check_interval: 30
"""

        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(template)
