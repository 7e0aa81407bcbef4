"""
포워딩/NAT 방화벽 규칙 관리 모듈
iptables FORWARD 및 POSTROUTING MASQUERADE 규칙 추가/삭제
"""

from typing import Optional

from . import commands
from .logger import get_logger
from .runner import LocalRunner

# 규칙 중복 삭제 반복 상한
MAX_DELETE_ROUNDS = 64


class FirewallManager:
    """터널 인터페이스용 포워딩 규칙 관리 클래스"""

    def __init__(self, interface: str, subnet: str, egress_interface: str,
                 runner: Optional[LocalRunner] = None):
        self.interface = interface
        self.subnet = subnet
        self.egress_interface = egress_interface
        self.runner = runner or LocalRunner()
        self.logger = get_logger()

    @property
    def enabled(self) -> bool:
        return bool(self.egress_interface)

    def enable_ip_forwarding(self) -> bool:
        """커널 IP 포워딩 활성화 (실패는 경고만)"""
        result = self.runner.run(commands.enable_forwarding())
        if result.returncode != 0:
            self.logger.warning(f"Failed to enable IP forwarding: {(result.stdout or '').strip()}")
            return False
        self.logger.debug("IP forwarding enabled")
        return True

    def apply(self) -> int:
        """포워딩/NAT 규칙 추가

        Returns:
            int: 추가된 규칙 수
        """
        if not self.enabled:
            self.logger.debug("No egress interface configured, skipping NAT rules")
            return 0

        added = 0
        for rule in commands.forward_rules(self.interface, self.subnet, self.egress_interface):
            result = self.runner.run(rule)
            if result.returncode == 0:
                added += 1
                self.logger.debug(f"Added iptables rule: {rule}")
                continue
            output = result.stdout or ""
            if "File exists" in output or "already" in output:
                self.logger.debug(f"iptables rule already present: {rule}")
            else:
                self.logger.warning(f"Failed to add iptables rule: {rule} ({output.strip()})")

        self.logger.info(f"Forwarding rules applied for {self.interface} -> {self.egress_interface}")
        return added

    def remove(self) -> int:
        """규칙 삭제 - 반복 시작으로 중복된 규칙까지 없어질 때까지 삭제

        Returns:
            int: 삭제된 규칙 수
        """
        if not self.enabled:
            return 0

        total = 0
        for rule in commands.forward_rules(self.interface, self.subnet, self.egress_interface, delete=True):
            deleted = 0
            for _ in range(MAX_DELETE_ROUNDS):
                if self.runner.run(rule).returncode != 0:
                    break
                deleted += 1

            if deleted > 1:
                self.logger.info(f"Deleted duplicate iptables rules: {rule} (count={deleted})")
            elif deleted == 0:
                self.logger.debug(f"iptables rule not found (already deleted): {rule}")
            total += deleted

        return total
