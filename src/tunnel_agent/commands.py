"""
인터페이스/피어/방화벽 명령 빌더
원격 및 로컬에서 실행하는 명령을 정해진 작업 목록으로 제한
"""

import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Tuple


class Op(str, Enum):
    CREATE_INTERFACE = "create-interface"
    DELETE_INTERFACE = "delete-interface"
    LINK_UP = "link-up"
    ADD_ADDRESS = "add-address"
    SET_CONFIG = "set-config"
    SET_PEER = "set-peer"
    REMOVE_PEER = "remove-peer"
    ADD_FORWARD_RULE = "add-forward-rule"
    DELETE_FORWARD_RULE = "delete-forward-rule"
    ENABLE_FORWARDING = "enable-forwarding"


@dataclass(frozen=True)
class Command:
    """실행할 명령 하나"""
    op: Op
    argv: Tuple[str, ...]

    def shell(self, sudo: bool = False) -> str:
        """원격 셸에서 실행할 문자열"""
        argv = ("sudo",) + self.argv if sudo else self.argv
        return " ".join(shlex.quote(a) for a in argv)

    def __str__(self) -> str:
        return self.shell()


def create_interface(name: str) -> Command:
    return Command(Op.CREATE_INTERFACE, ("ip", "link", "add", "name", name, "type", "wireguard"))


def delete_interface(name: str) -> Command:
    return Command(Op.DELETE_INTERFACE, ("ip", "link", "delete", name))


def link_up(name: str) -> Command:
    return Command(Op.LINK_UP, ("ip", "link", "set", "up", "dev", name))


def add_address(name: str, cidr: str) -> Command:
    return Command(Op.ADD_ADDRESS, ("ip", "address", "add", "dev", name, cidr))


def set_config(name: str, config_path: str) -> Command:
    return Command(Op.SET_CONFIG, ("wg", "setconf", name, config_path))


def set_peer(name: str, public_key: str, allowed: Iterable[str]) -> Command:
    return Command(Op.SET_PEER, ("wg", "set", name, "peer", public_key, "allowed-ips", ",".join(allowed)))


def remove_peer(name: str, public_key: str) -> Command:
    return Command(Op.REMOVE_PEER, ("wg", "set", name, "peer", public_key, "remove"))


def enable_forwarding() -> Command:
    return Command(Op.ENABLE_FORWARDING, ("sysctl", "-w", "net.ipv4.ip_forward=1"))


def _forward_rule_specs(name: str, subnet: str, egress: str) -> Tuple[tuple, ...]:
    # (table 인자, chain, 매칭 조건)
    return (
        ((), "FORWARD", ("-i", name, "-j", "ACCEPT")),
        ((), "FORWARD", ("-o", name, "-j", "ACCEPT")),
        (("-t", "nat"), "POSTROUTING", ("-s", subnet, "-o", egress, "-j", "MASQUERADE")),
    )


def forward_rules(name: str, subnet: str, egress: str, delete: bool = False) -> Tuple[Command, ...]:
    """FORWARD 허용 및 NAT(MASQUERADE) 규칙"""
    op = Op.DELETE_FORWARD_RULE if delete else Op.ADD_FORWARD_RULE
    action = "-D" if delete else "-A"
    commands = []
    for table, chain, match in _forward_rule_specs(name, subnet, egress):
        commands.append(Command(op, ("iptables",) + tuple(table) + (action, chain) + tuple(match)))
    return tuple(commands)
