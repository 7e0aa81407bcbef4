"""
WireGuard 설정 파일 렌더링
엔드포인트(wg setconf) 및 클라이언트(wg-quick) 설정
"""

from typing import Iterable, List

import yaml
from jinja2 import Template

from .models import ClientConfig, EndpointConfig, PeerSession

# wg setconf 용: Address 는 ip address add 로 별도 설정
ENDPOINT_CONF_TEMPLATE = Template("""[Interface]
PrivateKey = {{ private_key }}
ListenPort = {{ listen_port }}
{% for peer in peers %}
[Peer]
PublicKey = {{ peer.public_key }}
AllowedIPs = {{ peer.allowed_subnets | join(', ') }}
{% endfor %}""", keep_trailing_newline=True)

CLIENT_CONF_TEMPLATE = Template("""[Interface]
PrivateKey = {{ private_key }}
Address = {{ client_addr }}/24

[Peer]
PublicKey = {{ server_public_key }}
Endpoint = {{ server_endpoint }}
AllowedIPs = {{ allowed_ips | join(', ') }}
{% if keepalive %}PersistentKeepalive = {{ keepalive }}
{% endif %}""", keep_trailing_newline=True)


def render_endpoint_conf(config: EndpointConfig, peers: Iterable[PeerSession]) -> str:
    """엔드포인트 설정 - 피어는 공개키 순으로 정렬해 재생성해도 동일한 결과"""
    ordered = sorted(peers, key=lambda p: p.public_key)
    return ENDPOINT_CONF_TEMPLATE.render(
        private_key=config.private_key,
        listen_port=config.listen_port,
        peers=ordered,
    )


def render_client_conf(config: ClientConfig, allowed_ips: List[str]) -> str:
    """클라이언트 설정"""
    return CLIENT_CONF_TEMPLATE.render(
        private_key=config.private_key,
        client_addr=config.client_addr,
        server_public_key=config.server_public_key,
        server_endpoint=config.server_endpoint,
        allowed_ips=allowed_ips,
        keepalive=config.persistent_keepalive,
    )


def render_endpoint_yaml(config: EndpointConfig) -> str:
    """원격에 업로드할 엔드포인트 설정 (YAML)"""
    header = "# Tunnel Endpoint Configuration\n"
    return header + yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False)
