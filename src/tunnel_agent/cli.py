"""
CLI 메인 인터페이스
Click 및 Rich 기반 컨트롤러 CLI (tunnel-agent) 및 엔드포인트 프로세스 (tunnel-endpoint)
"""

import signal
import sys
import threading
import time
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import Config
from .connector import LocalConnector
from .deployer import Deployer
from .endpoint import TunnelEndpoint
from .exceptions import Cancelled, HealthCheckError, TunnelError, TunnelTimeout
from .installer import default_strategies
from .keys import derive_public, generate_keypair
from .logger import init_logger, get_logger
from .models import ClientConfig, EndpointConfig
from .network import NetworkChecker, allocate_network, detect_egress_interface, parse_addr_list

console = Console()

# 엔드포인트가 포트를 열 때까지 대기 (초)
STARTUP_WAIT = 30


def _load_config(config_path, debug=False) -> Config:
    cfg = Config(config_path)
    init_logger(cfg.agent.log_dir or None, cfg.agent.log_level, debug)
    return cfg


def _fail(message: str):
    console.print(f"[red]✗ {message}[/red]")
    sys.exit(1)


def _endpoint_config(cfg: Config, client_id: int):
    """할당 결과와 새 서버 키로 엔드포인트 설정 생성"""
    allocation = allocate_network(client_id)
    private_key, public_key = generate_keypair()
    endpoint_config = EndpointConfig(
        private_key=private_key,
        public_key=public_key,
        listen_port=allocation.port,
        server_addr=allocation.server_addr,
        vpn_subnet=allocation.subnet,
        routed_addrs=tuple(str(a) for a in cfg.endpoint.private_ips),
        egress_interface=cfg.endpoint.egress_interface,
    )
    return allocation, endpoint_config


def _deployer(cfg: Config) -> Deployer:
    return Deployer(
        binaries_dir=cfg.remote.binaries_dir,
        strategies=default_strategies(cfg.remote.wireguard_go_url),
        heartbeat_interval=cfg.endpoint.heartbeat_interval,
    )


def _show_deployment(info):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("호스트", info.host)
    table.add_row("포트", str(info.listen_port))
    table.add_row("서버 주소", info.server_addr)
    table.add_row("서버 공개키", info.server_public_key)
    table.add_row("바이너리", info.binary_path)
    table.add_row("설정 파일", info.config_path)
    table.add_row("로그 파일", info.log_file)
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def cli():
    """Tunnel Agent

    원격 호스트에 WireGuard 터널 엔드포인트를 배포하고 로컬에서 연결합니다.
    """
    pass


@cli.command()
@click.option('--private-key', help='기존 개인키 (공개키만 계산)')
def keygen(private_key):
    """WireGuard 키 쌍 생성"""
    try:
        if private_key:
            public_key = derive_public(private_key)
        else:
            private_key, public_key = generate_keypair()
    except TunnelError as e:
        _fail(str(e))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("개인키", private_key)
    table.add_row("공개키", public_key)
    console.print(table)


@cli.command()
@click.argument('client_id', type=int)
def allocate(client_id):
    """클라이언트 ID 로 네트워크/포트 계산"""
    try:
        allocation = allocate_network(client_id)
    except TunnelError as e:
        _fail(str(e))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("서브넷", allocation.subnet)
    table.add_row("서버 주소", allocation.server_addr)
    table.add_row("클라이언트 주소", allocation.client_addr)
    table.add_row("포트", str(allocation.port))
    console.print(table)


@cli.command()
@click.argument('output', type=click.Path(), default='./config.yaml')
def init(output):
    """샘플 설정 파일 생성"""
    cfg = Config()
    cfg.create_sample(output)
    console.print(f"[green]✓ 샘플 설정 파일 생성: {output}[/green]")
    console.print(f"[cyan]설정 파일을 편집한 후 다음 명령어로 실행하세요:[/cyan]")
    console.print(f"[cyan]  tunnel-agent connect --config {output}[/cyan]")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
def validate(config):
    """설정 파일 유효성 검사"""
    try:
        cfg = Config(config)
    except (OSError, ValueError) as e:
        _fail(f"설정 파일 오류: {e}")

    errors = cfg.validate()
    if errors:
        for error in errors:
            console.print(f"[red]✗ {error}[/red]")
        sys.exit(1)

    console.print("[green]✓ 설정 파일이 유효합니다.[/green]")

    allocation = allocate_network(cfg.endpoint.client_id)
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("원격 호스트", f"{cfg.remote.username}@{cfg.remote.host}:{cfg.remote.port}")
    table.add_row("인증", "키 파일" if cfg.remote.private_key_path else "비밀번호")
    table.add_row("서브넷", allocation.subnet)
    table.add_row("포트", str(allocation.port))
    table.add_row("사설 주소", ", ".join(str(a) for a in cfg.endpoint.private_ips) or "-")
    console.print(table)


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--client-id', type=int, help='클라이언트 ID (설정 파일 값 대신 사용)')
@click.option('--debug', is_flag=True, help='디버그 모드')
def deploy(config, client_id, debug):
    """엔드포인트를 원격 호스트에 배포"""
    cfg = _load_config(config, debug)
    deployer = _deployer(cfg)
    try:
        _, endpoint_config = _endpoint_config(cfg, client_id or cfg.endpoint.client_id)
        target = cfg.deployment_target()
        deployer.connect(target)
        info = deployer.deploy(target, endpoint_config)
    except TunnelError as e:
        _fail(f"배포 실패: {e}")
    finally:
        deployer.disconnect()

    console.print("[green]✓ 배포 완료[/green]")
    _show_deployment(info)


@cli.command(name="start-remote")
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--client-id', type=int, help='클라이언트 ID (설정 파일 값 대신 사용)')
@click.option('--debug', is_flag=True, help='디버그 모드')
def start_remote(config, client_id, debug):
    """엔드포인트 배포 후 실행 (Ctrl+C 로 중지)"""
    cfg = _load_config(config, debug)
    deployer = _deployer(cfg)
    cancel = threading.Event()
    try:
        _, endpoint_config = _endpoint_config(cfg, client_id or cfg.endpoint.client_id)
        target = cfg.deployment_target()
        deployer.connect(target)
        info = deployer.deploy(target, endpoint_config)
        _show_deployment(info)
        deployer.start_heartbeat(target.remote_work_dir)
        try:
            deployer.start_server(target.remote_work_dir, endpoint_config, cancel)
        except KeyboardInterrupt:
            cancel.set()
            console.print("\n[yellow]사용자에 의해 중단되었습니다.[/yellow]")
            deployer.stop_heartbeat()
            deployer.stop_server()
    except Cancelled:
        console.print("[yellow]엔드포인트 중지됨[/yellow]")
    except TunnelError as e:
        _fail(f"실행 실패: {e}")
    finally:
        deployer.disconnect()


@cli.command(name="stop-remote")
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
def stop_remote(config):
    """원격 엔드포인트 중지"""
    cfg = _load_config(config)
    deployer = _deployer(cfg)
    try:
        deployer.connect(cfg.deployment_target())
        stopped = deployer.stop_server()
    except TunnelError as e:
        _fail(str(e))
    finally:
        deployer.disconnect()

    if stopped:
        console.print("[green]✓ 엔드포인트 중지 완료[/green]")
    else:
        console.print("[cyan]실행 중인 엔드포인트가 없습니다.[/cyan]")


@cli.command(name="status-remote")
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--lines', '-n', type=int, default=20, help='표시할 로그 줄 수')
def status_remote(config, lines):
    """원격 엔드포인트 상태 및 최근 로그"""
    cfg = _load_config(config)
    deployer = _deployer(cfg)
    logs = ""
    try:
        deployer.connect(cfg.deployment_target())
        running, pid = deployer.get_server_status()
        if running:
            try:
                logs = deployer.get_server_logs(cfg.remote.remote_work_dir, lines)
            except TunnelError as e:
                get_logger().warning(f"Failed to read server logs: {e}")
    except TunnelError as e:
        _fail(str(e))
    finally:
        deployer.disconnect()

    if running:
        console.print(f"[green]✓ 엔드포인트 실행 중 (PID {pid})[/green]")
        if logs:
            console.print(Panel(logs.rstrip(), title="server.log", border_style="cyan"))
    else:
        console.print("[yellow]엔드포인트가 실행 중이 아닙니다.[/yellow]")
        sys.exit(1)


def _wait_for_endpoint(deployer: Deployer, port: int, server_thread: threading.Thread) -> bool:
    deadline = time.monotonic() + STARTUP_WAIT
    while time.monotonic() < deadline and server_thread.is_alive():
        if deployer.is_port_in_use(port):
            return True
        time.sleep(1)
    return False


def _preflight(checker: NetworkChecker, host: str, port: int) -> bool:
    """원격 호스트 사전 점검 (DNS, ping, SSH 포트)

    ICMP 는 막혀 있을 수 있어 ping 실패는 경고만 출력한다.

    Returns:
        bool: SSH 포트 연결 가능 여부
    """
    checks = [
        checker.check_dns(host),
        checker.check_ping(host, count=1, timeout=2),
        checker.check_port(host, port),
    ]
    for ok, message in checks:
        console.print(f"[{'green' if ok else 'yellow'}]{message}[/]")
    return checks[-1][0]


def _monitor_tunnel(connector: LocalConnector, deployer: Deployer, server_thread: threading.Thread,
                    cancel: threading.Event, interval: float, health_interval: float) -> bool:
    """연결 유지 중 통계 출력 및 주기적 헬스체크

    Returns:
        bool: 취소/연결 해제로 끝났으면 True, 엔드포인트 종료나 헬스체크 실패면 False
    """
    logger = get_logger()
    next_check = time.monotonic() + health_interval
    for stats in connector.monitor(interval, cancel):
        console.print(
            f"[cyan]송신 {stats.bytes_sent} B / 수신 {stats.bytes_received} B"
            f"{' / 핸드셰이크 ' + stats.last_handshake.strftime('%H:%M:%S') if stats.last_handshake else ''}[/cyan]"
        )
        if not server_thread.is_alive():
            console.print("[red]원격 엔드포인트가 종료되었습니다.[/red]")
            return False

        if health_interval > 0 and time.monotonic() >= next_check:
            next_check = time.monotonic() + health_interval
            try:
                deployer.check_health()
            except (HealthCheckError, TunnelTimeout) as e:
                logger.error(f"Health check failed: {e}")
                console.print(f"[red]✗ 헬스체크 실패: {e.message}[/red]")
                return False
    return True


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--client-id', type=int, help='클라이언트 ID (설정 파일 값 대신 사용)')
@click.option('--sudo-password', default="", help='로컬 sudo 비밀번호 (비밀번호 없는 sudo 면 생략)')
@click.option('--debug', is_flag=True, help='디버그 모드')
def connect(config, client_id, sudo_password, debug):
    """배포, 실행, 로컬 연결까지 전체 흐름 (Ctrl+C 로 정리 후 종료)"""
    cfg = _load_config(config, debug)
    logger = get_logger()

    console.print(Panel.fit(
        "[bold cyan]Tunnel Agent[/bold cyan]\n"
        "원격 사설 네트워크에 WireGuard 터널로 연결합니다.",
        border_style="cyan"
    ))

    deployer = _deployer(cfg)
    cancel = threading.Event()
    server_errors = []
    server_thread = None
    connector = None

    def run_server(work_dir, endpoint_config):
        try:
            deployer.start_server(work_dir, endpoint_config, cancel)
        except Cancelled:
            pass
        except TunnelError as e:
            server_errors.append(e)

    try:
        allocation, endpoint_config = _endpoint_config(cfg, client_id or cfg.endpoint.client_id)
        target = cfg.deployment_target()
        checker = NetworkChecker(debug)
        _preflight(checker, target.host, target.port)

        deployer.connect(target)
        deployer.deploy(target, endpoint_config)
        deployer.set_private_addrs(endpoint_config.routed_addrs)

        deployer.start_heartbeat(target.remote_work_dir)
        server_thread = threading.Thread(target=run_server, args=(target.remote_work_dir, endpoint_config),
                                         name="remote-endpoint", daemon=True)
        server_thread.start()

        if not _wait_for_endpoint(deployer, allocation.port, server_thread):
            if server_errors:
                raise server_errors[0]
            _fail("엔드포인트가 시작되지 않았습니다. status-remote 로 로그를 확인하세요.")

        client_private, client_public = generate_keypair()
        deployer.register_peer(client_public, allocation.client_addr, allocation.port)

        connector = LocalConnector(
            ClientConfig(
                private_key=client_private,
                public_key=client_public,
                server_public_key=endpoint_config.public_key,
                server_endpoint=f"{target.host}:{allocation.port}",
                client_addr=allocation.client_addr,
                server_addr=allocation.server_addr,
                routed_addrs=list(endpoint_config.routed_addrs),
                persistent_keepalive=cfg.client.persistent_keepalive,
            ),
            settle_delay=cfg.client.settle_delay,
            work_root=cfg.client.work_root,
            interface_name=cfg.client.interface_name,
        )
        connector.connect(sudo_password)
        ok, message = checker.check_interface(connector.interface)
        console.print(f"[{'green' if ok else 'yellow'}]{message}[/]")
        console.print("[bold green]✓ 터널 연결 완료[/bold green] (Ctrl+C 로 종료)")

        _monitor_tunnel(connector, deployer, server_thread, cancel,
                        cfg.client.monitor_interval, cfg.agent.health_check_interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]사용자에 의해 중단되었습니다.[/yellow]")
    except TunnelError as e:
        logger.error(f"Connect failed: {e}")
        console.print(f"[red]✗ {e}[/red]")
        cancel.set()
    finally:
        cancel.set()
        if connector is not None and connector.connected:
            try:
                connector.disconnect(sudo_password)
            except TunnelError as e:
                logger.warning(f"Local disconnect failed: {e}")
        if server_thread is not None:
            server_thread.join(timeout=15)
        deployer.disconnect()

    if server_errors:
        sys.exit(1)


def main():
    """메인 엔트리 포인트"""
    cli()


@click.command(name="tunnel-endpoint")
@click.option('--port', type=int, default=51820, show_default=True, help='VPN 수신 포트')
@click.option('--server-ip', required=True, help='서버 VPN 주소 (예: 10.99.1.1)')
@click.option('--vpn-network', required=True, help='VPN 네트워크 CIDR (예: 10.99.1.0/24)')
@click.option('--private-ips', default="", help='라우팅할 사설 주소 (쉼표 구분)')
@click.option('--interface', 'egress', default="", help='외부 네트워크 인터페이스 (비워두면 자동 감지)')
@click.option('--private-key', default="", help='서버 개인키 (비워두면 생성)')
@click.option('--heartbeat-file', default="", help='하트비트 파일 경로 (비워두면 자가 종료 비활성화)')
@click.option('--log-file', default="", help='로그 파일 경로 (비워두면 콘솔)')
@click.option('--verbose', is_flag=True, help='상세 로그')
@click.version_option(version=__version__)
def endpoint_cli(port, server_ip, vpn_network, private_ips, egress, private_key,
                 heartbeat_file, log_file, verbose):
    """원격 호스트에서 실행되는 터널 엔드포인트 프로세스"""
    logger = init_logger(None, "INFO", verbose, log_file=log_file or None)
    logger.info(f"=== Tunnel Endpoint Starting (port {port}) ===")

    try:
        if private_key:
            public_key = derive_public(private_key)
        else:
            private_key, public_key = generate_keypair()
            logger.info(f"Generated new key pair (public key: {public_key})")
        routed = parse_addr_list(private_ips)
    except (TunnelError, ValueError) as e:
        logger.error(f"Invalid arguments: {e}")
        sys.exit(1)

    if not egress:
        egress = detect_egress_interface() or ""
        if egress:
            logger.info(f"Detected external interface: {egress}")
        else:
            logger.warning("Failed to auto-detect interface, NAT/forwarding will not be configured")

    config = EndpointConfig(
        private_key=private_key,
        public_key=public_key,
        listen_port=port,
        server_addr=server_ip,
        vpn_subnet=vpn_network,
        routed_addrs=tuple(routed),
        egress_interface=egress,
    )
    logger.info(f"Server configuration: public_key={public_key} server_ip={server_ip} "
                f"vpn_network={vpn_network} private_ips={len(routed)}")

    cancel = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received shutdown signal: {signal.Signals(signum).name}")
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, handle_signal)

    endpoint = TunnelEndpoint(config, heartbeat_file=heartbeat_file or None)
    try:
        endpoint.start()
    except TunnelError as e:
        logger.error(f"Server failed: {e}")
        sys.exit(1)

    logger.info("Server running, waiting for shutdown signal...")
    code = endpoint.serve(cancel)
    logger.info("Server cleanup completed")
    sys.exit(code)


def endpoint_main():
    """엔드포인트 엔트리 포인트"""
    endpoint_cli()


if __name__ == '__main__':
    main()
