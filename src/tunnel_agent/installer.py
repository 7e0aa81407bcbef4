"""
WireGuard 설치 모듈
원격 설치 전략 체인 (커널 모듈 → wireguard-go → 패키지 매니저 → 소스 빌드)
및 엔드포인트 로컬 엔진 확인/설치
"""

import os
import platform
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import requests

from . import commands
from .exceptions import DependencyUnavailable, TunnelError
from .logger import get_logger
from .runner import LocalRunner

WIREGUARD_GO_REPO = "https://git.zx2c4.com/wireguard-go"
WIREGUARD_GO_MODULE = "golang.zx2c4.com/wireguard/cmd/wireguard-go@latest"
REMOTE_ENGINE_PATH = "/usr/local/bin/wireguard-go"

MANUAL_INSTALL_HINT = """Please install WireGuard manually:
  • Installation guide: https://www.wireguard.com/install/
  • Supported OS: Ubuntu, Debian, CentOS, RHEL, Rocky Linux, Arch

After installation, try connecting again."""


class RemoteShell(Protocol):
    """설치 전략이 사용하는 원격 실행 기능"""

    def run(self, command: str) -> Tuple[int, str]: ...

    def run_logged(self, command: str) -> int: ...

    def upload_file(self, local_path: str, remote_path: str) -> None: ...

    def write(self, message: str) -> None: ...


@dataclass
class StrategyResult:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class RemoteSystemInfo:
    """원격 OS 정보"""
    os_release: str = ""
    version_id: str = ""
    kernel: str = ""
    arch: str = ""

    @property
    def distro(self) -> str:
        lower = self.os_release.lower()
        if "ubuntu" in lower or "debian" in lower:
            return "debian"
        if "centos" in lower or "rocky" in lower:
            return "centos"
        if "red hat" in lower or "rhel" in lower:
            return "rhel"
        if "arch" in lower:
            return "arch"
        return "unknown"

    @property
    def custom_kernel(self) -> bool:
        # 커널 모듈을 지원하지 않는 어플라이언스 커널
        lower = self.kernel.lower()
        return ".lb" in lower or "lightbits" in lower


def probe_system(shell: RemoteShell) -> RemoteSystemInfo:
    """원격 시스템 정보 수집"""
    _, os_release = shell.run("cat /etc/os-release 2>/dev/null")
    _, version = shell.run("grep -E '^VERSION_ID=' /etc/os-release 2>/dev/null | cut -d'=' -f2 | tr -d '\"'")
    _, kernel = shell.run("uname -r")
    _, arch = shell.run("uname -m")
    return RemoteSystemInfo(
        os_release=os_release,
        version_id=version.strip(),
        kernel=kernel.strip(),
        arch=arch.strip(),
    )


def package_install_command(info: RemoteSystemInfo) -> Optional[Tuple[str, str]]:
    """(OS 이름, 설치 명령) 반환, 지원하지 않는 OS 면 None"""
    distro = info.distro
    if distro == "debian":
        return "Ubuntu/Debian", "sudo apt-get update -qq && sudo apt-get install -y wireguard"
    if distro == "centos":
        return ("CentOS/Rocky",
                "sudo yum install -y epel-release elrepo-release && "
                "sudo yum install -y kmod-wireguard wireguard-tools")
    if distro == "rhel":
        major = "7" if info.version_id.startswith("7") else "8"
        return ("Red Hat Enterprise Linux",
                f"sudo yum install -y https://dl.fedoraproject.org/pub/epel/epel-release-latest-{major}.noarch.rpm "
                f"https://www.elrepo.org/elrepo-release-{major}.el{major}.elrepo.noarch.rpm && "
                "sudo yum install -y kmod-wireguard wireguard-tools")
    if distro == "arch":
        return "Arch Linux", "sudo pacman -Sy --noconfirm wireguard-tools"
    return None


def go_arch(machine: str) -> Optional[str]:
    """uname -m 결과를 GOARCH 로 변환"""
    machine = machine.strip()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    if machine in ("aarch64", "arm64"):
        return "arm64"
    return None


def kernel_probe_command() -> str:
    probe = "wgtest"
    create = commands.create_interface(probe).shell(sudo=True)
    delete = commands.delete_interface(probe).shell(sudo=True)
    return f"{create} 2>/dev/null && {delete} 2>/dev/null"


class InstallStrategy:
    """설치 전략 기본 클래스"""

    name = "strategy"

    def attempt(self, shell: RemoteShell, info: RemoteSystemInfo) -> StrategyResult:
        raise NotImplementedError

    def ok(self, detail: str = "") -> StrategyResult:
        return StrategyResult(self.name, True, detail)

    def fail(self, detail: str) -> StrategyResult:
        return StrategyResult(self.name, False, detail)


class KernelModuleProbe(InstallStrategy):
    """임시 인터페이스 생성/삭제로 커널 모듈 지원 확인"""

    name = "kernel-module"

    def attempt(self, shell, info):
        shell.write("Checking for WireGuard kernel module...")
        rc, _ = shell.run(kernel_probe_command())
        if rc == 0:
            return self.ok("WireGuard kernel module available")
        return self.fail("kernel module not available")


class UserspaceBinaryProbe(InstallStrategy):
    name = "wireguard-go"

    def attempt(self, shell, info):
        shell.write("Checking for wireguard-go (userspace implementation)...")
        rc, out = shell.run("which wireguard-go")
        if rc == 0:
            return self.ok(f"wireguard-go available at {out.strip()}")
        return self.fail("wireguard-go not found on PATH")


class PackageManagerInstall(InstallStrategy):
    """패키지 매니저로 설치 후 커널 모듈 재확인"""

    name = "package-manager"

    def attempt(self, shell, info):
        rc, _ = shell.run("which wg")
        if rc == 0:
            if info.custom_kernel:
                return self.fail(f"custom kernel {info.kernel} cannot load the module; wireguard-go is required")
            return self.fail(
                f"WireGuard tools are installed but the kernel module is not available (kernel {info.kernel}); "
                "try 'sudo modprobe wireguard'"
            )

        install = package_install_command(info)
        if install is None:
            return self.fail("OS not supported for auto-installation")

        os_name, command = install
        shell.write(f"Installing WireGuard on {os_name}... (this may take a few minutes)")
        if info.custom_kernel:
            shell.write(f"Note: custom kernel detected ({info.kernel}), kernel module won't work")
        shell.write("--- Installation Output ---")
        if shell.run_logged(command) != 0:
            return self.fail(f"package installation failed on {os_name}: {command}")
        shell.write("--- Installation Complete ---")

        rc, _ = shell.run(f"sudo modprobe wireguard 2>/dev/null && {kernel_probe_command()}")
        if rc == 0:
            return self.ok(f"installed on {os_name}, kernel module loaded")
        return self.fail(f"installed tools on {os_name} but kernel module is not working")


class RemoteGoInstall(InstallStrategy):
    """원격에 Go 가 있으면 go install 후 /usr/local/bin 에 링크"""

    name = "remote-go-install"

    def attempt(self, shell, info):
        rc, _ = shell.run("which go")
        if rc != 0:
            return self.fail("Go toolchain not available on remote")
        shell.write("Go is installed on remote, using 'go install'")
        if shell.run_logged(f"go install {WIREGUARD_GO_MODULE}") != 0:
            return self.fail("go install failed")
        rc, out = shell.run(f"test -f ~/go/bin/wireguard-go && sudo ln -sf ~/go/bin/wireguard-go {REMOTE_ENGINE_PATH}")
        if rc != 0:
            return self.fail(f"failed to link wireguard-go: {out.strip()}")
        return self.ok("wireguard-go installed and linked")


class _UploadStrategy(InstallStrategy):
    """로컬에서 준비한 바이너리를 업로드"""

    def prepare(self, info: RemoteSystemInfo, workdir: str) -> str:
        raise NotImplementedError

    def attempt(self, shell, info):
        with tempfile.TemporaryDirectory(prefix="wireguard-go-") as workdir:
            try:
                local_binary = self.prepare(info, workdir)
            except (OSError, subprocess.SubprocessError, requests.RequestException, RuntimeError) as e:
                return self.fail(str(e))

            remote_tmp = "/tmp/wireguard-go"
            try:
                shell.upload_file(local_binary, remote_tmp)
            except (OSError, TunnelError) as e:
                return self.fail(f"failed to upload wireguard-go: {e}")

        for command in (f"chmod +x {remote_tmp}", f"sudo mv {remote_tmp} {REMOTE_ENGINE_PATH}"):
            rc, out = shell.run(command)
            if rc != 0:
                return self.fail(f"failed to install wireguard-go: {out.strip()}")
        return self.ok("wireguard-go uploaded")


class DownloadUpload(_UploadStrategy):
    """설정된 URL 에서 미리 빌드된 wireguard-go 다운로드 후 업로드"""

    name = "download-upload"

    def __init__(self, url_template: str, timeout: int = 60):
        self.url_template = url_template
        self.timeout = timeout

    def attempt(self, shell, info):
        if not self.url_template:
            return self.fail("no download URL configured")
        return super().attempt(shell, info)

    def prepare(self, info, workdir):
        arch = go_arch(info.arch)
        if arch is None:
            raise RuntimeError(f"unsupported architecture: {info.arch}")
        url = self.url_template.format(os="linux", arch=arch)
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()
        path = os.path.join(workdir, "wireguard-go")
        with open(path, "wb") as f:
            f.write(response.content)
        return path


class LocalBuildUpload(_UploadStrategy):
    """로컬에서 wireguard-go 를 git clone + make 후 업로드"""

    name = "local-build-upload"

    def __init__(self, runner: Optional[LocalRunner] = None):
        self.runner = runner or LocalRunner()

    def prepare(self, info, workdir):
        arch = go_arch(info.arch)
        if arch is None:
            raise RuntimeError(f"unsupported architecture: {info.arch}")
        source = os.path.join(workdir, "src")
        clone = self.runner.run(["git", "clone", "--depth=1", WIREGUARD_GO_REPO, source], timeout=300)
        if clone.returncode != 0:
            raise RuntimeError(f"failed to clone wireguard-go: {clone.stdout}")

        build = subprocess.run(
            ["make"],
            cwd=source,
            env=dict(os.environ, CGO_ENABLED="0", GOOS="linux", GOARCH=arch),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=600
        )
        if build.returncode != 0:
            raise RuntimeError(f"failed to build wireguard-go: {build.stdout}")

        binary = os.path.join(source, "wireguard-go")
        if not os.path.exists(binary):
            raise RuntimeError("wireguard-go binary not found after build")
        return binary


def default_strategies(download_url: str = "") -> List[InstallStrategy]:
    return [
        KernelModuleProbe(),
        UserspaceBinaryProbe(),
        PackageManagerInstall(),
        RemoteGoInstall(),
        DownloadUpload(download_url),
        LocalBuildUpload(),
    ]


def ensure_dependency(shell: RemoteShell, strategies: Sequence[InstallStrategy],
                      host: Optional[str] = None) -> StrategyResult:
    """전략을 순서대로 시도, 첫 성공에서 중단

    Raises:
        DependencyUnavailable: 모든 전략 실패
    """
    logger = get_logger()
    shell.write("Checking WireGuard availability...")
    info = probe_system(shell)
    failures = []

    for strategy in strategies:
        result = strategy.attempt(shell, info)
        if result.ok:
            shell.write(f"✓ {result.detail or strategy.name}")
            logger.info(f"WireGuard available via {strategy.name}: {result.detail}")
            return result
        logger.debug(f"Install strategy {strategy.name} failed: {result.detail}")
        failures.append(result)

    reasons = "\n".join(f"  - {r.name}: {r.detail}" for r in failures)
    raise DependencyUnavailable(
        f"WireGuard is not available and every installation method failed.\n"
        f"Kernel: {info.kernel or 'unknown'}\n{reasons}\n\n{MANUAL_INSTALL_HINT}",
        host=host,
    )


# ---------- 엔드포인트 로컬 엔진 ----------

def find_engine() -> Tuple[Optional[str], str]:
    """(경로, 모드) 반환 - wireguard-go(userspace) 우선, 없으면 커널 모듈용 wg"""
    path = shutil.which("wireguard-go")
    if path:
        return path, "userspace"
    path = shutil.which("wg")
    if path:
        return path, "kernel"
    return None, ""


def detect_linux_distro(os_release: str = "/etc/os-release") -> str:
    """로컬 리눅스 배포판 ID"""
    try:
        content = Path(os_release).read_text(encoding="utf-8")
    except OSError:
        return ""
    for line in content.splitlines():
        if line.startswith("ID="):
            return line[3:].strip().strip('"').lower()
    return ""


def install_engine_locally(runner: Optional[LocalRunner] = None,
                           which: Callable[[str], Optional[str]] = shutil.which) -> None:
    """엔드포인트 호스트에 WireGuard 설치

    Raises:
        DependencyUnavailable: 설치 실패 또는 지원하지 않는 OS
    """
    runner = runner or LocalRunner()
    logger = get_logger()
    system = platform.system().lower()
    if system != "linux":
        raise DependencyUnavailable(
            f"{system} installation not implemented. "
            "Please install WireGuard manually from https://www.wireguard.com/install/"
        )

    distro = detect_linux_distro()
    steps: List[List[str]] = []
    if distro in ("ubuntu", "debian"):
        steps = [["sudo", "apt-get", "update"], ["sudo", "apt-get", "install", "-y", "wireguard"]]
    elif distro == "arch":
        steps = [["sudo", "pacman", "-Sy", "--noconfirm", "wireguard-tools"]]

    if not steps:
        # CentOS/RHEL 및 기타 배포판은 커널 모듈이 없을 수 있어 wireguard-go 사용
        if which("go") is None:
            raise DependencyUnavailable("Go is not installed. Please install Go or WireGuard manually")
        steps = [["env", "CGO_ENABLED=0", "go", "install", WIREGUARD_GO_MODULE]]

    for step in steps:
        logger.info(f"Running: {' '.join(step)}")
        result = runner.run(step, timeout=600)
        if result.returncode != 0:
            raise DependencyUnavailable(
                "failed to install WireGuard",
                operation=" ".join(step),
                output=result.stdout,
            )

