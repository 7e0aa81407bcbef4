"""
로컬 명령 실행기
엔드포인트와 로컬 커넥터가 사용하는 subprocess 래퍼
"""

import subprocess
from typing import Optional, Sequence, Union

from .commands import Command


class LocalRunner:
    """subprocess 기반 명령 실행"""

    def run(self, argv: Union[Command, Sequence[str]], input: Optional[str] = None,
            timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """명령 실행 후 결과 반환 (stdout/stderr 합쳐서 문자열)

        실행 파일이 없으면 returncode 127 로 반환한다.
        """
        if isinstance(argv, Command):
            argv = argv.argv
        argv = list(argv)
        try:
            return subprocess.run(
                argv,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout
            )
        except FileNotFoundError as e:
            return subprocess.CompletedProcess(argv, 127, stdout=f"{argv[0]}: {e}")

    def spawn(self, argv: Sequence[str]) -> subprocess.Popen:
        """감시 대상 프로세스 실행 (stdout/stderr 파이프)"""
        return subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1
        )
