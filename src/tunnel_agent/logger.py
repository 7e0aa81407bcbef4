"""
로깅 시스템
콘솔(Rich) 및 파일 로깅, 디버그 모드 지원
"""

import logging
import os
from datetime import datetime
from typing import Optional
from rich.logging import RichHandler
from rich.console import Console

console = Console(stderr=True)


class TunnelLogger:
    """터널 에이전트 로거"""

    def __init__(self, log_dir: Optional[str] = None, log_level: str = "INFO", debug: bool = False,
                 name: str = "tunnel_agent", log_file: Optional[str] = None):
        self.log_dir = log_dir
        self.log_level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)
        self.debug_mode = debug
        self.log_file = None
        self.error_file = None

        # 로거 설정
        self.logger = logging.getLogger(name)
        self.logger.setLevel(self.log_level)

        # 기존 핸들러 제거
        self.logger.handlers.clear()

        # 파일 핸들러 (로그 디렉토리가 지정된 경우만)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = os.path.join(log_dir, f"tunnel_{timestamp}.log")
            self.error_file = os.path.join(log_dir, f"error_{timestamp}.log")

            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

            error_handler = logging.FileHandler(self.error_file, encoding='utf-8')
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(file_formatter)
            self.logger.addHandler(error_handler)

        # 지정된 단일 로그 파일 (엔드포인트 프로세스)
        if log_file:
            self.log_file = log_file
            single_handler = logging.FileHandler(log_file, encoding='utf-8')
            single_handler.setLevel(self.log_level)
            single_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(single_handler)

        # 콘솔 핸들러 (Rich)
        rich_handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=False,
            show_path=debug
        )
        rich_handler.setLevel(self.log_level)
        self.logger.addHandler(rich_handler)

    def debug(self, message: str):
        """디버그 로그"""
        self.logger.debug(message)

    def info(self, message: str):
        """정보 로그"""
        self.logger.info(message)

    def warning(self, message: str):
        """경고 로그"""
        self.logger.warning(message)

    def error(self, message: str):
        """에러 로그"""
        self.logger.error(message)

    def critical(self, message: str):
        """치명적 에러 로그"""
        self.logger.critical(message)

    def exception(self, message: str):
        """예외 로그 (트레이스백 포함)"""
        self.logger.exception(message)

    def get_log_files(self) -> dict:
        """로그 파일 경로 반환"""
        return {
            "main_log": self.log_file,
            "error_log": self.error_file,
            "log_dir": self.log_dir
        }


# 글로벌 로거 인스턴스
_logger: Optional[TunnelLogger] = None


def get_logger() -> TunnelLogger:
    """로거 인스턴스 가져오기 (미초기화 시 콘솔 전용)"""
    global _logger
    if _logger is None:
        _logger = TunnelLogger()
    return _logger


def init_logger(log_dir: Optional[str], log_level: str = "INFO", debug: bool = False,
                log_file: Optional[str] = None) -> TunnelLogger:
    """로거 초기화"""
    global _logger
    _logger = TunnelLogger(log_dir, log_level, debug, log_file=log_file)
    return _logger
