#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tunnel Agent - 하트비트 모듈

이 모듈은 다음 기능을 제공합니다:
- 컨트롤러 측 하트비트 송신 (주기적으로 타임스탬프 기록)
- 엔드포인트 측 하트비트 감시 (오래된 하트비트 감지 시 자가 종료 트리거)

두 쪽은 하트비트 파일로만 통신하며 메모리 상태를 공유하지 않습니다.
"""

import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Tuple

from .logger import get_logger

HEARTBEAT_INTERVAL = 5.0
HEARTBEAT_TIMEOUT = 12.0
WATCHDOG_INTERVAL = 5.0


class HeartbeatStatus(str, Enum):
    WAITING = "waiting"  # 아직 첫 하트비트 없음
    OK = "ok"
    STALE = "stale"
    INVALID = "invalid"


def read_heartbeat(path: str, now: Optional[float] = None,
                   timeout: float = HEARTBEAT_TIMEOUT) -> Tuple[HeartbeatStatus, Optional[float]]:
    """하트비트 파일 상태와 경과 시간(초) 반환"""
    now = time.time() if now is None else now
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return HeartbeatStatus.WAITING, None
    except OSError:
        return HeartbeatStatus.INVALID, None

    try:
        timestamp = int(text)
    except ValueError:
        return HeartbeatStatus.INVALID, None

    age = now - timestamp
    if age > timeout:
        return HeartbeatStatus.STALE, age
    return HeartbeatStatus.OK, age


class HeartbeatEmitter:
    """주기적으로 현재 타임스탬프를 전송하는 백그라운드 작업"""

    def __init__(self, send: Callable[[int], None], interval: float = HEARTBEAT_INTERVAL,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            send: 타임스탬프를 원격 파일에 기록하는 함수
            interval: 전송 간격 (초)
            clock: 시간 함수
        """
        self.send = send
        self.interval = interval
        self.clock = clock
        self.logger = get_logger()
        self.beats = 0
        self._last_sent = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """송신 시작 (즉시 1회 전송 후 주기 전송)"""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat-emitter", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """송신 중지"""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def beat(self) -> bool:
        """하트비트 1회 전송 - 타임스탬프는 항상 증가"""
        timestamp = max(int(self.clock()), self._last_sent)
        try:
            self.send(timestamp)
        except Exception as e:
            self.logger.warning(f"Heartbeat failed: {e}")
            return False
        self._last_sent = timestamp
        self.beats += 1
        return True

    def _run(self):
        self.logger.info(f"Heartbeat monitoring started (interval: {self.interval}s)")
        if not self.beat():
            self.logger.warning("Failed to send initial heartbeat")
        while not self._stop.wait(self.interval):
            self.beat()
        self.logger.info("Heartbeat monitoring stopped")


class HeartbeatWatchdog:
    """하트비트 파일을 감시하고 오래되면 콜백 호출"""

    def __init__(self, path: str, on_stale: Callable[[float], None],
                 interval: float = WATCHDOG_INTERVAL, timeout: float = HEARTBEAT_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        self.path = path
        self.on_stale = on_stale
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self.logger = get_logger()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self, now: Optional[float] = None) -> HeartbeatStatus:
        """하트비트 1회 확인, STALE 이면 on_stale 호출"""
        now = self.clock() if now is None else now
        status, age = read_heartbeat(self.path, now, self.timeout)

        if status == HeartbeatStatus.WAITING:
            self.logger.debug("Waiting for initial heartbeat...")
        elif status == HeartbeatStatus.INVALID:
            self.logger.warning(f"Failed to read heartbeat file: {self.path}")
        elif status == HeartbeatStatus.STALE:
            self.logger.error(
                f"HEARTBEAT TIMEOUT - controller connection lost "
                f"(age={age:.1f}s, timeout={self.timeout}s, file={self.path})"
            )
            self.on_stale(age)
        else:
            self.logger.debug(f"Heartbeat OK (age={age:.1f}s)")
        return status

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat-watchdog", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def _run(self):
        self.logger.info(f"Heartbeat monitoring started (timeout={self.timeout}s, file={self.path})")
        while not self._stop.wait(self.interval):
            if self.check_once() == HeartbeatStatus.STALE:
                return
        self.logger.info("Heartbeat monitoring stopped")
