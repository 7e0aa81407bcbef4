"""
Tunnel Agent
원격 호스트의 사설망에 WireGuard 터널로 접근하기 위한 배포/관리 에이전트

Features:
- SSH 기반 원격 엔드포인트 배포 및 WireGuard 자동 설치
- 엔드포인트 프로세스 관리 (피어 등록, 포워딩/NAT 설정)
- 하트비트 기반 자가 종료 (고아 터널 방지)
- 로컬 터널 연결 및 상태 모니터링
"""

__version__ = "1.0.0"
__author__ = "DevOps Team"
