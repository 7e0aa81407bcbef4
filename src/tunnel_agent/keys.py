"""
WireGuard 키 관리 모듈
Curve25519 키 생성, 공개키 유도, 키 검증
"""

import base64
import binascii
import os
from typing import Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .exceptions import InvalidKey

KEY_SIZE = 32  # WireGuard Curve25519 키 길이


def _decode(key_text: str) -> bytes:
    try:
        raw = base64.b64decode(key_text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise InvalidKey(f"invalid base64 encoding: {e}")
    if len(raw) != KEY_SIZE:
        raise InvalidKey(f"invalid key length: {len(raw)}, expected {KEY_SIZE}")
    return raw


def _clamp(raw: bytes) -> bytes:
    key = bytearray(raw)
    key[0] &= 248
    key[31] &= 127
    key[31] |= 64
    return bytes(key)


def generate_private_key() -> str:
    """새 개인키 생성 (base64)"""
    return base64.b64encode(_clamp(os.urandom(KEY_SIZE))).decode("ascii")


def derive_public(private_key: str) -> str:
    """개인키에서 공개키 유도

    Raises:
        InvalidKey: 개인키가 32바이트 base64가 아닌 경우
    """
    raw = _decode(private_key)
    public = X25519PrivateKey.from_private_bytes(raw).public_key()
    public_raw = public.public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return base64.b64encode(public_raw).decode("ascii")


def generate_keypair() -> Tuple[str, str]:
    """(private_key, public_key) 반환"""
    private_key = generate_private_key()
    return private_key, derive_public(private_key)


def validate_key(key_text: str) -> None:
    """키가 32바이트 base64 문자열인지 검증"""
    _decode(key_text)
