"""
키 관리 모듈 테스트
"""

import base64

import pytest
from tunnel_agent.exceptions import InvalidKey
from tunnel_agent.keys import derive_public, generate_keypair, generate_private_key, validate_key


def test_derive_public_matches_keypair():
    """생성된 개인키에서 유도한 공개키가 키 쌍의 공개키와 동일"""
    for _ in range(20):
        private_key, public_key = generate_keypair()
        assert derive_public(private_key) == public_key


def test_private_key_is_clamped():
    """WireGuard 방식 클램핑 확인"""
    raw = base64.b64decode(generate_private_key())
    assert len(raw) == 32
    assert raw[0] & 7 == 0
    assert raw[31] & 128 == 0
    assert raw[31] & 64 == 64


def test_known_public_key():
    """RFC 7748 테스트 벡터"""
    private_raw = bytes.fromhex("77076d0a7318a57d3c16c17251b26645df4c2f87ebc0992ab177fba51db92c2a")
    public_raw = bytes.fromhex("8520f0098930a754748b7ddcb43ef75a0dbf3a0d26381af4eba4a98eaa9b4e6a")
    private_key = base64.b64encode(private_raw).decode()
    assert derive_public(private_key) == base64.b64encode(public_raw).decode()


def test_validate_accepts_generated_keys():
    private_key, public_key = generate_keypair()
    validate_key(private_key)
    validate_key(public_key)


@pytest.mark.parametrize("text", [
    "",
    "not base64!!",
    base64.b64encode(b"\x01" * 31).decode(),
    base64.b64encode(b"\x01" * 33).decode(),
    base64.b64encode(b"\x01" * 16).decode(),
])
def test_validate_rejects_bad_keys(text):
    """32바이트가 아닌 키는 거부"""
    with pytest.raises(InvalidKey):
        validate_key(text)


def test_derive_public_rejects_bad_key():
    with pytest.raises(InvalidKey):
        derive_public("AAAA")


def test_invalid_key_is_value_error():
    with pytest.raises(ValueError):
        validate_key("short")
