"""HMAC signing primitive."""

import base64

import pytest

from fluxpay.common.signature import sha256_hex, sign, verify


def test_sign_then_verify_round_trip():
    sig = sign("secret", "1700000000.nonce.POST./v1/payments.abc")
    assert verify("secret", "1700000000.nonce.POST./v1/payments.abc", sig)


def test_signature_is_base64_of_32_byte_digest():
    assert len(base64.b64decode(sign("secret", "message"))) == 32


@pytest.mark.parametrize(
    "secret,message",
    [("other-secret", "message"), ("secret", "message!"), ("secret", "Message")],
)
def test_any_change_breaks_verification(secret, message):
    sig = sign("secret", "message")
    assert not verify(secret, message, sig)


def test_malformed_base64_signature_does_not_match():
    assert verify("secret", "message", "not base64 at all!!") is False


@pytest.mark.parametrize("secret,message", [("", "message"), ("secret", "")])
def test_sign_rejects_empty_inputs(secret, message):
    with pytest.raises(ValueError):
        sign(secret, message)


def test_verify_rejects_empty_signature():
    with pytest.raises(ValueError):
        verify("secret", "message", "")


def test_sha256_hex_of_missing_body_is_hash_of_empty_bytes():
    assert sha256_hex(None) == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert sha256_hex("") == sha256_hex(b"")
    assert sha256_hex('{"a":1}') == sha256_hex(b'{"a":1}')
