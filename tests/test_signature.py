"""
Webhook signature verification
"""

import logging

import pytest

from conftest import CURRENT_KEY, NEXT_KEY
from order_pipeline.errors import InvalidSignature, MissingSignature, SigningKeysNotConfigured
from order_pipeline.signature import SignatureVerifier, body_hash, sign

pytestmark = [pytest.mark.unit]

BODY = b'{"eventId":"evt-1","eventType":"command.checkout"}'


@pytest.fixture
def verifier():
    return SignatureVerifier(CURRENT_KEY, NEXT_KEY)


def test_accepts_current_key(verifier):
    assert verifier.verify(BODY, sign(BODY, CURRENT_KEY)) is True


def test_accepts_next_key_during_rotation(verifier):
    assert verifier.verify(BODY, sign(BODY, NEXT_KEY)) is True


def test_rejects_unknown_key(verifier):
    with pytest.raises(InvalidSignature):
        verifier.verify(BODY, sign(BODY, "some_other_key_0123456789abcdef0123"))


def test_rejects_tampered_body(verifier):
    signature = sign(BODY, CURRENT_KEY)
    with pytest.raises(InvalidSignature):
        verifier.verify(BODY.replace(b"evt-1", b"evt-2"), signature)


def test_rejects_reserialized_body(verifier):
    signature = sign(BODY, CURRENT_KEY)
    with pytest.raises(InvalidSignature):
        verifier.verify(b'{"eventId": "evt-1", "eventType": "command.checkout"}', signature)


def test_rejects_expired_signature(verifier):
    with pytest.raises(InvalidSignature):
        verifier.verify(BODY, sign(BODY, CURRENT_KEY, ttl_seconds=-10))


def test_rejects_wrong_subject(verifier):
    signature = sign(BODY, CURRENT_KEY, url="https://shop.test/api/webhooks/orders")
    with pytest.raises(InvalidSignature):
        verifier.verify(BODY, signature, url="https://shop.test/api/webhooks/commands")


def test_missing_header(verifier):
    with pytest.raises(MissingSignature):
        verifier.verify(BODY, None)


def test_unconfigured_keys_fail_closed():
    with pytest.raises(SigningKeysNotConfigured):
        SignatureVerifier(None, None).verify(BODY, sign(BODY, CURRENT_KEY))


def test_unconfigured_keys_fail_open_in_dev_mode(caplog):
    verifier = SignatureVerifier(CURRENT_KEY, None, dev_mode=True)
    with caplog.at_level(logging.WARNING):
        assert verifier.verify(BODY, None) is False
        assert verifier.verify(BODY, None) is False
    warnings = [r for r in caplog.records if "UNVERIFIED" in r.getMessage()]
    assert len(warnings) == 2


def test_body_hash_is_unpadded_base64url():
    digest = body_hash(b"")
    assert "=" not in digest
    assert digest == "47DEQpj8HBSa-_TImW-5JCeuQeRkm5NMpJWZG3hSuFU"
