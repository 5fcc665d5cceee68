from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from offline_tokens.token.signer import KeyDirectory, KeyRing, Signer, generate_keypair, verify
from offline_tokens.utils.encoding import canonical_bytes, decimal_text, to_decimal
from offline_tokens.utils.time import to_epoch_micros
from offline_tokens.models.token import Token, token_payload


def _fresh_signer() -> Signer:
    return Signer(signing_key=generate_keypair()[0])


def _signed_token(signer: Signer) -> Token:
    issued = datetime(2026, 1, 1, tzinfo=timezone.utc)
    expires = issued + timedelta(days=30)
    payload = token_payload(
        token_id="tok-1",
        owner_id="alice",
        amount=Decimal("100"),
        issued_at=issued,
        expires_at=expires,
    )
    return Token(
        id="tok-1",
        owner_id="alice",
        amount=Decimal("100"),
        issued_at=issued,
        expires_at=expires,
        issuer_public_key=signer.public_key,
        signature=signer.sign(payload),
    )


def test_signature_round_trip() -> None:
    signer = _fresh_signer()
    token = _signed_token(signer)
    assert signer.verify(token.signing_payload(), token.signature)
    assert verify(token.signing_payload(), token.signature, token.issuer_public_key)


@pytest.mark.parametrize(
    "changes",
    [
        {"amount": Decimal("1000")},
        {"owner_id": "mallory"},
        {"id": "tok-2"},
        {"expires_at": datetime(2027, 1, 1, tzinfo=timezone.utc)},
    ],
)
def test_any_altered_field_invalidates_signature(changes: dict) -> None:
    signer = _fresh_signer()
    tampered = replace(_signed_token(signer), **changes)
    assert signer.verify(tampered.signing_payload(), tampered.signature) is False


def test_malformed_signature_or_key_returns_false() -> None:
    signer = _fresh_signer()
    token = _signed_token(signer)
    assert verify(token.signing_payload(), "not base64!!", signer.public_key) is False
    assert verify(token.signing_payload(), token.signature, "AAAA") is False


def test_signer_is_stable_for_a_seed() -> None:
    seed, public = generate_keypair()
    assert Signer(signing_key=seed).public_key == public
    assert Signer(signing_key=seed).public_key == Signer(signing_key=seed).public_key


def test_key_ring_rejects_untrusted_and_revoked_keys() -> None:
    current, retired = _fresh_signer(), _fresh_signer()
    token = _signed_token(retired)
    ring = KeyRing([current.public_key])
    assert ring.verify(token.signing_payload(), token.signature, token.issuer_public_key) is False

    ring.add(retired.public_key)
    assert ring.verify(token.signing_payload(), token.signature, token.issuer_public_key) is True

    ring.revoke(retired.public_key)
    assert ring.trusts(retired.public_key) is False
    assert len(ring) == 1


def test_key_directory_unknown_user_is_none() -> None:
    seed, public = generate_keypair()
    device = Signer(signing_key=seed)
    directory = KeyDirectory({"alice": public})
    assert directory.verify("bob", b"payload", device.sign(b"payload")) is None
    assert directory.verify("alice", b"payload", device.sign(b"payload")) is True
    assert directory.verify("alice", b"other", device.sign(b"payload")) is False


def test_canonical_bytes_are_length_prefixed() -> None:
    raw = canonical_bytes(("ab", Decimal("1.50"), None))
    assert raw == b"\x00\x00\x00\x02ab" + b"\x00\x00\x00\x031.5" + b"\x00\x00\x00\x00"


def test_timestamps_encode_as_epoch_micros() -> None:
    moment = datetime(1970, 1, 1, 0, 0, 1, 5, tzinfo=timezone.utc)
    assert to_epoch_micros(moment) == 1_000_005
    assert to_epoch_micros(moment.replace(tzinfo=None)) == 1_000_005


def test_decimal_text_is_normalized() -> None:
    assert decimal_text(Decimal("100.00")) == "100"
    assert decimal_text(Decimal("1E+2")) == "100"
    assert decimal_text(Decimal("0.50")) == "0.5"


@pytest.mark.parametrize("bad", [1.5, True, "abc", "NaN", "Infinity", None])
def test_to_decimal_refuses_floats_and_garbage(bad) -> None:
    with pytest.raises(ValueError):
        to_decimal(bad)


def test_to_decimal_accepts_str_int_decimal() -> None:
    assert to_decimal("12.30") == Decimal("12.3")
    assert to_decimal(7) == Decimal("7")
    assert to_decimal(Decimal("0.01")) == Decimal("0.01")
