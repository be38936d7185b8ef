import base64
import json
from datetime import timedelta

import pytest

from trustcore.service.errors import InvalidSignatureError, TokenExpiredError
from trustcore.service.service_tokens import (
    ServiceClaims,
    ServiceTokenMinter,
    _encode_segment,
    bearer_token,
)

SECRET = "unit-test-service-token-secret-0123456789abcdef"


@pytest.fixture
def minter(clock):
    return ServiceTokenMinter(
        SECRET, issuer="edge", audience="internal", ttl_seconds=900, clock=clock
    )


@pytest.fixture
def claims():
    return ServiceClaims(
        subject="acct-1",
        email="ada@acme.test",
        name="Ada",
        role="admin",
        organization_id="org-1",
        second_factor_verified=True,
    )


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def test_round_trip_claims(minter, claims, clock):
    verified = minter.verify(minter.mint(claims))
    assert verified.subject == "acct-1"
    assert verified.email == "ada@acme.test"
    assert verified.role == "admin"
    assert verified.organization_id == "org-1"
    assert verified.second_factor_verified is True
    assert verified.issued_at == clock().replace(microsecond=0)
    assert verified.expires_at == verified.issued_at + timedelta(seconds=900)
    assert verified.token_id


def test_payload_shape(minter, claims):
    payload = _payload(minter.mint(claims))
    assert payload["mfa"] is True
    assert payload["iss"] == "edge"
    assert payload["aud"] == "internal"
    assert payload["typ"] == "service"
    assert payload["exp"] - payload["iat"] == 900


def test_mfa_flag_is_copied_verbatim(minter, claims):
    claims.second_factor_verified = False
    assert minter.verify(minter.mint(claims)).second_factor_verified is False


def test_token_ids_are_unique(minter, claims):
    assert _payload(minter.mint(claims))["jti"] != _payload(minter.mint(claims))["jti"]


def test_valid_until_expiry_instant(minter, claims, clock):
    token = minter.mint(claims)
    clock.advance(seconds=899)
    minter.verify(token)
    clock.advance(seconds=1)
    with pytest.raises(TokenExpiredError):
        minter.verify(token)


def test_tampered_payload(minter, claims):
    header, payload, signature = minter.mint(claims).split(".")
    body = _payload(f"{header}.{payload}.{signature}")
    body["role"] = "owner"
    forged = _encode_segment(json.dumps(body).encode())
    with pytest.raises(InvalidSignatureError):
        minter.verify(f"{header}.{forged}.{signature}")


def test_wrong_key(minter, claims, clock):
    other = ServiceTokenMinter(
        "another-secret-that-is-long-enough-000000", issuer="edge", audience="internal", clock=clock
    )
    with pytest.raises(InvalidSignatureError):
        minter.verify(other.mint(claims))


def test_alg_none_rejected(minter, claims):
    _header, payload, _signature = minter.mint(claims).split(".")
    none_header = _encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
    with pytest.raises(InvalidSignatureError):
        minter.verify(f"{none_header}.{payload}.")


@pytest.mark.parametrize("issuer,audience", [("other", "internal"), ("edge", "other")])
def test_issuer_and_audience_checked(claims, clock, issuer, audience):
    foreign = ServiceTokenMinter(SECRET, issuer=issuer, audience=audience, clock=clock)
    minter = ServiceTokenMinter(SECRET, issuer="edge", audience="internal", clock=clock)
    with pytest.raises(InvalidSignatureError):
        minter.verify(foreign.mint(claims))


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
def test_garbage(minter, token):
    with pytest.raises(InvalidSignatureError):
        minter.verify(token)


def test_secret_required():
    with pytest.raises(ValueError):
        ServiceTokenMinter("", issuer="edge", audience="internal")


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer   abc", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ],
)
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


def test_non_ascii_segments(minter, claims):
    header, payload, signature = minter.mint(claims).split(".")
    for token in (
        f"{header}.{payload}.é",
        f"{header}.é.{signature}",
        f"é.{payload}.{signature}",
        f"{header}.{payload}.{signature}ü",
    ):
        with pytest.raises(InvalidSignatureError):
            minter.verify(token)
