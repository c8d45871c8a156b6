"""Tests for auth/external.py and auth/oauth.py -- sign-in with Google.

ExternalAuthService is exercised with a stub verifier so resolution rules can
be tested without any token crypto. GoogleIdTokenVerifier is exercised with
real RS256 tokens signed by a throwaway key, served through a fake requests
session in place of Google's certificate endpoint.

Covers:
- first sign-in provisions exactly one verified account and one link
- repeat sign-in with the same subject reuses both
- an existing password account with the asserted email gets linked and verified
- a link to a deleted account is dropped and the identity starts over
- verifier: valid token, wrong audience, wrong issuer, unverified email,
  non-RS256 algorithm, unknown key id (refetch), unreachable key endpoint
"""

import time

import pytest
import requests
from authlib.jose import JsonWebKey, JsonWebToken

from auth.external import ExternalAuthService
from auth.models import ExternalIdentity
from auth.oauth import GOOGLE_CERTS_URL, GoogleIdTokenVerifier, identity_from_claims
from core.errors import ErrorKind, IdentityError

CLIENT_ID = "test-client.apps.googleusercontent.com"


class StubVerifier:
    """Returns whatever identity was registered for the raw assertion."""

    provider = "google"

    def __init__(self, identities: dict[str, ExternalIdentity]) -> None:
        self._identities = identities

    def verify(self, raw: str) -> ExternalIdentity:
        if raw not in self._identities:
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "Invalid external assertion.")
        return self._identities[raw]


GRACE = ExternalIdentity(subject="google-sub-1", email="grace@example.com", name="Grace Hopper")
ADA = ExternalIdentity(subject="google-sub-2", email="ada@example.com", name="Ada Lovelace")


@pytest.fixture
def external(accounts, link_store, tokens):
    verifier = StubVerifier({"grace-token": GRACE, "ada-token": ADA})
    return ExternalAuthService(accounts, link_store, tokens, verifier)


# ---------------------------------------------------------------------------
# ExternalAuthService
# ---------------------------------------------------------------------------


def test_first_sign_in_provisions_verified_account(external, account_store, link_store, tokens):
    result = external.authenticate("grace-token")

    assert tokens.validate(result.token) == result.account.id
    stored = account_store.get_by_email("grace@example.com")
    assert stored.id == result.account.id
    assert stored.is_email_verified is True
    assert stored.name == "Grace Hopper"
    assert stored.username == "grace.hopper"

    links = link_store.get_by_account_id(stored.id)
    assert len(links) == 1
    assert (links[0].provider, links[0].subject) == ("google", "google-sub-1")


def test_repeat_sign_in_reuses_account_and_link(external, account_store, link_store):
    first = external.authenticate("grace-token")
    second = external.authenticate("grace-token")
    assert first.account.id == second.account.id
    assert len(account_store.list()) == 1
    assert len(link_store.get_by_account_id(first.account.id)) == 1


def test_provisioned_account_has_no_usable_password(external, accounts):
    external.authenticate("grace-token")
    with pytest.raises(IdentityError) as exc_info:
        accounts.validate("grace@example.com", "")
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS


def test_existing_account_is_linked_and_verified(external, accounts, account_store, ada):
    result = external.authenticate("ada-token")
    assert result.account.id == ada.id
    assert account_store.get_by_id(ada.id).is_email_verified is True
    # Password sign-in keeps working.
    assert accounts.validate("ada", "correct-horse").account.id == ada.id


def test_link_to_deleted_account_starts_over(external, accounts, account_store, link_store):
    first = external.authenticate("grace-token")
    accounts.delete(first.account.id)

    second = external.authenticate("grace-token")
    assert second.account.id != first.account.id
    assert link_store.get_by_account_id(first.account.id) == []
    assert link_store.get_by_external_subject("google", "google-sub-1").account_id == second.account.id


def test_rejected_assertion_creates_nothing(external, account_store):
    with pytest.raises(IdentityError) as exc_info:
        external.authenticate("forged")
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
    assert account_store.list() == []


# ---------------------------------------------------------------------------
# identity_from_claims
# ---------------------------------------------------------------------------


def test_identity_from_claims_accepts_string_true():
    identity = identity_from_claims({"sub": "1", "email": "a@b.io", "email_verified": "true"})
    assert identity == ExternalIdentity(subject="1", email="a@b.io", name="a")


@pytest.mark.parametrize("flag", [None, False, "false", 1])
def test_identity_from_claims_requires_verified_email(flag):
    with pytest.raises(IdentityError) as exc_info:
        identity_from_claims({"sub": "1", "email": "a@b.io", "email_verified": flag})
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS


# ---------------------------------------------------------------------------
# GoogleIdTokenVerifier
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, payload: dict) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        return self._payload


class FakeSession:
    """Stands in for requests.Session; serves a fixed JWKS document."""

    def __init__(self, jwks: dict | None = None, error: Exception | None = None) -> None:
        self.jwks = jwks
        self.error = error
        self.calls: list[tuple[str, float]] = []
        self.max_redirects = 30

    def get(self, url: str, timeout: float):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.jwks)


@pytest.fixture(scope="module")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, {"kid": "test-kid"}, is_private=True)


@pytest.fixture
def jwks(signing_key):
    return {"keys": [signing_key.as_dict(is_private=False)]}


def _claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "109876543210",
        "email": "grace@example.com",
        "email_verified": True,
        "name": "Grace Hopper",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return claims


def _sign(key, claims: dict, kid: str = "test-kid") -> str:
    token = JsonWebToken(["RS256"]).encode({"alg": "RS256", "kid": kid}, claims, key)
    return token.decode("ascii")


def test_verifier_accepts_valid_token(signing_key, jwks):
    session = FakeSession(jwks)
    verifier = GoogleIdTokenVerifier(CLIENT_ID, timeout=2.5, session=session)

    identity = verifier.verify(_sign(signing_key, _claims()))

    assert identity == ExternalIdentity(subject="109876543210", email="grace@example.com", name="Grace Hopper")
    assert session.calls == [(GOOGLE_CERTS_URL, 2.5)]


def test_verifier_caches_keys(signing_key, jwks):
    session = FakeSession(jwks)
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=session)
    verifier.verify(_sign(signing_key, _claims()))
    verifier.verify(_sign(signing_key, _claims(sub="other")))
    assert len(session.calls) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"aud": "someone-else.apps.googleusercontent.com"},
        {"iss": "https://evil.example.com"},
        {"exp": int(time.time()) - 3600},
        {"email_verified": False},
    ],
)
def test_verifier_rejects_bad_claims(signing_key, jwks, overrides):
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=FakeSession(jwks))
    with pytest.raises(IdentityError) as exc_info:
        verifier.verify(_sign(signing_key, _claims(**overrides)))
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS


def test_verifier_rejects_non_rs256(jwks):
    token = JsonWebToken(["HS256"]).encode({"alg": "HS256"}, _claims(), "x" * 64).decode("ascii")
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=FakeSession(jwks))
    with pytest.raises(IdentityError) as exc_info:
        verifier.verify(token)
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS


def test_verifier_refetches_once_on_unknown_kid(jwks):
    other_key = JsonWebKey.generate_key("RSA", 2048, {"kid": "rotated-kid"}, is_private=True)
    session = FakeSession(jwks)
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=session)
    with pytest.raises(IdentityError) as exc_info:
        verifier.verify(_sign(other_key, _claims(), kid="rotated-kid"))
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
    assert len(session.calls) == 2


def test_verifier_key_endpoint_unreachable_is_internal():
    session = FakeSession(error=requests.ConnectionError("down"))
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=session)
    with pytest.raises(IdentityError) as exc_info:
        verifier.verify("header.payload.signature")
    assert exc_info.value.kind is ErrorKind.INTERNAL


@pytest.mark.parametrize("raw", ["", "   "])
def test_verifier_rejects_empty_assertion(raw):
    session = FakeSession({"keys": []})
    verifier = GoogleIdTokenVerifier(CLIENT_ID, session=session)
    with pytest.raises(IdentityError) as exc_info:
        verifier.verify(raw)
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
    assert session.calls == []
