"""
auth/oauth.py -- Verification of third-party identity assertions (Google ID tokens).

The client completes Google sign-in on its side and sends us the ID token it
received. GoogleIdTokenVerifier checks that token locally against Google's
published signing keys; there is no server-side redirect flow.

Security notes:
  [H1] Email verification is mandatory. An unverified email could be a
       victim's address added by an attacker, and the email is what we match
       local accounts on. Tokens without email_verified=true are rejected.

  Algorithm pinning: only RS256 is accepted. A token claiming HS256 (signed
  with a public key as the secret) never reaches signature checking.

  Audience: aud must equal our configured client ID. A token minted for some
  other application is not an assertion about our users.

Any problem with the assertion itself raises IdentityError(INVALID_CREDENTIALS).
Failing to reach Google's key endpoint is our fault, not the caller's, and
raises IdentityError(INTERNAL).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import requests
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from auth.models import ExternalIdentity
from core.errors import ErrorKind, IdentityError

logger = logging.getLogger("identity.external")

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

# Clock skew tolerated on exp/iat, in seconds.
_LEEWAY = 60

_jwt = JsonWebToken(["RS256"])


class GoogleIdTokenVerifier:
    """Verifies Google ID tokens and extracts (subject, email, name).

    Signing keys are fetched once and cached on the instance. A token whose
    key id is unknown triggers one refetch, which covers Google's key rotation.

    Usage:
        verifier = GoogleIdTokenVerifier(client_id="...apps.googleusercontent.com")
        identity = verifier.verify(raw_id_token)
    """

    provider = "google"

    def __init__(self, client_id: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.client_id = client_id
        self.timeout = timeout
        self._session = session or requests.Session()
        # Google's cert endpoint does not redirect; 3 hops is generous.
        self._session.max_redirects = 3
        self._key_set = None

    def verify(self, raw: str) -> ExternalIdentity:
        if not raw or not raw.strip():
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "Missing external assertion.")
        try:
            claims = self._decode(raw, self._keys())
        except ValueError:
            # Unknown kid: the cached key set may predate a rotation.
            try:
                claims = self._decode(raw, self._keys(refresh=True))
            except ValueError as exc:
                raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "Invalid external assertion.") from exc
        return identity_from_claims(claims)

    def _decode(self, raw: str, key_set) -> dict:
        claims_options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "aud": {"essential": True, "value": self.client_id},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        try:
            claims = _jwt.decode(raw, key_set, claims_options=claims_options)
            claims.validate(leeway=_LEEWAY)
        except JoseError as exc:
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "Invalid external assertion.") from exc
        return dict(claims)

    def _keys(self, refresh: bool = False):
        if self._key_set is None or refresh:
            try:
                resp = self._session.get(GOOGLE_CERTS_URL, timeout=self.timeout)
                resp.raise_for_status()
                self._key_set = JsonWebKey.import_key_set(resp.json())
            except (requests.RequestException, ValueError) as exc:
                logger.exception("Could not load Google signing keys")
                raise IdentityError(ErrorKind.INTERNAL) from exc
        return self._key_set


def identity_from_claims(claims: dict) -> ExternalIdentity:
    """Normalize verified ID-token claims into an ExternalIdentity [H1].

    Google sends email_verified as a bool; some issuers send the string
    "true". Anything else counts as unverified.
    """
    verified = claims.get("email_verified")
    if verified is not True and verified != "true":
        raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "External email is not verified.")
    email = claims.get("email")
    subject = claims.get("sub")
    if not email or not subject:
        raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "External assertion lacks email or subject.")
    name = claims.get("name") or claims.get("given_name") or email.split("@", 1)[0]
    return ExternalIdentity(subject=str(subject), email=email, name=name)
