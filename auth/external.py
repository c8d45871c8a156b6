"""
auth/external.py -- Sign-in with a third-party identity.

Resolution order for a verified identity (provider, subject, email, name):
  1. An ExternalAuthLink for (provider, subject) -> its account.
  2. A live account with the asserted email -> link it.
  3. Nothing -> provision a pre-verified account with an unusable password,
     then link it.

Races between concurrent first sign-ins are settled by the store's unique
constraints rather than by read-then-write checks:
  - two provisioners with the same email: the loser's insert raises CONFLICT
    and it re-reads the winner's account by email;
  - two linkers with the same (provider, subject): the loser's insert raises
    CONFLICT and it re-reads the winner's link.
Either way both callers end up on the same account.

Account rows are only ever written through AccountService.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets

from auth.accounts import AccountService
from auth.models import Account, AuthenticatedAccount, ExternalAuthLink, ExternalIdentity
from auth.store import ExternalAuthStore
from auth.tokens import TokenService
from core.errors import ErrorKind, IdentityError, store_errors

logger = logging.getLogger("identity.external")


class ExternalAuthService:
    """Exchanges a third-party assertion for a local account and token.

    verifier is any object with a provider name and a
    verify(raw) -> ExternalIdentity method (see auth.oauth.GoogleIdTokenVerifier).
    """

    def __init__(
        self,
        accounts: AccountService,
        links: ExternalAuthStore,
        tokens: TokenService,
        verifier,
    ) -> None:
        self._accounts = accounts
        self._links = links
        self._tokens = tokens
        self._verifier = verifier

    @property
    def provider(self) -> str:
        return self._verifier.provider

    def authenticate(self, raw_assertion: str) -> AuthenticatedAccount:
        identity = self._verifier.verify(raw_assertion)
        account = self._resolve(identity)
        token = self._tokens.issue(account.id)
        logger.info("External sign-in (provider=%s, account_id=%s)", self.provider, account.id)
        return AuthenticatedAccount(account=account.redacted(), token=token)

    def _resolve(self, identity: ExternalIdentity) -> Account:
        with store_errors("external_auth.lookup"):
            link = self._links.get_by_external_subject(self.provider, identity.subject)
        if link is not None:
            try:
                return self._accounts.get_by_id(link.account_id)
            except IdentityError as exc:
                if exc.kind is not ErrorKind.NOT_FOUND:
                    raise
                # The linked account was deleted; the identity starts over.
                logger.info("Dropping link to deleted account (account_id=%s)", link.account_id)
                with store_errors("external_auth.unlink", link.account_id):
                    self._links.delete(link.id)

        try:
            account = self._accounts.get_by_email(identity.email)
        except IdentityError as exc:
            if exc.kind is not ErrorKind.NOT_FOUND:
                raise
            account = self._provision(identity)
        else:
            # The provider vouched for the email [H1].
            if not account.is_email_verified:
                self._accounts.mark_email_verified(account.id)
                account.is_email_verified = True
        return self._link(account, identity)

    def _provision(self, identity: ExternalIdentity) -> Account:
        username = self._accounts.available_username(identity.name)
        # Nobody ever learns this secret; the account cannot log in by password.
        placeholder = secrets.token_urlsafe(32)
        try:
            account = self._accounts.create(
                identity.name, identity.email, username, placeholder, is_email_verified=True
            )
        except IdentityError as exc:
            if exc.kind is not ErrorKind.CONFLICT:
                raise
            try:
                account = self._accounts.get_by_email(identity.email)
            except IdentityError:
                # The conflict was on the username, not a concurrent sign-in.
                raise exc from None
        logger.info("Provisioned account from %s identity (account_id=%s)", self.provider, account.id)
        return account

    def _link(self, account: Account, identity: ExternalIdentity) -> Account:
        link = ExternalAuthLink(account_id=account.id, provider=self.provider, subject=identity.subject)
        try:
            with store_errors("external_auth.link", account.id):
                self._links.create(link)
        except IdentityError as exc:
            if exc.kind is not ErrorKind.CONFLICT:
                raise
            with store_errors("external_auth.relookup", account.id):
                existing = self._links.get_by_external_subject(self.provider, identity.subject)
            if existing is None:
                raise
            if existing.account_id != account.id:
                return self._accounts.get_by_id(existing.account_id)
        return account
