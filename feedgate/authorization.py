"""
feedgate/authorization.py

The two authorization questions the HTTP layer asks:

1) Direct:    may the caller holding this bearer credential use URL X?
2) Delegated: does this feed token grant access to URL X right now?

plus issuing feed tokens for accounts.

Decisions are returned, never raised. `reason` is for logs and for choosing
an HTTP status; it must not be echoed to a feed token holder.

Delegated access re-checks the *current* account after the token verifies:
- an account that has since been removed -> unknown_principal
- an allow-list that no longer covers the URL -> policy_denied
so narrowing an account's allow-list revokes outstanding tokens for the URLs
it no longer covers, although their signatures still verify.
"""

import logging
from typing import Callable, NamedTuple, Optional

from . import urls
from .accounts import Account, AccountDirectory
from .bearer import BearerAuthenticator, request_meta
from .feed_tokens import DEFAULT_EXPIRY, FeedToken, now_epoch, validate_and_decode

logger = logging.getLogger(__name__)

OK = "ok"
UNAUTHENTICATED = "unauthenticated"
URL_INVALID = "url_invalid"
TOKEN_INVALID = "token_invalid"
UNKNOWN_PRINCIPAL = "unknown_principal"
POLICY_DENIED = "policy_denied"


class AuthDecision(NamedTuple):
    account: Optional[Account]
    allowed: bool
    reason: str
    token: Optional[FeedToken] = None


class AuthorizationFacade:
    def __init__(
        self,
        directory: AccountDirectory,
        secret: str,
        audit,
        *,
        token_ttl: int = DEFAULT_EXPIRY,
        clock: Callable[[], int] = now_epoch,
    ):
        self.directory = directory
        self.audit = audit
        self.authenticator = BearerAuthenticator(directory, audit)
        self.token_ttl = token_ttl
        self._secret = secret
        self._clock = clock

    # -------------------------------------------------------------------------
    # Direct (bearer) access
    # -------------------------------------------------------------------------
    def authorize_direct(self, request, url) -> AuthDecision:
        account = self.authenticator.authenticate(request)
        if account is None:
            return AuthDecision(None, False, UNAUTHENTICATED)

        if not urls.is_valid_url(url):
            return AuthDecision(account, False, URL_INVALID)

        decision = urls.check_allowed(url, account.allowed_urls)
        if not decision.allowed:
            client_ip, _ = request_meta(request)
            self.audit.access_denied(account.username, url, POLICY_DENIED, request_ip=client_ip)
            return AuthDecision(account, False, POLICY_DENIED)

        logger.debug("Direct access granted", extra={"username": account.username, "pattern": decision.pattern})
        return AuthDecision(account, True, OK)

    # -------------------------------------------------------------------------
    # Delegated (feed token) access
    # -------------------------------------------------------------------------
    def authorize_delegated(self, encoded_token, url) -> AuthDecision:
        if not encoded_token or not url:
            self.audit.token_usage(encoded_token, url, False, "missing_parameter")
            return AuthDecision(None, False, TOKEN_INVALID)

        token = validate_and_decode(encoded_token, url, self._secret, now=self._clock(), audit=self.audit)
        if token is None:
            return AuthDecision(None, False, TOKEN_INVALID)

        account = self.directory.find_by_username(token.username)
        if account is None:
            self.audit.access_denied(token.username, url, UNKNOWN_PRINCIPAL)
            return AuthDecision(None, False, UNKNOWN_PRINCIPAL, token)

        if not urls.is_allowed(url, account.allowed_urls):
            self.audit.access_denied(account.username, url, POLICY_DENIED)
            return AuthDecision(account, False, POLICY_DENIED, token)

        return AuthDecision(account, True, OK, token)

    def authorize_embedded(self, encoded_token) -> AuthDecision:
        """Delegated access for the URL carried inside the token itself."""
        decoded = FeedToken.decode(encoded_token)
        if decoded is None:
            self.audit.token_usage(encoded_token, None, False, "malformed")
            return AuthDecision(None, False, TOKEN_INVALID)
        return self.authorize_delegated(encoded_token, decoded.url)

    def feed_url_allowed(self, encoded_token, url) -> bool:
        return self.authorize_delegated(encoded_token, url).allowed

    def validate_and_decode(self, encoded_token) -> Optional[FeedToken]:
        """Verified token for its own embedded URL, without the account re-check."""
        decoded = FeedToken.decode(encoded_token)
        if decoded is None:
            self.audit.token_usage(encoded_token, None, False, "malformed")
            return None
        return validate_and_decode(encoded_token, decoded.url, self._secret, now=self._clock(), audit=self.audit)

    # -------------------------------------------------------------------------
    # Issuing
    # -------------------------------------------------------------------------
    def issue_feed_token(self, account: Optional[Account], url, expires_in: Optional[int] = None) -> Optional[str]:
        """
        Encoded feed token for `account` and `url`, or None.

        The URL must pass the account's allow-list before anything is signed.
        """
        if account is None or not urls.is_allowed(url, account.allowed_urls):
            return None

        token = FeedToken.create(
            account.username,
            url,
            self._secret,
            self.token_ttl if expires_in is None else expires_in,
            now=self._clock(),
        )
        if token is None:
            return None

        self.audit.token_issued(token.username, token.url, token.expires_at)
        return token.encode()
