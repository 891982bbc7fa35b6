"""
feedgate/bearer.py

Bearer credential authentication.

The credential is read from the `Authorization: Bearer <credential>` header
and nowhere else. Query-string and body credentials are ignored.
"""

import logging
from typing import Optional, Tuple

from .accounts import Account, AccountDirectory

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "
MAX_CREDENTIAL_LENGTH = 1024


def extract_credential(authorization_header: Optional[str]) -> Optional[str]:
    """
    Credential from an Authorization header value, or None.

    None unless the header starts with "Bearer " and the remainder is
    1..MAX_CREDENTIAL_LENGTH bytes. The bound applies regardless of how long
    real credentials are.
    """
    if not isinstance(authorization_header, str) or not authorization_header.startswith(BEARER_PREFIX):
        return None

    credential = authorization_header[len(BEARER_PREFIX):]
    if not credential or len(credential.encode("utf-8", "surrogatepass")) > MAX_CREDENTIAL_LENGTH:
        return None

    return credential


def request_meta(request) -> Tuple[Optional[str], Optional[str]]:
    """(client ip, user agent) of a Starlette-style request."""
    client_ip = request.client.host if getattr(request, "client", None) else None
    return client_ip, request.headers.get("user-agent")


class BearerAuthenticator:
    """Resolves a request's bearer credential to an Account."""

    def __init__(self, directory: AccountDirectory, audit):
        self.directory = directory
        self.audit = audit

    def extract_credential(self, request) -> Optional[str]:
        return extract_credential(request.headers.get("authorization"))

    def authenticate(self, request) -> Optional[Account]:
        """
        Account for the request's bearer credential, or None.

        Every outcome is audited with client ip and user agent; the credential
        itself never is.
        """
        client_ip, user_agent = request_meta(request)

        credential = self.extract_credential(request)
        if credential is None:
            self.audit.auth_failure(client_ip, user_agent, "missing_token")
            return None

        account = self.directory.find_by_credential(credential)
        if account is None:
            self.audit.auth_failure(client_ip, user_agent, "invalid_token")
            return None

        self.audit.auth_success(account.username, client_ip)
        return account
