"""
Authentication credential management.

Provides the Credential type and the CredentialRefresher that attaches
valid credentials to outgoing calls and coalesces concurrent refreshes.
"""

from .refresher import CredentialRefresher, HttpRefreshTransport, RefreshTransport
from .types import Credential, SessionProfile

__all__ = [
    "Credential",
    "SessionProfile",
    "CredentialRefresher",
    "RefreshTransport",
    "HttpRefreshTransport",
]
