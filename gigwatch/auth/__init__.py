"""OAuth credential handling: token-endpoint client and lifecycle manager."""

from gigwatch.auth.provider import AuthorizationProvider, OAuthTokenClient, TokenGrant
from gigwatch.auth.tokens import (
    RefreshLockRegistry,
    TokenLifecycleManager,
    install_credential,
    record_from_grant,
)

__all__ = [
    "AuthorizationProvider",
    "OAuthTokenClient",
    "TokenGrant",
    "RefreshLockRegistry",
    "TokenLifecycleManager",
    "install_credential",
    "record_from_grant",
]
