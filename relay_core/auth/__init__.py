"""认证：凭据存储与交互式登录能力。"""

from relay_core.auth.authenticator import (
    CallbackAuthenticator,
    ConsoleAuthenticator,
    InteractiveAuthenticator,
    StaticTokenAuthenticator,
)
from relay_core.auth.credential_store import CredentialStore

__all__ = [
    "CallbackAuthenticator",
    "ConsoleAuthenticator",
    "CredentialStore",
    "InteractiveAuthenticator",
    "StaticTokenAuthenticator",
]
