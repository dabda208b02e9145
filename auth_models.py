"""Records kept by the gateway's authorization core."""
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from authlib.oauth2.rfc6749 import AuthorizationCodeMixin, ClientMixin

import config


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def token_prefix(value: Optional[str]) -> str:
    """Shorten a secret for display and logs."""
    if not value:
        return "null"
    return f"{value[:8]}..."


def same_secret(given: Optional[str], expected: Optional[str]) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode('utf-8'), expected.encode('utf-8'))


class ExpiringRecord:
    """Mixin for records carrying an optional ``expires_at`` timestamp."""

    def is_expired(self, now: Optional[float] = None) -> bool:
        expires_at = getattr(self, 'expires_at', None)
        if expires_at is None:
            return False
        if now is None:
            now = time.time()
        return expires_at <= now


@dataclass(frozen=True)
class BackendCredentials:
    """Host and API key of the automation backend."""
    host: str
    api_key: str = field(repr=False)

    def __repr__(self):
        return f"BackendCredentials(host={self.host!r}, api_key={token_prefix(self.api_key)!r})"


@dataclass(frozen=True)
class Client(ExpiringRecord, ClientMixin):
    client_id: str
    client_secret: str
    redirect_uris: List[str]
    client_name: str = "MCP Client"
    created_at: float = field(default_factory=time.time)
    auto_registered: bool = False
    # Dynamically registered clients never expire.
    expires_at: Optional[float] = None

    def get_client_id(self):
        return self.client_id

    def get_default_redirect_uri(self) -> Optional[str]:
        if self.redirect_uris:
            return self.redirect_uris[0]
        return None

    def get_allowed_scope(self, scope: Optional[str]) -> str:
        return scope or config.DEFAULT_SCOPE

    def check_redirect_uri(self, redirect_uri: Optional[str]) -> bool:
        """Check if redirect_uri is allowed."""
        return bool(redirect_uri) and redirect_uri in self.redirect_uris

    def check_client_secret(self, client_secret: Optional[str]) -> bool:
        return same_secret(client_secret, self.client_secret)

    def check_endpoint_auth_method(self, method: str, endpoint: str) -> bool:
        # Public clients send only client_id; the secret is optional.
        if endpoint == 'token':
            return method in ('none', 'client_secret_post')
        return True

    def check_response_type(self, response_type: Optional[str]) -> bool:
        return response_type == 'code'

    def check_grant_type(self, grant_type: Optional[str]) -> bool:
        return grant_type == 'authorization_code'


@dataclass
class AdminSession(ExpiringRecord):
    token: str
    backend_host: str
    backend_api_key: str = field(repr=False)
    expires_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    authenticated: bool = True

    @property
    def credentials(self) -> Optional[BackendCredentials]:
        if self.authenticated and self.backend_host and self.backend_api_key:
            return BackendCredentials(self.backend_host, self.backend_api_key)
        return None


@dataclass
class AuthorizationCode(ExpiringRecord, AuthorizationCodeMixin):
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    expires_at: float
    admin_session_token: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def get_redirect_uri(self):
        # A token request is matched against redirect_uri only when it sends one.
        return None

    def get_scope(self):
        return self.scope


class TokenKind(str, Enum):
    OAUTH = "oauth"
    # Issued by an operator outside the OAuth dance, never linked to an admin session.
    STANDALONE = "standalone"


@dataclass
class AccessToken(ExpiringRecord):
    token: str
    kind: TokenKind
    client_id: str
    scope: str
    expires_at: float
    resource: str
    created_at: float = field(default_factory=time.time)
    description: Optional[str] = None
    admin_session_token: Optional[str] = None

    @property
    def is_standalone(self) -> bool:
        return self.kind is TokenKind.STANDALONE

    def expires_in(self, now: Optional[float] = None) -> int:
        if now is None:
            now = time.time()
        return max(0, int(self.expires_at - now))

    def to_public_dict(self) -> Dict[str, Any]:
        """Token metadata without the raw secret."""
        return {
            'token_prefix': token_prefix(self.token),
            'description': self.description,
            'scope': self.scope,
            'created_at': isoformat(self.created_at),
            'expires_at': isoformat(self.expires_at),
            'client_id': self.client_id,
            'kind': self.kind.value,
        }


@dataclass
class ProtocolSession(ExpiringRecord):
    session_id: str
    authenticated: bool
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    # Pinned at creation; never rebound afterwards.
    admin_session_token: Optional[str] = None
    # Bearer token the session was opened with; revoking it ends the session.
    access_token: Optional[str] = field(default=None, repr=False)

    @property
    def is_linked(self) -> bool:
        return self.admin_session_token is not None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: Dict[str, Any]
    mutating: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'inputSchema': self.input_schema,
        }

    def to_openai_function(self) -> Dict[str, Any]:
        return {
            'type': 'function',
            'function': {
                'name': self.name,
                'description': self.description,
                'parameters': self.input_schema,
            },
        }
