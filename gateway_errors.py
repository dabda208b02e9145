"""Error taxonomy for the gateway.

OAuth protocol errors reuse authlib's RFC 6749 / RFC 7591 classes so the
wire format matches what OAuth clients expect. Everything else is defined
here: admin login failures, credential resolution failures, backend and
tool failures, and the JSON-RPC errors returned on the MCP endpoint.
"""
from typing import Any, Dict, Optional

from authlib.oauth2.rfc6749.errors import (  # noqa: F401
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    OAuth2Error,
)
from authlib.oauth2.rfc7591.errors import InvalidRedirectURIError  # noqa: F401


class GatewayError(Exception):
    """Base class for gateway errors."""

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Admin login
# ---------------------------------------------------------------------------

class AuthError(GatewayError):
    """Admin authentication failed."""


class InvalidCredentials(AuthError):
    def __init__(self, message: str = 'Invalid username or password'):
        super().__init__(message)


class BackendUnreachable(AuthError):
    """The backend connectivity check failed; no session was created."""

    def __init__(self, message: str = 'Backend connection failed'):
        super().__init__(message)


class LoginRequired(AuthError):
    def __init__(self, message: str = 'Admin login required'):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Backend access
# ---------------------------------------------------------------------------

class CredentialsUnresolvable(GatewayError):
    def __init__(self, message: str = (
            'Backend connection not configured. '
            'Please complete the OAuth login with your backend host and API key.')):
        super().__init__(message)


class BackendError(GatewayError):
    """A call to the backend failed (network, timeout or non-2xx status)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(GatewayError):
    """A tool invocation was rejected before reaching the backend."""


# ---------------------------------------------------------------------------
# JSON-RPC
# ---------------------------------------------------------------------------

class JsonRpcError(GatewayError):
    code = -32603
    http_status = 200
    default_message = 'Internal error'

    def __init__(self, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.default_message)
        self.data = data

    def to_error(self) -> Dict[str, Any]:
        error = {'code': self.code, 'message': self.message}
        if self.data is not None:
            error['data'] = self.data
        return error


class ParseError(JsonRpcError):
    code = -32700
    http_status = 400
    default_message = 'Parse error'


class InvalidRequest(JsonRpcError):
    code = -32600
    http_status = 400
    default_message = 'Invalid Request'


class MethodNotFound(JsonRpcError):
    code = -32601
    default_message = 'Method not found'


class InternalError(JsonRpcError):
    code = -32603
    http_status = 500
    default_message = 'Internal error'


class Unauthorized(JsonRpcError):
    """Missing, expired or invalid bearer token or session."""
    code = -32001
    http_status = 401
    default_message = 'Unauthorized - OAuth authentication required'

    def __init__(self, message: Optional[str] = None, auth_url: Optional[str] = None,
                 www_authenticate: str = 'Bearer'):
        super().__init__(message, data={'auth_url': auth_url} if auth_url else None)
        self.www_authenticate = www_authenticate
