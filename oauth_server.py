"""OAuth 2.1 Authorization Server with Dynamic Client Registration and PKCE.

The operator logs in with the single admin credential and the backend
(n8n host + API key) their tools should act against. Consent then mints a
short-lived authorization code bound to that admin session, and the token
endpoint exchanges it for an opaque bearer token that still remembers the
admin session, so MCP calls can later be resolved to those backend
credentials.

The authorization-code grant itself runs on authlib's Flask
``AuthorizationServer``; this module supplies the storage hooks, the S256
PKCE policy and the login/consent pages around it.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, List, Mapping, Optional

from authlib.integrations.flask_oauth2 import AuthorizationServer
from authlib.integrations.flask_oauth2.requests import FlaskOAuth2Payload, FlaskOAuth2Request
from authlib.oauth2.rfc6749 import grants
from authlib.oauth2.rfc6750 import BearerTokenGenerator
from authlib.oauth2.rfc7636 import CodeChallenge
from flask import Blueprint, current_app, jsonify, redirect, render_template_string, request, url_for
from werkzeug.security import gen_salt

import config
from auth_models import (
    AccessToken,
    AdminSession,
    AuthorizationCode,
    BackendCredentials,
    Client,
    TokenKind,
    isoformat,
    same_secret,
    token_prefix,
)
from auth_store import AuthStore
from backend_client import BackendFactory, run_async
from gateway_errors import (
    BackendError,
    BackendUnreachable,
    InvalidClientError,
    InvalidCredentials,
    InvalidGrantError,
    InvalidRedirectURIError,
    InvalidRequestError,
    LoginRequired,
    OAuth2Error,
)

logger = logging.getLogger(__name__)

PKCE_METHOD = 'S256'


# ============================================================================
# Client registry
# ============================================================================

class ClientRegistry:
    """OAuth client registrations, dynamic or auto-created."""

    def __init__(self, store: AuthStore, allow_auto_register: bool = config.ALLOW_CLIENT_AUTO_REGISTRATION,
                 auto_register_ttl: int = config.AUTO_REGISTERED_CLIENT_TTL,
                 clock: Callable[[], float] = time.time):
        self.store = store
        # Permissive mode: unknown client ids presented at /oauth/authorize are
        # registered on the spot, bound to the redirect URI they present.
        self.allow_auto_register = allow_auto_register
        self.auto_register_ttl = auto_register_ttl
        self._clock = clock

    def register(self, redirect_uris: Any, client_name: Optional[str] = None) -> Client:
        if (not redirect_uris or not isinstance(redirect_uris, list)
                or not all(isinstance(uri, str) and uri for uri in redirect_uris)):
            raise InvalidRedirectURIError('redirect_uris must be a non-empty list of URIs')

        client = Client(
            client_id=f"client_{gen_salt(24)}",
            client_secret=gen_salt(48),
            redirect_uris=list(redirect_uris),
            client_name=client_name or 'MCP Client',
            created_at=self._clock(),
        )
        self.store.put(client.client_id, client)
        logger.info(f"Registered client {client.client_id} ({client.client_name})")
        return client

    def get(self, client_id: Optional[str]) -> Optional[Client]:
        return self.store.get(client_id) if client_id else None

    def get_or_auto_register(self, client_id: str, redirect_uri: Optional[str]) -> Client:
        client = self.get(client_id)
        if client is not None:
            return client
        if not self.allow_auto_register:
            raise InvalidClientError('Unknown client. Please register the client first')
        if not redirect_uri:
            raise InvalidRequestError('redirect_uri is required')

        now = self._clock()
        client = Client(
            client_id=client_id,
            client_secret=gen_salt(48),
            redirect_uris=[redirect_uri],
            client_name='Auto-registered MCP Client',
            created_at=now,
            auto_registered=True,
            expires_at=now + self.auto_register_ttl if self.auto_register_ttl > 0 else None,
        )
        self.store.put(client_id, client)
        logger.warning(f"Auto-registered unknown client {client_id} for {redirect_uri}")
        return client


# ============================================================================
# Admin authentication
# ============================================================================

class AdminAuthenticator:
    """Single-operator login that also proves the backend is reachable."""

    def __init__(self, store: AuthStore, username: str, password: str, backend_factory: BackendFactory,
                 session_ttl: int = config.ADMIN_SESSION_TTL, clock: Callable[[], float] = time.time):
        self.store = store
        self.username = username
        self.password = password
        self.backend_factory = backend_factory
        self.session_ttl = session_ttl
        self._clock = clock
        if not password:
            logger.warning("ADMIN_PASSWORD is not set; admin login is disabled")

    def check_operator(self, username: Optional[str], password: Optional[str]) -> bool:
        # Evaluate both comparisons so timing does not reveal which one failed.
        user_ok = same_secret(username, self.username)
        password_ok = same_secret(password, self.password)
        return user_ok and password_ok

    def check_backend(self, credentials: BackendCredentials) -> None:
        async def _check():
            async with self.backend_factory(credentials) as backend:
                await backend.check_connection()

        try:
            run_async(_check())
        except BackendError as e:
            raise BackendUnreachable(e.message)
        except Exception as e:
            raise BackendUnreachable(f"{type(e).__name__}: {e}")

    def login(self, username: Optional[str], password: Optional[str],
              backend_host: Optional[str], backend_api_key: Optional[str]) -> AdminSession:
        if not self.check_operator(username, password):
            logger.info("Admin login rejected: invalid credentials")
            raise InvalidCredentials()

        backend_host = (backend_host or '').strip()
        backend_api_key = (backend_api_key or '').strip()
        if not backend_host.startswith(('http://', 'https://')) or not backend_api_key:
            raise BackendUnreachable('A backend URL (http/https) and API key are required')

        self.check_backend(BackendCredentials(backend_host, backend_api_key))

        now = self._clock()
        session = AdminSession(
            token=secrets.token_urlsafe(32),
            backend_host=backend_host,
            backend_api_key=backend_api_key,
            created_at=now,
            expires_at=now + self.session_ttl,
        )
        self.store.put(session.token, session)
        logger.info(f"Admin session {token_prefix(session.token)} created for backend {backend_host}")
        return session

    def verify(self, token: Optional[str]) -> Optional[AdminSession]:
        if not token:
            return None
        session = self.store.get(token)
        if session is None or not session.authenticated:
            return None
        return session

    def most_recent_session(self) -> Optional[AdminSession]:
        """Newest live admin session that carries backend credentials."""
        candidates = [s for s in self.store.values() if s.credentials is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def __len__(self):
        return len(self.store.items())


# ============================================================================
# Authorization-code grant (authlib)
# ============================================================================

class CodeFlowPayload(FlaskOAuth2Payload):
    """Request payload that assumes the code flow when a client omits the type."""

    @property
    def response_type(self):
        return super().response_type or 'code'

    @property
    def grant_type(self):
        return super().grant_type or AuthorizationCodeGrant.GRANT_TYPE


class S256CodeChallenge(CodeChallenge):
    """PKCE restricted to S256.

    When a code carries a challenge, a missing or malformed verifier fails the
    same way as a wrong one: ``invalid_grant``.
    """
    SUPPORTED_CODE_CHALLENGE_METHOD = [PKCE_METHOD]

    def validate_code_challenge(self, grant, redirect_uri):
        data = grant.request.payload.data
        if not data.get('code_challenge') and not data.get('code_challenge_method'):
            if self.required:
                raise InvalidRequestError("Missing 'code_challenge'")
            return
        if data.get('code_challenge_method') != PKCE_METHOD:
            raise InvalidRequestError("'code_challenge_method' must be S256")
        super().validate_code_challenge(grant, redirect_uri)

    def validate_code_verifier(self, grant, result):
        try:
            super().validate_code_verifier(grant, result)
        except InvalidRequestError as error:
            if self.get_authorization_code_challenge(grant.request.authorization_code):
                raise InvalidGrantError(error.description)
            raise


def match_redirect_uri(grant, result):
    presented = grant.request.payload.redirect_uri
    if presented and presented != grant.request.authorization_code.redirect_uri:
        raise InvalidGrantError("Invalid 'redirect_uri' in request.")


class AuthorizationCodeGrant(grants.AuthorizationCodeGrant):
    """Authorization Code Grant bound to the operator's admin session."""

    TOKEN_ENDPOINT_AUTH_METHODS = ['client_secret_post', 'none']

    def __init__(self, request, server):
        super().__init__(request, server)
        self.register_hook('after_validate_token_request', match_redirect_uri)

    def save_authorization_code(self, code, request):
        """Save the code with its PKCE challenge and the consenting admin session."""
        server = self.server
        now = server.clock()
        data = request.payload.data
        challenge = data.get('code_challenge') or None
        auth_code = AuthorizationCode(
            code=code,
            client_id=request.client.client_id,
            redirect_uri=request.payload.redirect_uri or request.client.get_default_redirect_uri(),
            scope=request.scope,
            expires_at=now + server.code_ttl,
            admin_session_token=request.user.token,
            code_challenge=challenge,
            code_challenge_method=data.get('code_challenge_method') if challenge else None,
            created_at=now,
        )
        server.code_store.put(code, auth_code)
        logger.info(f"Issued authorization code for client {auth_code.client_id} "
                    f"(admin session {token_prefix(auth_code.admin_session_token)})")
        return auth_code

    def query_authorization_code(self, code, client):
        auth_code = self.server.code_store.get(code)
        if auth_code is not None and auth_code.client_id == client.client_id:
            return auth_code
        return None

    def authenticate_user(self, authorization_code):
        # Runs once every check has passed: claim the code before a token is
        # minted, so of several concurrent exchanges only one gets it back.
        if self.server.code_store.pop(authorization_code.code) is None:
            raise InvalidGrantError('Authorization code already used')
        return authorization_code.admin_session_token

    def delete_authorization_code(self, authorization_code):
        self.server.code_store.delete(authorization_code.code)


class GatewayAuthorizationServer(AuthorizationServer):
    """authlib server whose authorization codes live in an ``AuthStore``."""

    def __init__(self, code_store: AuthStore, code_ttl: int = config.AUTHORIZATION_CODE_TTL,
                 require_pkce: bool = config.REQUIRE_PKCE, clock: Callable[[], float] = time.time):
        super().__init__()
        self.code_store = code_store
        self.code_ttl = code_ttl
        self.clock = clock
        self.register_grant(AuthorizationCodeGrant, [S256CodeChallenge(required=require_pkce)])

    def create_oauth2_request(self, _request):
        # Always the current Flask request.
        oauth_request = FlaskOAuth2Request(request)
        oauth_request.payload = CodeFlowPayload(request)
        return oauth_request


# ============================================================================
# Authorization codes
# ============================================================================

AUTHORIZE_PARAMS = ('response_type', 'client_id', 'redirect_uri', 'state',
                    'code_challenge', 'code_challenge_method', 'scope')


@dataclass
class AuthorizeRequest:
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    scope: Optional[str] = None
    response_type: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> 'AuthorizeRequest':
        return cls(**{name: params.get(name) or None for name in AUTHORIZE_PARAMS})

    def to_params(self) -> Dict[str, str]:
        """Non-empty parameters, for hidden form fields and redirects."""
        return {name: getattr(self, name) for name in AUTHORIZE_PARAMS if getattr(self, name)}


@dataclass
class AuthorizeDecision:
    client: Client
    request: AuthorizeRequest
    redirect_uri: str
    admin_session: Optional[AdminSession] = None

    @property
    def requires_login(self) -> bool:
        return self.admin_session is None

    @property
    def requires_consent(self) -> bool:
        return self.admin_session is not None


class AuthorizationCodeIssuer:
    """Login/consent state machine that ends in a single-use code.

    Reads the OAuth parameters from the current Flask request; ``req`` only
    names the client for auto-registration.
    """

    def __init__(self, registry: ClientRegistry, authenticator: AdminAuthenticator,
                 server: GatewayAuthorizationServer):
        self.registry = registry
        self.authenticator = authenticator
        self.server = server

    def _consent_grant(self, req: AuthorizeRequest, admin_session: Optional[AdminSession]):
        if req.client_id:
            self.registry.get_or_auto_register(req.client_id, req.redirect_uri)
        return self.server.get_consent_grant(end_user=admin_session)

    def authorize(self, req: AuthorizeRequest, admin_session_token: Optional[str]) -> AuthorizeDecision:
        admin_session = self.authenticator.verify(admin_session_token)
        grant = self._consent_grant(req, admin_session)
        return AuthorizeDecision(client=grant.client, request=req, redirect_uri=grant.redirect_uri,
                                 admin_session=admin_session)

    def approve(self, req: AuthorizeRequest, admin_session_token: Optional[str]):
        """Mint a code for the consenting operator; return the redirect response."""
        admin_session = self.authenticator.verify(admin_session_token)
        if admin_session is None:
            raise LoginRequired()
        grant = self._consent_grant(req, admin_session)
        return self.server.create_authorization_response(grant_user=admin_session, grant=grant)

    def deny(self, req: AuthorizeRequest):
        # Known clients only: a denial never registers anything.
        grant = self.server.get_consent_grant()
        logger.info(f"Operator denied authorization for client {req.client_id}")
        return self.server.create_authorization_response(grant_user=None, grant=grant)


# ============================================================================
# Tokens
# ============================================================================

class TokenService:
    """Code exchange plus administrative token management."""

    def __init__(self, server: GatewayAuthorizationServer, token_store: AuthStore,
                 resource: str = config.SERVER_URL, access_token_ttl: int = config.ACCESS_TOKEN_TTL,
                 standalone_token_ttl: int = config.STANDALONE_TOKEN_TTL,
                 default_scope: str = config.DEFAULT_SCOPE, clock: Callable[[], float] = time.time):
        self.server = server
        self.token_store = token_store
        self.resource = resource
        self.access_token_ttl = access_token_ttl
        self.standalone_token_ttl = standalone_token_ttl
        self.default_scope = default_scope
        self._clock = clock
        server.register_token_generator(
            AuthorizationCodeGrant.GRANT_TYPE,
            BearerTokenGenerator(lambda **kwargs: secrets.token_urlsafe(32), expires_generator=access_token_ttl),
        )

    def save_token(self, token: Dict[str, Any], request) -> AccessToken:
        """Store a token minted by the code grant; ``request.user`` is the admin session token."""
        now = self._clock()
        record = AccessToken(
            token=token['access_token'],
            kind=TokenKind.OAUTH,
            client_id=request.client.client_id,
            scope=token.get('scope') or self.default_scope,
            expires_at=now + token.get('expires_in', self.access_token_ttl),
            resource=self.resource,
            created_at=now,
            admin_session_token=request.user,
        )
        self.token_store.put(record.token, record)
        logger.info(f"OAuth completed for client {record.client_id}: token {token_prefix(record.token)} "
                    f"linked to admin session {token_prefix(record.admin_session_token)}")
        return record

    def exchange(self):
        """Token endpoint for the current Flask request."""
        response = self.server.create_token_response()
        if response.status_code != 200:
            error = response.get_json(silent=True) or {}
            logger.info(f"Token request rejected: {error.get('error')}: {error.get('error_description')}")
        return response

    def register_standalone_token(self, description: Optional[str] = None,
                                  scope: Optional[str] = None) -> AccessToken:
        now = self._clock()
        token = AccessToken(
            token=secrets.token_urlsafe(32),
            kind=TokenKind.STANDALONE,
            client_id='api-client',
            scope=scope or self.default_scope,
            expires_at=now + self.standalone_token_ttl,
            resource=self.resource,
            created_at=now,
            description=description or 'API Token',
        )
        self.token_store.put(token.token, token)
        logger.info(f"Registered standalone token {token_prefix(token.token)}: {token.description}")
        return token

    def verify(self, bearer_value: Optional[str]) -> Optional[AccessToken]:
        if not bearer_value:
            return None
        return self.token_store.get(bearer_value)

    def revoke(self, token: str) -> bool:
        revoked = self.token_store.delete(token)
        if revoked:
            logger.info(f"Revoked token {token_prefix(token)}")
        return revoked

    def list(self) -> List[Dict[str, Any]]:
        tokens = sorted(self.token_store.values(), key=lambda t: t.created_at)
        return [t.to_public_dict() for t in tokens]

    def __len__(self):
        return len(self.token_store.items())


# ============================================================================
# HTTP endpoints
# ============================================================================

oauth_bp = Blueprint('oauth', __name__)


def _gateway():
    return current_app.extensions[config.GATEWAY_EXTENSION]


def _oauth_error(error: OAuth2Error):
    """JSON error body, or a redirect back to the client once its redirect URI is validated."""
    logger.info(f"OAuth error: {error.error}: {error.description}")
    return _gateway().server.handle_error_response(None, error)


LOGIN_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>N8N MCP Server - Login Required</title></head>
<body>
  <h2>N8N MCP Server</h2>
  <p>An MCP client is requesting access to your N8N workflows.
     Please authenticate and configure your N8N connection.</p>
  {% if error %}<div class="error">{{ error }}</div>{% endif %}
  <form method="post" action="{{ url_for('oauth.login') }}">
    <label for="username">Username:</label>
    <input type="text" id="username" name="username" required>
    <label for="password">Password:</label>
    <input type="password" id="password" name="password" required>
    <label for="backend_host">N8N Host URL:</label>
    <input type="url" id="backend_host" name="backend_host" value="{{ backend_host or '' }}"
           placeholder="https://your-n8n-instance.com" required>
    <label for="backend_api_key">N8N API Key:</label>
    <input type="password" id="backend_api_key" name="backend_api_key" required>
    {% for name, value in params.items() %}
    <input type="hidden" name="{{ name }}" value="{{ value }}">
    {% endfor %}
    <button type="submit">Login &amp; Continue</button>
  </form>
</body>
</html>"""

CONSENT_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>Authorize N8N MCP Access</title></head>
<body>
  <div class="authenticated">Authenticated as: {{ username }}</div>
  <h2>Authorization Request</h2>
  <p><strong>Client:</strong> {{ client.client_name }} ({{ client.client_id }})</p>
  <p><strong>Redirect URI:</strong> {{ redirect_uri }}</p>
  <p><strong>Backend:</strong> {{ backend_host }}</p>
  <ul>
    <li><strong>N8N Workflow Management</strong> - List, create, and manage workflows</li>
    <li><strong>Workflow Execution</strong> - Execute and monitor workflow runs</li>
    <li><strong>Execution History</strong> - View workflow execution logs</li>
  </ul>
  <form method="post" action="{{ url_for('oauth.authorize') }}">
    {% for name, value in params.items() %}
    <input type="hidden" name="{{ name }}" value="{{ value }}">
    {% endfor %}
    <button type="submit" name="action" value="approve">Allow Access</button>
    <button type="submit" name="action" value="deny">Deny Access</button>
  </form>
</body>
</html>"""


def _render_login(auth_req: AuthorizeRequest, error: Optional[str] = None,
                  backend_host: Optional[str] = None, status: int = 200):
    html = render_template_string(LOGIN_TEMPLATE, params=auth_req.to_params(), error=error,
                                  backend_host=backend_host)
    return html, status, {'Content-Type': 'text/html; charset=utf-8'}


def _admin_cookie() -> Optional[str]:
    return request.cookies.get(config.ADMIN_COOKIE_NAME)


def require_operator(f):
    """Allow the request for a logged-in operator or HTTP Basic admin credentials."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        gateway = _gateway()
        if gateway.authenticator.verify(_admin_cookie()) is not None:
            return f(*args, **kwargs)
        basic = request.authorization
        if basic and gateway.authenticator.check_operator(basic.username, basic.password):
            return f(*args, **kwargs)
        response = jsonify({'error': 'unauthorized', 'error_description': 'Admin authentication required'})
        response.status_code = 401
        response.headers['WWW-Authenticate'] = 'Basic realm="MCP Server Admin"'
        return response
    return decorated_function


@oauth_bp.route('/.well-known/oauth-authorization-server', methods=['GET'])
def oauth_metadata():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    settings = _gateway().settings
    return jsonify({
        'issuer': settings.server_url,
        'authorization_endpoint': settings.authorization_endpoint,
        'token_endpoint': settings.token_endpoint,
        'registration_endpoint': settings.registration_endpoint,
        'scopes_supported': settings.scopes_supported,
        'response_types_supported': ['code'],
        'grant_types_supported': [AuthorizationCodeGrant.GRANT_TYPE],
        'code_challenge_methods_supported': [PKCE_METHOD],
        'token_endpoint_auth_methods_supported': AuthorizationCodeGrant.TOKEN_ENDPOINT_AUTH_METHODS,
    })


@oauth_bp.route('/.well-known/oauth-protected-resource', methods=['GET'])
def oauth_protected_resource_metadata():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    settings = _gateway().settings
    return jsonify({
        'resource': settings.server_url,
        'authorization_servers': [settings.server_url],
        'bearer_methods_supported': ['header'],
        'scopes_supported': settings.scopes_supported,
    })


# OAuth 2.0 Dynamic Client Registration (RFC 7591)
@oauth_bp.route('/oauth/register', methods=['POST'])
def register_client():
    """Dynamic Client Registration endpoint."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _oauth_error(InvalidRequestError('Request body must be a JSON object'))
    try:
        client = _gateway().registry.register(data.get('redirect_uris'), data.get('client_name'))
    except OAuth2Error as e:
        return _oauth_error(e)

    return jsonify({
        'client_id': client.client_id,
        'client_secret': client.client_secret,
        'client_secret_expires_at': 0,
        'client_id_issued_at': int(client.created_at),
        'client_name': client.client_name,
        'redirect_uris': client.redirect_uris,
    }), 201


@oauth_bp.route('/oauth/authorize', methods=['GET', 'POST'])
def authorize():
    """Authorization endpoint: login or consent page, then the consent decision."""
    gateway = _gateway()

    if request.method == 'GET':
        auth_req = AuthorizeRequest.from_params(request.args)
        try:
            decision = gateway.issuer.authorize(auth_req, _admin_cookie())
        except OAuth2Error as e:
            return _oauth_error(e)

        if decision.requires_login:
            return _render_login(auth_req)
        html = render_template_string(
            CONSENT_TEMPLATE,
            username=gateway.settings.admin_username,
            client=decision.client,
            redirect_uri=decision.redirect_uri,
            backend_host=decision.admin_session.backend_host,
            params=auth_req.to_params(),
        )
        return html, 200, {'Content-Type': 'text/html; charset=utf-8'}

    # POST - operator answered the consent page
    auth_req = AuthorizeRequest.from_params(request.form)
    action = request.form.get('action')
    try:
        if action == 'approve':
            return gateway.issuer.approve(auth_req, _admin_cookie())
        if action == 'deny':
            return gateway.issuer.deny(auth_req)
    except LoginRequired as e:
        return _render_login(auth_req, error=e.message, status=401)
    except OAuth2Error as e:
        return _oauth_error(e)
    return _oauth_error(InvalidRequestError("action must be 'approve' or 'deny'"))


@oauth_bp.route('/oauth/login', methods=['POST'])
def login():
    """Admin login: verify the operator, check the backend, set the session cookie."""
    gateway = _gateway()
    form = request.form
    auth_req = AuthorizeRequest.from_params(form)
    backend_host = form.get('backend_host')

    try:
        session = gateway.authenticator.login(
            form.get('username'), form.get('password'), backend_host, form.get('backend_api_key'))
    except InvalidCredentials as e:
        return _render_login(auth_req, error=e.message, backend_host=backend_host, status=401)
    except BackendUnreachable as e:
        return _render_login(auth_req, error=f"Backend connection failed: {e.message}",
                             backend_host=backend_host, status=502)

    if auth_req.client_id:
        response = redirect(url_for('oauth.authorize', **auth_req.to_params()))
    else:
        response = jsonify({'message': 'Login successful', 'expires_at': isoformat(session.expires_at)})
    response.set_cookie(
        config.ADMIN_COOKIE_NAME,
        session.token,
        max_age=gateway.settings.admin_cookie_max_age,
        httponly=True,
        secure=gateway.settings.cookie_secure,
        samesite='Lax',
    )
    return response


@oauth_bp.route('/oauth/token', methods=['POST'])
def issue_token():
    """Token endpoint: authorization_code grant with PKCE."""
    return _gateway().tokens.exchange()


@oauth_bp.route('/tokens/register', methods=['POST'])
@require_operator
def register_token():
    """Issue a standalone API token outside the OAuth flow."""
    gateway = _gateway()
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return _oauth_error(InvalidRequestError('Invalid token registration request'))

    token = gateway.tokens.register_standalone_token(data.get('description'), data.get('scope'))
    return jsonify({
        'access_token': token.token,
        'token_type': 'Bearer',
        'expires_in': token.expires_in(gateway.clock()),
        'scope': token.scope,
        'description': token.description,
        'created_at': isoformat(token.created_at),
    }), 201


@oauth_bp.route('/tokens', methods=['GET'])
@require_operator
def list_tokens():
    return jsonify({'tokens': _gateway().tokens.list()})


@oauth_bp.route('/tokens/<path:token>', methods=['DELETE'])
@require_operator
def revoke_token(token):
    if _gateway().revoke_token(token):
        return jsonify({'message': 'Token revoked successfully'})
    return jsonify({'error': 'Token not found'}), 404
