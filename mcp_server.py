"""MCP Server (Streamable HTTP) behind the OAuth authorization gate.

Every JSON-RPC message goes through three steps:

1. the authorization gate (bearer token, or an authenticated MCP session
   whose admin session is still alive),
2. the session layer, which creates MCP sessions on ``initialize`` and pins
   each one to the operator's backend credentials,
3. the dispatcher, which routes the finite method set and, for
   ``tools/call``, resolves backend credentials and runs the tool.
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from werkzeug.datastructures import Headers

import config
from auth_models import AccessToken, BackendCredentials, ProtocolSession, token_prefix
from auth_store import AuthStore
from backend_client import run_async
from gateway_errors import (
    CredentialsUnresolvable,
    InternalError,
    InvalidRequest,
    JsonRpcError,
    MethodNotFound,
    ParseError,
    Unauthorized,
)
from oauth_server import AdminAuthenticator, TokenService
from workflow_tools import ToolExecutor, error_result, get_tool, list_openai_functions, list_tools

logger = logging.getLogger(__name__)

SESSION_HEADER = 'Mcp-Session-Id'


def _as_headers(headers) -> Headers:
    if isinstance(headers, Headers):
        return headers
    return Headers(headers or {})


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None
    return parts[1]


# ============================================================================
# Authorization context and session linking
# ============================================================================

class AuthKind(str, Enum):
    BEARER = 'bearer'
    SESSION = 'session'
    ANONYMOUS = 'anonymous'


@dataclass
class AuthContext:
    kind: AuthKind
    access_token: Optional[AccessToken] = None
    session: Optional[ProtocolSession] = None

    @classmethod
    def anonymous(cls) -> 'AuthContext':
        return cls(AuthKind.ANONYMOUS)

    @property
    def authenticated(self) -> bool:
        return self.kind is not AuthKind.ANONYMOUS

    @property
    def is_standalone(self) -> bool:
        return self.access_token is not None and self.access_token.is_standalone


class SessionLinker:
    """Authorizes protocol requests and binds MCP sessions to admin sessions."""

    def __init__(self, store: AuthStore, authenticator: AdminAuthenticator, tokens: TokenService,
                 settings: config.Settings, clock: Callable[[], float] = time.time):
        self.store = store
        self.authenticator = authenticator
        self.tokens = tokens
        self.settings = settings
        self._clock = clock

    def unauthorized(self, message: Optional[str] = None, invalid_token: bool = False) -> Unauthorized:
        challenge = (f'Bearer realm="MCP Server", scope="{config.DEFAULT_SCOPE}", '
                     f'resource_metadata="{self.settings.resource_metadata_url}"')
        if invalid_token:
            challenge += ', error="invalid_token"'
        return Unauthorized(message, auth_url=self.settings.discovery_url, www_authenticate=challenge)

    def authorize_request(self, headers: Mapping[str, str]) -> AuthContext:
        """Bearer token first, then an authenticated MCP session; else Unauthorized."""
        headers = _as_headers(headers)
        bearer = parse_bearer(headers.get('Authorization'))
        if bearer:
            token = self.tokens.verify(bearer)
            if token is None:
                # A presented bearer is final; a session id cannot rescue it.
                logger.info(f"Rejected unknown or expired bearer token {token_prefix(bearer)}")
                raise self.unauthorized(invalid_token=True)
            return AuthContext(AuthKind.BEARER, access_token=token)

        session_id = headers.get(SESSION_HEADER)
        if session_id:
            session = self.store.get(session_id)
            if (session is not None and session.authenticated and session.is_linked
                    and self.authenticator.verify(session.admin_session_token) is not None
                    and (session.access_token is None or self.tokens.verify(session.access_token) is not None)):
                return AuthContext(AuthKind.SESSION, session=session)

        raise self.unauthorized()

    def _select_admin_session(self, auth: AuthContext):
        # Standalone tokens and anonymous callers are never bound to an operator.
        if not auth.authenticated or auth.is_standalone:
            return None
        token = auth.access_token
        if token is not None and token.admin_session_token:
            inherited = self.authenticator.verify(token.admin_session_token)
            if inherited is not None and inherited.credentials is not None:
                return inherited
        # Single-tenant simplification: the newest live operator login wins.
        return self.authenticator.most_recent_session()

    def link_or_create_session(self, existing_session_id: Optional[str], method: Optional[str],
                               auth: Optional[AuthContext] = None) -> Optional[ProtocolSession]:
        """Return the pinned session, or create and link one on ``initialize``."""
        if existing_session_id:
            session = self.store.get(existing_session_id)
            if session is not None or method != 'initialize':
                return session
        elif method != 'initialize':
            return None

        auth = auth or AuthContext.anonymous()
        admin_session = self._select_admin_session(auth)
        now = self._clock()
        session = ProtocolSession(
            session_id=str(uuid.uuid4()),
            authenticated=auth.authenticated,
            created_at=now,
            expires_at=now + self.settings.protocol_session_ttl,
            admin_session_token=admin_session.token if admin_session else None,
            access_token=auth.access_token.token if auth.access_token else None,
        )
        self.store.put(session.session_id, session)
        if admin_session is not None:
            logger.info(f"MCP session {session.session_id} linked to admin session "
                        f"{token_prefix(admin_session.token)} ({admin_session.backend_host})")
        else:
            logger.info(f"MCP session {session.session_id} created without backend credentials "
                        f"(authenticated={session.authenticated})")
        return session

    def get_session(self, session_id: Optional[str]) -> Optional[ProtocolSession]:
        return self.store.get(session_id) if session_id else None

    def terminate(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        removed = self.store.delete(session_id)
        if removed:
            logger.info(f"MCP session {session_id} terminated")
        return removed

    def terminate_for_token(self, token: str) -> List[str]:
        """End every session opened with ``token``; return their ids."""
        session_ids = [session_id for session_id, session in self.store.items()
                       if session.access_token == token]
        for session_id in session_ids:
            self.terminate(session_id)
        return session_ids

    def __len__(self):
        return len(self.store.items())


class CredentialResolver:
    """Picks the backend credentials for one tool call.

    Precedence: the admin session pinned to the MCP session, then the
    process-wide default backend, then failure.
    """

    def __init__(self, authenticator: AdminAuthenticator, default_credentials: Optional[BackendCredentials] = None,
                 standalone_may_mutate: bool = config.STANDALONE_TOKENS_MAY_MUTATE):
        self.authenticator = authenticator
        self.default_credentials = default_credentials
        self.standalone_may_mutate = standalone_may_mutate

    def resolve(self, auth: Optional[AuthContext], session: Optional[ProtocolSession],
                mutating: bool = False) -> BackendCredentials:
        standalone = auth is not None and auth.is_standalone
        if not standalone and session is not None and session.admin_session_token:
            admin_session = self.authenticator.verify(session.admin_session_token)
            if admin_session is not None and admin_session.credentials is not None:
                return admin_session.credentials

        if self.default_credentials is not None:
            if standalone and mutating and not self.standalone_may_mutate:
                raise CredentialsUnresolvable(
                    'Standalone API tokens may not call tools that modify the backend')
            return self.default_credentials

        raise CredentialsUnresolvable()


# ============================================================================
# JSON-RPC dispatch
# ============================================================================

class Method(str, Enum):
    INITIALIZE = 'initialize'
    INITIALIZED = 'notifications/initialized'
    TOOLS_LIST = 'tools/list'
    TOOLS_CALL = 'tools/call'


DISCOVERY_METHODS = frozenset([Method.INITIALIZE, Method.TOOLS_LIST])
# Client workarounds, applied only when COMPAT_PROMPTS_LIST_AS_TOOLS is on.
COMPAT_ALIASES = {'prompts/list': Method.TOOLS_LIST}


@dataclass
class RpcRequest:
    method: Method
    id: Any
    params: Dict[str, Any]
    is_notification: bool


@dataclass
class RpcResponse:
    status: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


class Dispatcher:
    def __init__(self, linker: SessionLinker, resolver: CredentialResolver, executor: ToolExecutor,
                 settings: config.Settings):
        self.linker = linker
        self.resolver = resolver
        self.executor = executor
        self.settings = settings
        self.handlers = {
            Method.INITIALIZE: self._initialize,
            Method.INITIALIZED: self._initialized,
            Method.TOOLS_LIST: self._tools_list,
            Method.TOOLS_CALL: self._tools_call,
        }

    @staticmethod
    def _decode(raw_body: bytes) -> Dict[str, Any]:
        try:
            message = json.loads(raw_body or b'')
        except (ValueError, UnicodeDecodeError):
            raise ParseError()
        if not isinstance(message, dict):
            raise InvalidRequest('Request must be a single JSON-RPC object')
        if not isinstance(message.get('method'), str):
            raise InvalidRequest('Request is missing a method')
        params = message.get('params')
        if params is None:
            params = {}
        elif not isinstance(params, dict):
            raise InvalidRequest('params must be an object')
        message['params'] = params
        return message

    def _route(self, method_name: str) -> Optional[Method]:
        try:
            return Method(method_name)
        except ValueError:
            pass
        if self.settings.compat_prompts_list_as_tools and method_name in COMPAT_ALIASES:
            logger.debug(f"Compatibility shim: answering {method_name} as tools/list")
            return COMPAT_ALIASES[method_name]
        return None

    @staticmethod
    def error_response(error: JsonRpcError, request_id: Any = None) -> RpcResponse:
        response = RpcResponse(error.http_status, {'jsonrpc': '2.0', 'id': request_id, 'error': error.to_error()})
        if isinstance(error, Unauthorized):
            response.headers['WWW-Authenticate'] = error.www_authenticate
        return response

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> RpcResponse:
        headers = _as_headers(headers)
        denied = None
        try:
            auth = self.linker.authorize_request(headers)
        except Unauthorized as e:
            denied, auth = e, AuthContext.anonymous()

        try:
            message = self._decode(raw_body)
        except JsonRpcError as e:
            return self.error_response(denied or e)

        request_id = message.get('id')
        is_notification = 'id' not in message
        method = self._route(message['method'])

        if denied is not None and not (self.settings.allow_unauthenticated_discovery
                                       and method in DISCOVERY_METHODS):
            logger.info(f"Unauthorized MCP request: {message['method']}")
            return self.error_response(denied, request_id)

        if method is None:
            if is_notification:
                logger.debug(f"Ignoring unknown notification {message['method']}")
                return RpcResponse(202)
            return self.error_response(MethodNotFound(f"Method not found: {message['method']}"), request_id)

        rpc = RpcRequest(method=method, id=request_id, params=message['params'],
                         is_notification=is_notification)
        session = self.linker.link_or_create_session(headers.get(SESSION_HEADER), method.value, auth)

        try:
            result = self.handlers[method](rpc, auth, session)
        except JsonRpcError as e:
            return self.error_response(e, request_id)
        except Exception as e:
            logger.error(f"Error handling JSON-RPC request {method.value}: {e}", exc_info=True)
            return self.error_response(InternalError(str(e)), request_id)

        response_headers = {'Mcp-Protocol-Version': config.PROTOCOL_VERSION}
        if method is Method.INITIALIZE and session is not None:
            response_headers[SESSION_HEADER] = session.session_id
        if rpc.is_notification or result is None:
            return RpcResponse(202, None, response_headers)
        return RpcResponse(200, {'jsonrpc': '2.0', 'id': request_id, 'result': result}, response_headers)

    def _initialize(self, rpc: RpcRequest, auth: AuthContext, session: Optional[ProtocolSession]):
        return {
            'protocolVersion': config.PROTOCOL_VERSION,
            'capabilities': {
                'tools': {
                    'listChanged': False
                }
            },
            'serverInfo': {
                'name': config.SERVER_NAME,
                'version': config.SERVER_VERSION
            }
        }

    def _initialized(self, rpc: RpcRequest, auth: AuthContext, session: Optional[ProtocolSession]):
        logger.info(f"Client initialized (session={session.session_id if session else None})")
        return None

    def _tools_list(self, rpc: RpcRequest, auth: AuthContext, session: Optional[ProtocolSession]):
        return {'tools': list_tools()}

    def _tools_call(self, rpc: RpcRequest, auth: AuthContext, session: Optional[ProtocolSession]):
        name = rpc.params.get('name')
        arguments = rpc.params.get('arguments') or {}
        if not isinstance(name, str) or not name:
            return error_result('Tool name is required')
        if not isinstance(arguments, dict):
            return error_result('Tool arguments must be an object')

        tool = get_tool(name)
        if tool is None:
            return error_result(f"Unknown tool: {name}")
        try:
            credentials = self.resolver.resolve(auth, session, mutating=tool.mutating)
        except CredentialsUnresolvable as e:
            logger.warning(f"No backend credentials for {name} (session={session.session_id if session else None})")
            return error_result(e.message)

        try:
            return run_async(self.executor.call(name, arguments, credentials))
        except Exception as e:
            logger.error(f"Unexpected failure in tool {name}: {e}", exc_info=True)
            return error_result(f"Internal error: {e}")


# ============================================================================
# HTTP endpoints
# ============================================================================

mcp_bp = Blueprint('mcp', __name__)


def _gateway():
    return current_app.extensions[config.GATEWAY_EXTENSION]


def _json_response(rpc_response: RpcResponse):
    if rpc_response.body is None:
        response = Response(status=rpc_response.status)
    else:
        response = jsonify(rpc_response.body)
        response.status_code = rpc_response.status
    for name, value in rpc_response.headers.items():
        response.headers[name] = value
    return response


@mcp_bp.route('/', methods=['POST'])
@mcp_bp.route('/message', methods=['POST'])
def mcp_message():
    """MCP JSON-RPC endpoint."""
    return _json_response(_gateway().dispatcher.handle(request.get_data(), request.headers))


@mcp_bp.route('/', methods=['GET'])
@mcp_bp.route('/message', methods=['GET'])
def mcp_stream():
    """Heartbeat stream for SSE clients, server info for everyone else."""
    gateway = _gateway()
    if 'text/event-stream' not in request.headers.get('Accept', ''):
        settings = gateway.settings
        return jsonify({
            'name': config.SERVER_NAME,
            'version': config.SERVER_VERSION,
            'transport': 'streamable-http',
            'protocol': config.PROTOCOL_VERSION,
            'authorization': 'OAuth 2.1',
            'endpoints': {
                'mcp': '/',
                'health': '/health',
                'discovery': settings.discovery_url,
                'authorization': settings.authorization_endpoint,
                'token': settings.token_endpoint,
                'register': settings.registration_endpoint,
                'token_registration': '/tokens/register',
                'token_management': '/tokens',
            },
        })

    try:
        gateway.linker.authorize_request(request.headers)
    except Unauthorized as e:
        return _json_response(Dispatcher.error_response(e))

    heartbeat = gateway.streams.open(request.headers.get(SESSION_HEADER))
    response = Response(
        stream_with_context(heartbeat.events()),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no',
            'Connection': 'keep-alive',
            'Mcp-Protocol-Version': config.PROTOCOL_VERSION,
        }
    )
    response.call_on_close(lambda: gateway.streams.close(heartbeat))
    return response


@mcp_bp.route('/', methods=['DELETE'])
@mcp_bp.route('/message', methods=['DELETE'])
def mcp_terminate():
    """Terminate an MCP session; repeated calls succeed too."""
    gateway = _gateway()
    session_id = request.headers.get(SESSION_HEADER)
    if session_id:
        gateway.linker.terminate(session_id)
        gateway.streams.cancel_session(session_id)
    return jsonify({'terminated': True})


@mcp_bp.route('/tools', methods=['GET'])
def openai_tools():
    """Tool list in OpenAI function-calling format."""
    gateway = _gateway()
    if not gateway.settings.allow_unauthenticated_discovery:
        try:
            gateway.linker.authorize_request(request.headers)
        except Unauthorized as e:
            return _json_response(Dispatcher.error_response(e))
    return jsonify({'tools': list_openai_functions()})


@mcp_bp.route('/.well-known/ai-plugin.json', methods=['GET'])
def ai_plugin_manifest():
    settings = _gateway().settings
    return jsonify({
        'schema_version': 'v1',
        'name_for_human': 'N8N Workflows',
        'name_for_model': 'n8n_workflows',
        'description_for_human': 'Access and manage N8N workflows through AI',
        'description_for_model': 'Plugin for accessing N8N workflows, executions, and automation tools. '
                                 'Allows listing, creating, updating, executing, and managing N8N workflows.',
        'auth': {
            'type': 'oauth',
            'authorization_url': settings.authorization_endpoint,
            'scope': config.DEFAULT_SCOPE,
        },
        'api': {
            'type': 'openapi',
            'url': settings.tools_url,
            'is_user_authenticated': True,
        },
        'logo_url': f"{settings.server_url}/logo.png",
        'contact_email': settings.contact_email,
        'legal_info_url': f"{settings.server_url}/legal",
    })
