"""Flask application factory and launcher for the OAuth MCP gateway."""
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import Flask, jsonify
from flask_cors import CORS

import config
from auth_models import BackendCredentials
from auth_store import InMemoryAuthStore, StoreSweeper
from backend_client import BackendFactory, default_backend_factory
from mcp_server import CredentialResolver, Dispatcher, SessionLinker, mcp_bp
from oauth_server import (
    AdminAuthenticator,
    AuthorizationCodeIssuer,
    ClientRegistry,
    GatewayAuthorizationServer,
    TokenService,
    oauth_bp,
)
from sse_stream import StreamRegistry
from workflow_tools import ToolExecutor

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    """Everything one running gateway owns, reachable from views via ``app.extensions``."""
    settings: config.Settings
    clock: Callable[[], float]
    registry: ClientRegistry
    server: GatewayAuthorizationServer
    authenticator: AdminAuthenticator
    issuer: AuthorizationCodeIssuer
    tokens: TokenService
    linker: SessionLinker
    resolver: CredentialResolver
    executor: ToolExecutor
    dispatcher: Dispatcher
    streams: StreamRegistry
    sweeper: StoreSweeper

    def counts(self):
        return {
            'clients': len(self.registry.store.items()),
            'admin_sessions': len(self.authenticator),
            'authorization_codes': len(self.server.code_store.items()),
            'access_tokens': len(self.tokens),
            'mcp_sessions': len(self.linker),
            'sse_streams': len(self.streams),
        }

    def revoke_token(self, token: str) -> bool:
        """Revoke a bearer token and end the MCP sessions opened with it."""
        if not self.tokens.revoke(token):
            return False
        for session_id in self.linker.terminate_for_token(token):
            self.streams.cancel_session(session_id)
        return True

    def shutdown(self):
        self.sweeper.stop()
        cancelled = self.streams.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} SSE streams on shutdown")


def build_gateway(settings: config.Settings, backend_factory: Optional[BackendFactory] = None,
                  clock: Callable[[], float] = time.time) -> Gateway:
    backend_factory = backend_factory or default_backend_factory(settings.backend_timeout)

    client_store = InMemoryAuthStore('clients', clock)
    admin_store = InMemoryAuthStore('admin_sessions', clock)
    code_store = InMemoryAuthStore('authorization_codes', clock)
    token_store = InMemoryAuthStore('access_tokens', clock)
    session_store = InMemoryAuthStore('mcp_sessions', clock)

    registry = ClientRegistry(client_store, settings.allow_client_auto_registration,
                              settings.auto_registered_client_ttl, clock)
    authenticator = AdminAuthenticator(admin_store, settings.admin_username, settings.admin_password,
                                       backend_factory, settings.admin_session_ttl, clock)
    server = GatewayAuthorizationServer(code_store, settings.authorization_code_ttl, settings.require_pkce, clock)
    issuer = AuthorizationCodeIssuer(registry, authenticator, server)
    tokens = TokenService(server, token_store, settings.server_url, settings.access_token_ttl,
                          settings.standalone_token_ttl, config.DEFAULT_SCOPE, clock)
    linker = SessionLinker(session_store, authenticator, tokens, settings, clock)

    default_backend = settings.default_backend()
    resolver = CredentialResolver(
        authenticator,
        BackendCredentials(*default_backend) if default_backend else None,
        settings.standalone_tokens_may_mutate,
    )
    executor = ToolExecutor(backend_factory)

    return Gateway(
        settings=settings,
        clock=clock,
        registry=registry,
        server=server,
        authenticator=authenticator,
        issuer=issuer,
        tokens=tokens,
        linker=linker,
        resolver=resolver,
        executor=executor,
        dispatcher=Dispatcher(linker, resolver, executor, settings),
        streams=StreamRegistry(settings.sse_keepalive_interval),
        sweeper=StoreSweeper([client_store, admin_store, code_store, token_store, session_store],
                             settings.sweep_interval),
    )


def create_app(settings: Optional[config.Settings] = None, backend_factory: Optional[BackendFactory] = None,
               clock: Callable[[], float] = time.time) -> Flask:
    settings = settings or config.Settings()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = settings.secret_key

    # Enable CORS for all routes
    CORS(app, resources={
        r"/*": {
            "origins": "*",
            "methods": ["GET", "POST", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "Mcp-Session-Id", "Mcp-Protocol-Version"],
            "expose_headers": ["WWW-Authenticate", "Mcp-Session-Id"],
            "supports_credentials": True,
            "max_age": 3600
        }
    })

    gateway = build_gateway(settings, backend_factory, clock)
    app.extensions[config.GATEWAY_EXTENSION] = gateway
    gateway.server.init_app(app, query_client=gateway.registry.get, save_token=gateway.tokens.save_token)
    app.register_blueprint(oauth_bp)
    app.register_blueprint(mcp_bp)

    @app.route('/health', methods=['GET'])
    def health():
        """Health check endpoint."""
        return jsonify({
            'status': 'healthy',
            'server': config.SERVER_NAME,
            'version': config.SERVER_VERSION,
            'backend_default_configured': settings.default_backend() is not None,
            'counts': gateway.counts(),
        })

    if settings.sweep_interval > 0:
        gateway.sweeper.start()
    return app


def main():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    settings = config.Settings()
    if not settings.admin_password:
        logger.warning("ADMIN_PASSWORD is empty; set it in the environment or .env before logging in")
    if not settings.cookie_secure:
        # Plain-HTTP development mode: let authlib accept non-TLS OAuth requests too.
        os.environ.setdefault("AUTHLIB_INSECURE_TRANSPORT", "1")
        logger.warning("COOKIE_SECURE is off; admin cookies and OAuth requests go over plain HTTP")

    app = create_app(settings)
    logger.info(f"MCP Server (Streamable HTTP) starting on {config.SERVER_HOST}:{config.SERVER_PORT}")
    logger.info(f"MCP endpoint: {settings.server_url}/")
    logger.info(f"OAuth discovery: {settings.discovery_url}")
    try:
        app.run(host=config.SERVER_HOST, port=config.SERVER_PORT, threaded=True)
    finally:
        app.extensions[config.GATEWAY_EXTENSION].shutdown()


if __name__ == '__main__':
    main()
