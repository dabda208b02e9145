"""Tests for client registration, admin login, codes and tokens."""
from types import SimpleNamespace

import pytest

from auth_store import InMemoryAuthStore
from conftest import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    BACKEND_API_KEY,
    BACKEND_HOST,
    REDIRECT_URI,
    FakeBackend,
    FakeClock,
    admin_login,
    authorize_params,
    exchange,
    make_settings,
    new_verifier,
    obtain_code,
    query_params,
    register_client,
)
from gateway import create_app
from gateway_errors import (
    BackendUnreachable,
    InvalidClientError,
    InvalidCredentials,
    InvalidRedirectURIError,
)
from oauth_server import AdminAuthenticator, ClientRegistry


@pytest.fixture
def services():
    clock = FakeClock()
    backend = FakeBackend()
    registry = ClientRegistry(InMemoryAuthStore('clients', clock), auto_register_ttl=3600, clock=clock)
    authenticator = AdminAuthenticator(InMemoryAuthStore('admin_sessions', clock), ADMIN_USERNAME,
                                       ADMIN_PASSWORD, backend.factory, session_ttl=3600, clock=clock)
    return SimpleNamespace(clock=clock, backend=backend, registry=registry, authenticator=authenticator)


def _token_request(client, info, code, **overrides):
    data = {'grant_type': 'authorization_code', 'code': code, 'client_id': info['client_id']}
    data.update(overrides)
    return client.post('/oauth/token', data={k: v for k, v in data.items() if v is not None})


def _logged_in_params(client, info, verifier=None, **extra):
    params = authorize_params(info, verifier or new_verifier())
    if verifier is None:
        del params['code_challenge'], params['code_challenge_method']
    params.update(extra)
    admin_login(client)
    return params


# Client registry

def test_register_requires_redirect_uris(services):
    with pytest.raises(InvalidRedirectURIError):
        services.registry.register([], 'x')
    with pytest.raises(InvalidRedirectURIError):
        services.registry.register('http://not-a-list', 'x')


def test_auto_registration_binds_presented_redirect_uri(services):
    client = services.registry.get_or_auto_register('claude-desktop', REDIRECT_URI)
    assert client.auto_registered
    assert client.redirect_uris == [REDIRECT_URI]
    assert services.registry.get('claude-desktop') is client


def test_auto_registered_client_expires(services):
    services.registry.get_or_auto_register('claude-desktop', REDIRECT_URI)
    registered = services.registry.register([REDIRECT_URI])
    services.clock.advance(3600)
    assert services.registry.get('claude-desktop') is None
    assert services.registry.get(registered.client_id) is registered


def test_auto_registration_can_be_disabled():
    registry = ClientRegistry(InMemoryAuthStore('clients'), allow_auto_register=False)
    with pytest.raises(InvalidClientError):
        registry.get_or_auto_register('unknown', REDIRECT_URI)


# Admin login

def test_login_rejects_wrong_password(services):
    with pytest.raises(InvalidCredentials):
        services.authenticator.login(ADMIN_USERNAME, 'wrong', BACKEND_HOST, BACKEND_API_KEY)
    assert len(services.authenticator) == 0
    assert services.backend.requests == []


def test_login_requires_reachable_backend(services):
    services.backend.down = True
    with pytest.raises(BackendUnreachable):
        services.authenticator.login(ADMIN_USERNAME, ADMIN_PASSWORD, BACKEND_HOST, BACKEND_API_KEY)
    assert len(services.authenticator) == 0


def test_login_rejects_bad_api_key(services):
    with pytest.raises(BackendUnreachable, match='401'):
        services.authenticator.login(ADMIN_USERNAME, ADMIN_PASSWORD, BACKEND_HOST, 'bad-key')
    assert len(services.authenticator) == 0


def test_login_rejects_non_http_host(services):
    with pytest.raises(BackendUnreachable):
        services.authenticator.login(ADMIN_USERNAME, ADMIN_PASSWORD, 'ftp://n8n.test', BACKEND_API_KEY)


def test_login_creates_session_with_credentials(services):
    session = services.authenticator.login(ADMIN_USERNAME, ADMIN_PASSWORD, BACKEND_HOST, BACKEND_API_KEY)
    assert session.credentials.host == BACKEND_HOST
    assert services.authenticator.verify(session.token) is session
    assert services.authenticator.most_recent_session() is session

    services.clock.advance(3600)
    assert services.authenticator.verify(session.token) is None
    assert services.authenticator.most_recent_session() is None


# Authorization codes

def test_approve_requires_admin_session(client):
    info = register_client(client)
    params = authorize_params(info, new_verifier())
    response = client.post('/oauth/authorize', data=dict(params, action='approve'),
                           headers={'Cookie': 'admin_session=no-such-session'})
    assert response.status_code == 401
    assert b'Admin login required' in response.data


def test_approved_code_is_bound_to_admin_session(client, gateway):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)

    record = gateway.server.code_store.get(code)
    assert record.client_id == info['client_id']
    assert record.redirect_uri == REDIRECT_URI
    assert record.code_challenge_method == 'S256'
    assert gateway.authenticator.verify(record.admin_session_token) is not None


def test_unregistered_redirect_uri_is_rejected(client):
    info = register_client(client)
    params = _logged_in_params(client, info, redirect_uri='http://evil.test/cb')
    response = client.get('/oauth/authorize', query_string=params)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_request'


def test_plain_pkce_is_rejected(client):
    info = register_client(client)
    params = _logged_in_params(client, info, code_challenge='a' * 43, code_challenge_method='plain')
    response = client.get('/oauth/authorize', query_string=params)
    assert response.status_code == 302
    assert query_params(response.headers['Location'])['error'] == 'invalid_request'


def test_pkce_can_be_required(backend, clock):
    settings = make_settings(require_pkce=True)
    client = create_app(settings, backend_factory=backend.factory, clock=clock).test_client()
    info = register_client(client)
    params = _logged_in_params(client, info)
    response = client.get('/oauth/authorize', query_string=params)
    assert response.status_code == 302
    redirected = query_params(response.headers['Location'])
    assert redirected['error'] == 'invalid_request'
    assert redirected['state'] == 'xyz'


def test_response_type_defaults_to_code(client):
    info = register_client(client)
    params = _logged_in_params(client, info, new_verifier())
    del params['response_type']
    response = client.post('/oauth/authorize', data=dict(params, action='approve'))
    assert response.status_code == 302
    assert 'code' in query_params(response.headers['Location'])


def test_deny_redirects_with_access_denied(client, gateway):
    info = register_client(client)
    params = _logged_in_params(client, info)
    response = client.post('/oauth/authorize', data=dict(params, action='deny'))
    assert response.status_code == 302
    redirected = query_params(response.headers['Location'])
    assert redirected['error'] == 'access_denied'
    assert redirected['state'] == 'xyz'
    assert gateway.server.code_store.items() == []


def test_deny_does_not_auto_register(client, gateway):
    params = _logged_in_params(client, {'client_id': 'never-seen'})
    response = client.post('/oauth/authorize', data=dict(params, action='deny'))
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_client'
    assert gateway.registry.get('never-seen') is None


# Token exchange

def test_exchange_succeeds_exactly_once(client, gateway):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)
    admin_session_token = gateway.server.code_store.get(code).admin_session_token

    response = _token_request(client, info, code, code_verifier=verifier)
    assert response.status_code == 200
    body = response.get_json()
    assert body['scope'] == 'mcp'
    token = gateway.tokens.verify(body['access_token'])
    assert token.admin_session_token == admin_session_token
    assert token.client_id == info['client_id']
    assert not token.is_standalone

    again = _token_request(client, info, code, code_verifier=verifier)
    assert again.get_json()['error'] == 'invalid_grant'


def test_wrong_or_missing_verifier_fails(client):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)

    wrong = _token_request(client, info, code, code_verifier=new_verifier())
    assert wrong.status_code == 400
    assert wrong.get_json()['error'] == 'invalid_grant'
    missing = _token_request(client, info, code)
    assert missing.status_code == 400
    assert missing.get_json()['error'] == 'invalid_grant'
    # Failed attempts do not consume the code.
    assert _token_request(client, info, code, code_verifier=verifier).status_code == 200


def test_code_is_bound_to_client(client):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)
    other = register_client(client)

    response = _token_request(client, other, code, code_verifier=verifier)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_grant'


def test_exchange_checks_client_and_grant_type(client):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)

    unknown = _token_request(client, {'client_id': 'unknown'}, code, code_verifier=verifier)
    assert unknown.status_code == 400
    assert unknown.get_json()['error'] == 'invalid_client'
    bad_secret = _token_request(client, info, code, code_verifier=verifier, client_secret='wrong')
    assert bad_secret.status_code == 400
    assert bad_secret.get_json()['error'] == 'invalid_client'
    password = _token_request(client, info, code, code_verifier=verifier, grant_type='password')
    assert password.status_code == 400
    assert password.get_json()['error'] == 'unsupported_grant_type'

    with_secret = _token_request(client, info, code, code_verifier=verifier, client_secret=info['client_secret'])
    assert with_secret.status_code == 200


def test_minimal_token_form_is_accepted(client):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)
    response = client.post('/oauth/token', data={'code': code, 'client_id': info['client_id'],
                                                 'code_verifier': verifier})
    assert response.status_code == 200


def test_code_without_pkce_exchanges_without_verifier(client):
    info = register_client(client)
    params = _logged_in_params(client, info)
    approved = client.post('/oauth/authorize', data=dict(params, action='approve'))
    code = query_params(approved.headers['Location'])['code']

    assert _token_request(client, info, code).status_code == 200


def test_token_expiry_and_revocation(gateway, clock):
    token = gateway.tokens.register_standalone_token('ci')
    assert token.is_standalone and token.admin_session_token is None
    assert gateway.tokens.revoke(token.token) is True
    assert gateway.tokens.verify(token.token) is None
    assert gateway.tokens.revoke(token.token) is False

    standalone = gateway.tokens.register_standalone_token('ci')
    clock.advance(90 * 24 * 3600)
    assert gateway.tokens.verify(standalone.token) is None


def test_token_listing_hides_secrets(gateway):
    token = gateway.tokens.register_standalone_token('ci')
    listing = gateway.tokens.list()
    assert listing[0]['token_prefix'] == token.token[:8] + '...'
    assert token.token not in str(listing)


# HTTP endpoints

def test_metadata(client):
    metadata = client.get('/.well-known/oauth-authorization-server').get_json()
    assert metadata['code_challenge_methods_supported'] == ['S256']
    assert metadata['scopes_supported'] == ['mcp']
    assert metadata['token_endpoint'] == 'http://localhost/oauth/token'

    resource = client.get('/.well-known/oauth-protected-resource').get_json()
    assert resource['authorization_servers'] == ['http://localhost']


def test_register_endpoint(client):
    info = register_client(client)
    assert info['client_id'].startswith('client_')
    assert info['client_secret_expires_at'] == 0

    bad = client.post('/oauth/register', json={'client_name': 'x'})
    assert bad.status_code == 400
    assert bad.get_json()['error'] == 'invalid_redirect_uri'


def test_authorize_renders_login_without_cookie(client):
    info = register_client(client)
    response = client.get('/oauth/authorize', query_string=authorize_params(info, new_verifier()))
    assert response.status_code == 200
    assert b'name="username"' in response.data
    assert info['client_id'].encode() in response.data


def test_authorize_rejects_bad_request(client):
    response = client.get('/oauth/authorize', query_string={'response_type': 'code'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_client'


def test_login_wrong_password_rerenders_form(client, gateway):
    response = admin_login(client, password='wrong')
    assert response.status_code == 401
    assert b'Invalid username or password' in response.data
    assert 'Set-Cookie' not in response.headers
    assert len(gateway.authenticator) == 0


def test_login_unreachable_backend_is_502(client, backend, gateway):
    backend.down = True
    response = admin_login(client)
    assert response.status_code == 502
    assert b'Backend connection failed' in response.data
    assert len(gateway.authenticator) == 0


def test_login_cookie_flags(client):
    response = admin_login(client)
    assert response.status_code == 200
    cookie = response.headers['Set-Cookie']
    assert cookie.startswith('admin_session=')
    assert 'HttpOnly' in cookie
    assert 'SameSite=Lax' in cookie
    assert 'Max-Age=1800' in cookie


def test_login_cookie_is_secure_by_default(settings, backend, clock):
    from gateway import create_app
    settings.cookie_secure = True
    app = create_app(settings, backend_factory=backend.factory, clock=clock)
    response = admin_login(app.test_client())
    assert 'Secure' in response.headers['Set-Cookie']


def test_consent_deny(client):
    info = register_client(client)
    params = authorize_params(info, new_verifier())
    admin_login(client, **params)
    response = client.post('/oauth/authorize', data=dict(params, action='deny'))
    assert response.status_code == 302
    assert query_params(response.headers['Location'])['error'] == 'access_denied'


def test_consent_without_login_requires_login(client):
    info = register_client(client)
    params = authorize_params(info, new_verifier())
    response = client.post('/oauth/authorize', data=dict(params, action='approve'))
    assert response.status_code == 401
    assert b'Admin login required' in response.data


def test_token_endpoint_errors(client):
    info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, info, verifier)

    wrong = exchange(client, info, code, new_verifier())
    assert wrong.status_code == 400
    assert wrong.get_json()['error'] == 'invalid_grant'

    ok = exchange(client, info, code, verifier)
    assert ok.status_code == 200
    assert ok.headers['Cache-Control'] == 'no-store'
    body = ok.get_json()
    assert body['token_type'] == 'Bearer'
    assert body['expires_in'] == 24 * 3600

    again = exchange(client, info, code, verifier)
    assert again.status_code == 400
    assert again.get_json()['error'] == 'invalid_grant'


def test_token_admin_requires_operator(client):
    assert client.get('/tokens').status_code == 401
    assert client.post('/tokens/register', json={}).status_code == 401
    assert client.get('/tokens', auth=(ADMIN_USERNAME, 'wrong')).status_code == 401


def test_token_admin_with_basic_auth(client):
    auth = (ADMIN_USERNAME, ADMIN_PASSWORD)
    created = client.post('/tokens/register', json={'description': 'ci'}, auth=auth)
    assert created.status_code == 201
    token = created.get_json()['access_token']

    listing = client.get('/tokens', auth=auth).get_json()['tokens']
    assert [t['description'] for t in listing] == ['ci']
    assert listing[0]['kind'] == 'standalone'

    assert client.delete(f'/tokens/{token}', auth=auth).status_code == 200
    assert client.delete(f'/tokens/{token}', auth=auth).status_code == 404


def test_token_admin_with_cookie(client):
    admin_login(client)
    assert client.post('/tokens/register', json={}).status_code == 201
