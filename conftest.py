"""Shared fixtures: an app with a fake clock and a mocked n8n backend."""
import json
import secrets
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

import config
from backend_client import BackendClient
from gateway import create_app

ADMIN_USERNAME = 'admin'
ADMIN_PASSWORD = 'correct-horse'
BACKEND_HOST = 'http://n8n.test'
BACKEND_API_KEY = 'n8n-key-123'
REDIRECT_URI = 'http://localhost:8080/callback'

WORKFLOWS = {'data': [{'id': '1', 'name': 'Nightly sync', 'active': True},
                      {'id': '2', 'name': 'Lead intake', 'active': False}]}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """n8n REST API stand-in served through ``httpx.MockTransport``."""

    def __init__(self, api_key: str = BACKEND_API_KEY):
        self.api_key = api_key
        self.requests = []
        self.down = False
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError('connection refused', request=request)
        if request.headers.get('X-N8N-API-KEY') != self.api_key:
            return httpx.Response(401, json={'message': 'unauthorized'})

        path = request.url.path
        if request.method == 'GET' and path == '/api/v1/workflows':
            return httpx.Response(200, json=WORKFLOWS)
        if request.method == 'GET' and path == '/api/v1/workflows/1':
            return httpx.Response(200, json=WORKFLOWS['data'][0])
        if request.method == 'POST' and path == '/api/v1/workflows':
            body = json.loads(request.content)
            return httpx.Response(200, json=dict(body, id='3'))
        if request.method == 'POST' and path.endswith('/activate'):
            return httpx.Response(200, json={'id': path.split('/')[-2], 'active': True})
        if request.method == 'GET' and path == '/api/v1/executions':
            return httpx.Response(200, json={'data': [], 'query': dict(request.url.params)})
        return httpx.Response(404, json={'message': 'not found'})

    def factory(self, credentials):
        return BackendClient(credentials, timeout=5, transport=self.transport)

    def calls(self, method: str, path: str):
        return [r for r in self.requests if r.method == method and r.url.path == path]


def make_settings(**overrides) -> config.Settings:
    values = dict(
        server_url='http://localhost',
        secret_key='test-secret',
        cookie_secure=False,
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        default_backend_host='',
        default_backend_api_key='',
        sweep_interval=0,
        admin_session_ttl=24 * 3600,
        admin_cookie_max_age=1800,
        authorization_code_ttl=600,
        access_token_ttl=24 * 3600,
        standalone_token_ttl=90 * 24 * 3600,
        protocol_session_ttl=24 * 3600,
        sse_keepalive_interval=30,
        allow_client_auto_registration=True,
        require_pkce=False,
        allow_unauthenticated_discovery=False,
        standalone_tokens_may_mutate=False,
        compat_prompts_list_as_tools=False,
    )
    values.update(overrides)
    return config.Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def app(settings, backend, clock):
    app = create_app(settings, backend_factory=backend.factory, clock=clock)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def gateway(app):
    return app.extensions[config.GATEWAY_EXTENSION]


@pytest.fixture
def client(app):
    return app.test_client()


def new_verifier() -> str:
    return secrets.token_urlsafe(48)


def register_client(client, redirect_uri: str = REDIRECT_URI) -> dict:
    response = client.post('/oauth/register', json={'client_name': 'Test Client', 'redirect_uris': [redirect_uri]})
    assert response.status_code == 201
    return response.get_json()


def admin_login(client, password: str = ADMIN_PASSWORD, backend_host: str = BACKEND_HOST,
                api_key: str = BACKEND_API_KEY, **params):
    data = {'username': ADMIN_USERNAME, 'password': password,
            'backend_host': backend_host, 'backend_api_key': api_key}
    data.update(params)
    return client.post('/oauth/login', data=data)


def query_params(location: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(location).query).items()}


def authorize_params(client_info: dict, verifier: str, state: str = 'xyz') -> dict:
    return {
        'response_type': 'code',
        'client_id': client_info['client_id'],
        'redirect_uri': REDIRECT_URI,
        'state': state,
        'code_challenge': create_s256_code_challenge(verifier),
        'code_challenge_method': 'S256',
        'scope': 'mcp',
    }


def obtain_code(client, client_info: dict, verifier: str) -> str:
    """Login, consent and return the authorization code."""
    params = authorize_params(client_info, verifier)
    login_page = client.get('/oauth/authorize', query_string=params)
    assert login_page.status_code == 200
    assert b'backend_api_key' in login_page.data

    logged_in = admin_login(client, **params)
    assert logged_in.status_code == 302
    assert urlparse(logged_in.headers['Location']).path == '/oauth/authorize'

    consent = client.get('/oauth/authorize', query_string=params)
    assert consent.status_code == 200
    assert b'Allow Access' in consent.data

    approved = client.post('/oauth/authorize', data=dict(params, action='approve'))
    assert approved.status_code == 302
    redirect_params = query_params(approved.headers['Location'])
    assert redirect_params['state'] == 'xyz'
    return redirect_params['code']


def exchange(client, client_info: dict, code: str, verifier: str):
    return client.post('/oauth/token', data={
        'grant_type': 'authorization_code',
        'code': code,
        'client_id': client_info['client_id'],
        'code_verifier': verifier,
        'redirect_uri': REDIRECT_URI,
    })


def obtain_token(client) -> str:
    client_info = register_client(client)
    verifier = new_verifier()
    code = obtain_code(client, client_info, verifier)
    response = exchange(client, client_info, code, verifier)
    assert response.status_code == 200
    return response.get_json()['access_token']


def rpc(client, method: str, params=None, request_id=1, token=None, session_id=None):
    message = {'jsonrpc': '2.0', 'method': method}
    if params is not None:
        message['params'] = params
    if request_id is not None:
        message['id'] = request_id
    headers = {}
    if token:
        headers['Authorization'] = f'Bearer {token}'
    if session_id:
        headers['Mcp-Session-Id'] = session_id
    return client.post('/', json=message, headers=headers)
