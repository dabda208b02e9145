"""Async client for the n8n REST API.

Every call is a single attempt bounded by ``timeout``; failures surface as
``BackendError`` with a message suitable for showing to the operator.
"""
import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, Optional, TypeVar

import httpx

import config
from auth_models import BackendCredentials
from gateway_errors import BackendError

logger = logging.getLogger(__name__)

T = TypeVar('T')

API_PREFIX = '/api/v1'
API_KEY_HEADER = 'X-N8N-API-KEY'


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from a synchronous Flask view."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class BackendClient:
    """One connection to a backend, usable as an async context manager."""

    def __init__(self, credentials: BackendCredentials, timeout: float = config.BACKEND_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return f"{self.credentials.host.rstrip('/')}{API_PREFIX}"

    async def __aenter__(self) -> 'BackendClient':
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                API_KEY_HEADER: self.credentials.api_key,
                'Content-Type': 'application/json',
                'Accept': 'application/json',
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, endpoint: str, *, params: Optional[Dict[str, Any]] = None,
                      json: Any = None) -> Any:
        if self._client is None:
            raise RuntimeError('BackendClient must be used as an async context manager')
        try:
            response = await self._client.request(method, endpoint, params=params, json=json)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise BackendError(f"Backend API request timed out ({self.timeout:g}s)")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise BackendError(f"Backend API error: {status} {e.response.reason_phrase}",
                               status_code=status)
        except httpx.RequestError as e:
            raise BackendError(f"Backend API request failed: {e}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise BackendError('Backend API returned a non-JSON response')

    async def check_connection(self) -> None:
        """Lightweight read-only call proving host and key work."""
        await self.request('GET', '/workflows', params={'limit': 1})

    async def list_workflows(self) -> Any:
        return await self.request('GET', '/workflows')

    async def get_workflow(self, workflow_id: str) -> Any:
        return await self.request('GET', f'/workflows/{workflow_id}')

    async def create_workflow(self, payload: Dict[str, Any]) -> Any:
        return await self.request('POST', '/workflows', json=payload)

    async def update_workflow(self, workflow_id: str, payload: Dict[str, Any]) -> Any:
        return await self.request('PATCH', f'/workflows/{workflow_id}', json=payload)

    async def delete_workflow(self, workflow_id: str) -> Any:
        return await self.request('DELETE', f'/workflows/{workflow_id}')

    async def activate_workflow(self, workflow_id: str) -> Any:
        return await self.request('POST', f'/workflows/{workflow_id}/activate')

    async def deactivate_workflow(self, workflow_id: str) -> Any:
        return await self.request('POST', f'/workflows/{workflow_id}/deactivate')

    async def execute_workflow(self, workflow_id: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request('POST', f'/workflows/{workflow_id}/execute', json=data or {})

    async def list_executions(self, workflow_id: Optional[str] = None, limit: Optional[int] = None) -> Any:
        params = {}
        if workflow_id:
            params['workflowId'] = workflow_id
        if limit:
            params['limit'] = limit
        return await self.request('GET', '/executions', params=params or None)


BackendFactory = Callable[[BackendCredentials], BackendClient]


def default_backend_factory(timeout: float = config.BACKEND_TIMEOUT) -> BackendFactory:
    def factory(credentials: BackendCredentials) -> BackendClient:
        return BackendClient(credentials, timeout=timeout)
    return factory
