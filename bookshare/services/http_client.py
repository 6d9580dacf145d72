import httpx
import asyncio
import logging
from typing import Optional, Dict, Any

from config import settings
from bookshare.credentials import CredentialStore, KeyringCredentialStore
from bookshare.exceptions import (
    Conflict,
    NetworkError,
    NotFound,
    Unauthorized,
)

logger = logging.getLogger(__name__)


def raise_for_status(response: httpx.Response) -> None:
    """Map a non-2xx response onto the core error taxonomy."""
    if response.is_success:
        return
    code = response.status_code
    detail = _error_detail(response)
    message = f"{response.request.method} {response.request.url.path} failed with {code}"
    if detail:
        message = f"{message}: {detail}"
    if code in (401, 403):
        raise Unauthorized(message, status_code=code)
    if code == 404:
        raise NotFound(message, status_code=code)
    if code in (409, 412):
        raise Conflict(message, status_code=code)
    raise NetworkError(message, status_code=code)


def is_retryable(error: NetworkError) -> bool:
    # No status code means the request never got an answer
    return error.status_code is None or error.status_code >= 500


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict):
        return str(payload.get("detail") or payload.get("message") or payload.get("title") or "")
    return ""


class ShareApiClient:
    """Pooled async REST client for the book sharing backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        credential_store: Optional[CredentialStore] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.credential_store = credential_store or KeyringCredentialStore()
        self.retries = settings.query_retry_count if retries is None else retries
        self.backoff = settings.retry_backoff if backoff is None else backoff

        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        request_timeout = timeout or settings.request_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            limits=limits,
            timeout=httpx.Timeout(request_timeout, connect=min(settings.connect_timeout, request_timeout)),
            follow_redirects=True,
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        token = self.credential_store.get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        raise_for_status(response)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Invalid JSON from {response.request.url.path}") from exc

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with exponential-backoff retries on transport failures and 5xx answers."""
        attempt = 0
        while True:
            try:
                response = await self.request("GET", path, params=params)
                return self._decode(response)
            except NetworkError as e:
                if attempt >= self.retries or not is_retryable(e):
                    raise
                wait_time = self.backoff * (2 ** attempt)
                logger.warning(f"GET {path} failed ({e}); retrying in {wait_time:.1f}s")
                attempt += 1
                await asyncio.sleep(wait_time)

    async def put_json(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self._decode(await self.request("PUT", path, json=payload))

    async def post_json(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self._decode(await self.request("POST", path, json=payload))

    async def patch_json(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self._decode(await self.request("PATCH", path, json=payload))

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Global client instance
_global_client: Optional[ShareApiClient] = None


async def get_http_client() -> ShareApiClient:
    """Return the process-wide client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = ShareApiClient()
    return _global_client


async def cleanup_http_client():
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
