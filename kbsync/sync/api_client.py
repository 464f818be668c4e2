"""
Async JSON API client shared by the source readers.

Each request goes through the client's rate limiter and retry policy, so a
retried request occupies a fresh limiter slot.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from ..config import get_logger
from .error_tracker import ApiError
from .rate_limiter import RateLimiter
from .resilience import RetryPolicy, is_rate_limit_error, with_retry

logger = get_logger(__name__)

AUTH_ERROR_CODES = ('unauthorized', 'invalid_auth', 'not_authed', 'token_revoked', 'account_inactive')


class ApiClient:
    """
    Minimal aiohttp-based JSON client.

    Args:
        base_url: API root, without trailing slash
        headers: Headers sent with every request (auth, versioning)
        limiter: Rate limiter for this API
        retry_policy: Backoff policy for transient failures
        timeout_seconds: Total timeout per request
    """

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str],
        limiter: RateLimiter,
        retry_policy: RetryPolicy,
        timeout_seconds: int = 30,
    ):
        self.base_url = base_url.rstrip('/')
        self.headers = headers
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(headers=self.headers, timeout=timeout)
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def is_transient(self, exc: BaseException) -> bool:
        """Rate limits, server errors, connection failures and timeouts."""
        if is_rate_limit_error(exc):
            return True
        if isinstance(exc, ApiError):
            return exc.status is not None and exc.status >= 500
        return isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError))

    def is_fatal(self, exc: BaseException) -> bool:
        """Authentication and authorization failures."""
        if not isinstance(exc, ApiError):
            return False
        return exc.status in (401, 403) or exc.code in AUTH_ERROR_CODES

    def check_payload(self, method: str, path: str, data: Any) -> None:
        """Hook for APIs that report errors inside a successful response."""
        pass

    async def _send(self, method: str, path: str, params: Optional[Dict[str, Any]], json_body: Optional[Dict[str, Any]]) -> Any:
        session = self._get_session()
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(f"{method} {url}")
        async with session.request(method, url, params=params, json=json_body) as response:
            if response.status >= 400:
                text = await response.text()
                raise ApiError(
                    f"{method} {path} failed with status {response.status}: {text[:300]}",
                    status=response.status,
                    code=_extract_error_code(text),
                )
            data = await response.json(content_type=None)
        self.check_payload(method, path, data)
        return data

    async def request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                      json_body: Optional[Dict[str, Any]] = None) -> Any:
        """Send a rate-limited, retried request and return the decoded JSON body."""
        return await with_retry(
            lambda: self.limiter.execute(lambda: self._send(method, path, params, json_body)),
            policy=self.retry_policy,
            is_transient=self.is_transient,
            operation_name=f"{method} {path}",
        )


def _extract_error_code(text: str) -> Optional[str]:
    """Pull an error code out of a JSON error body, if there is one."""
    try:
        body = json.loads(text)
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    code = body.get('code') or body.get('error')
    return code if isinstance(code, str) else None
