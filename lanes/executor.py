# -*- coding: utf-8 -*-
"""
Rate-limited request executor.

Every provider call goes through RequestExecutor.execute(): it binds the
lane's proxy, retries HTTP 429 with exponential backoff and keeps the
process-wide usage counters.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config import PROXY_CHECK_URL, AppConfig, app_config
from error_handler import CredentialError, ProviderHTTPError, RateLimitExceeded, TokenExpired
from lanes.proxy import mask_proxy, parse_proxy, proxy_url

logger = logging.getLogger(__name__)


@dataclass
class RequestSpec:
    """Method + URL + headers + body of one outbound call.

    A dict/list body is sent as a JSON string; the caller decides the
    Content-Type (the provider expects text/plain for its batch endpoints).
    """
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Dict[str, Any]] = None

    def content(self) -> Optional[bytes]:
        if self.body is None:
            return None
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body, ensure_ascii=False).encode("utf-8")

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.body is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        return headers


@dataclass
class AccountUsage:
    requests: int = 0
    rate_limited: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"requests": self.requests, "rateLimited": self.rate_limited}


@dataclass
class RateLimitStats:
    """Process-wide counters, cleared only by reset()"""
    total_requests: int = 0
    rate_limited_requests: int = 0
    retried_requests: int = 0
    failed_after_retry: int = 0
    last_rate_limit_time: Optional[datetime] = None
    usage_by_account: Dict[str, AccountUsage] = field(default_factory=dict)

    def account(self, label: str) -> AccountUsage:
        if label not in self.usage_by_account:
            self.usage_by_account[label] = AccountUsage()
        return self.usage_by_account[label]

    def reset(self):
        self.total_requests = 0
        self.rate_limited_requests = 0
        self.retried_requests = 0
        self.failed_after_retry = 0
        self.last_rate_limit_time = None
        self.usage_by_account.clear()
        logger.info("[Executor] Rate limit stats reset")

    def snapshot(self) -> Dict[str, Any]:
        retry_success_rate = None
        if self.retried_requests:
            retry_success_rate = round(
                (self.retried_requests - self.failed_after_retry) / self.retried_requests, 4
            )
        return {
            "totalRequests": self.total_requests,
            "rateLimitedRequests": self.rate_limited_requests,
            "retriedRequests": self.retried_requests,
            "failedAfterRetry": self.failed_after_retry,
            "retrySuccessRate": retry_success_rate,
            "lastRateLimitTime": self.last_rate_limit_time.isoformat() if self.last_rate_limit_time else None,
            "tokenUsageByAccount": {
                name: usage.to_dict() for name, usage in self.usage_by_account.items()
            },
        }


def response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds. HTTP-date values are ignored."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


ClientFactory = Callable[[Optional[str]], httpx.AsyncClient]


class RequestExecutor:
    """
    Sends RequestSpecs with 429 backoff.

    One httpx.AsyncClient is kept per proxy URL. `sleep` and `client_factory`
    can be swapped out, which is how the tests drive it.
    """

    def __init__(
        self,
        stats: Optional[RateLimitStats] = None,
        config: AppConfig = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.stats = stats if stats is not None else RateLimitStats()
        self.config = config or app_config
        self._sleep = sleep
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, httpx.AsyncClient] = {}

    def _default_client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            proxy=proxy,
            timeout=self.config.request_timeout_sec,
            follow_redirects=True,
        )

    def client_for(self, proxy: Optional[str]) -> httpx.AsyncClient:
        url = proxy_url(proxy)
        key = url or ""
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = self._client_factory(url)
            self._clients[key] = client
        return client

    def retry_delay_ms(self, response: httpx.Response, attempt: int) -> float:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if retry_after is not None:
            return retry_after * 1000
        return self.config.backoff_delay_ms(attempt)

    async def execute(
        self,
        spec: RequestSpec,
        account_label: str = "unknown",
        proxy: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> httpx.Response:
        """
        Send one request on behalf of a lane.

        Raises:
            RateLimitExceeded: still 429 after max_retries retries
            TokenExpired: HTTP 401
            ProviderHTTPError: any other non-2xx (no retry)
        """
        if max_retries is None:
            max_retries = self.config.max_retries

        client = self.client_for(proxy)
        usage = self.stats.account(account_label)
        self.stats.total_requests += 1
        usage.requests += 1

        attempt = 0
        while True:
            response = await client.request(
                spec.method,
                spec.url,
                headers=spec.request_headers(),
                content=spec.content(),
                params=spec.params,
            )
            if response.status_code != 429:
                break

            usage.rate_limited += 1
            self.stats.retried_requests += 1
            if attempt == 0:
                self.stats.rate_limited_requests += 1
                self.stats.last_rate_limit_time = datetime.utcnow()

            if attempt >= max_retries:
                self.stats.failed_after_retry += 1
                logger.error(
                    f"[Executor] {account_label}: rate limited, giving up after {max_retries} retries"
                )
                raise RateLimitExceeded(max_retries, account_label)

            delay_ms = self.retry_delay_ms(response, attempt)
            logger.warning(
                f"[Executor] {account_label}: 429 on {spec.url}, retry {attempt + 1}/{max_retries} "
                f"in {delay_ms / 1000:.1f}s (proxy: {mask_proxy(proxy) or 'none'})"
            )
            await self._sleep(delay_ms / 1000)
            attempt += 1

        if response.status_code == 401:
            logger.warning(f"[Executor] {account_label}: 401 from {spec.url}")
            raise TokenExpired(body=response_body(response))

        if not response.is_success:
            body = response_body(response)
            logger.error(f"[Executor] {account_label}: HTTP {response.status_code} from {spec.url}")
            raise ProviderHTTPError(response.status_code, body)

        return response

    async def check_proxy(self, proxy: str, account_label: str = "unknown") -> Dict[str, Any]:
        """Send an IP lookup through `proxy` with the lane's own client"""
        if parse_proxy(proxy) is None:
            raise CredentialError("Invalid proxy format", {"proxy": mask_proxy(proxy)})

        spec = RequestSpec(method="GET", url=PROXY_CHECK_URL)
        started = time.monotonic()
        response = await self.execute(spec, account_label, proxy, max_retries=0)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        data = response_body(response)
        if not isinstance(data, dict):
            data = {}
        logger.info(
            f"[Executor] {account_label}: proxy {mask_proxy(proxy)} OK, "
            f"exit IP {data.get('query')} ({data.get('country')})"
        )
        return {
            "proxy": mask_proxy(proxy),
            "ip": data.get("query"),
            "country": data.get("country"),
            "city": data.get("city"),
            "region": data.get("regionName"),
            "org": data.get("org") or data.get("isp"),
            "response_time_ms": elapsed_ms,
        }

    async def aclose(self):
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
