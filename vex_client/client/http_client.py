"""
MODULE OVERVIEW:
The authenticated HTTP transport to the backend.

WHAT IS HAPPENING HERE:
Every REST call goes through `request()`, which wraps one httpx call in a tenacity
retry loop. Network-level failures and 5xx responses are retried with exponential
backoff; a refused connection means the backend process is down and fails at once;
4xx responses are the caller's fault and are never retried.

The client also tracks whether the backend is reachable. The flag flips on the
first retryable failure and flips back on the next 2xx, and each flip fires its
callback exactly once, so the orchestrator and the outbox can pause and resume.
"""
import errno
from typing import Any, Callable, Optional

import httpx
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from vex_client.shared.config import RetryConfig
from vex_client.shared.errors import VexApiError

NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 422})


def is_connection_refused(exc: BaseException) -> bool:
    seen: BaseException | None = exc
    while seen is not None:
        if isinstance(seen, ConnectionRefusedError):
            return True
        if isinstance(seen, OSError) and seen.errno == errno.ECONNREFUSED:
            return True
        seen = seen.__cause__ or seen.__context__
    return isinstance(exc, httpx.ConnectError) and "refused" in str(exc).lower()


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, VexApiError):
        if exc.status_code in NON_RETRYABLE_STATUSES:
            return False
        return exc.status_code >= 500
    if is_connection_refused(exc):
        return False
    return isinstance(exc, httpx.TransportError)


class ResilientHttp:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        retry: RetryConfig | None = None,
        on_offline: Optional[Callable[[], None]] = None,
        on_online: Optional[Callable[[], None]] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.retry = retry or RetryConfig()
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.on_offline = on_offline
        self.on_online = on_online
        self._online = True

        self.client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self.retry.request_timeout_s,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_online(self) -> bool:
        return self._online

    def update_api_key(self, api_key: str) -> None:
        self._api_key = api_key
        self.client.headers["Authorization"] = f"Bearer {api_key}"

    async def aclose(self) -> None:
        await self.client.aclose()

    # ==========================
    # ONLINE / OFFLINE EDGES
    # ==========================
    def _mark_offline(self, reason: BaseException) -> None:
        if not self._online:
            return
        self._online = False
        logger.warning(f"base_url={self._base_url} event=offline reason='{reason}'")
        if self.on_offline:
            try:
                self.on_offline()
            except Exception as e:
                logger.error(f"on_offline callback failed: {e}")

    def _mark_online(self) -> None:
        if self._online:
            return
        self._online = True
        logger.info(f"base_url={self._base_url} event=online")
        if self.on_online:
            try:
                self.on_online()
            except Exception as e:
                logger.error(f"on_online callback failed: {e}")

    # ==========================
    # RETRY POLICY
    # ==========================
    def _wait(self, retry_state: RetryCallState) -> float:
        # Retry n waits base * 2**(n-1), capped.
        return min(self.retry.base_delay_s * (2 ** (retry_state.attempt_number - 1)), self.retry.max_delay_s)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Retry {retry_state.attempt_number}/{self.retry.max_retries} in {wait:.2f}s: {exc}"
        )

    async def _send_once(self, method: str, path: str, body: Any, params: Any) -> Any:
        try:
            response = await self.client.request(method, path, json=body, params=params)
        except httpx.TransportError as e:
            # Refused or retryable, the backend is unreachable either way.
            self._mark_offline(e)
            raise

        if response.is_error:
            error = self._api_error(response)
            if is_retryable(error):
                self._mark_offline(error)
            raise error

        self._mark_online()
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _api_error(response: httpx.Response) -> VexApiError:
        try:
            data = response.json()
        except ValueError:
            data = response.text or None
        message = None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
        if not message:
            message = response.reason_phrase or "Unknown error"
        return VexApiError(str(message), response.status_code, data)

    async def request(self, method: str, path: str, body: Any = None, params: Any = None) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            wait=self._wait,
            stop=stop_after_attempt(max(1, self.retry.max_retries)),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_once(method, path, body, params)

    async def get(self, path: str, params: Any = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None, params: Any = None) -> Any:
        return await self.request("POST", path, body, params)

    async def put(self, path: str, body: Any = None) -> Any:
        return await self.request("PUT", path, body)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request("PATCH", path, body)

    async def delete(self, path: str, body: Any = None) -> Any:
        return await self.request("DELETE", path, body)

    async def health_check(self) -> bool:
        """Single liveness probe. Never raises, never retries."""
        try:
            response = await self.client.get("/health")
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"base_url={self._base_url} event=health_check_failed reason='{e}'")
            return False
