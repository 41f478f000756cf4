"""ステータスを考慮した固定間隔リトライ付き HTTP クライアント"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from .exceptions import FlagsenseErrorCodes, TransportError
from .log import get_logger

logger = get_logger(__name__)

# 成功・4xx でもリトライ対象とするステータス
RETRYABLE_STATUS_CODES = frozenset({205, 408, 422, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """呼び出し元ごとのリトライポリシー。

    max_retries は初回を除いた追加試行回数。指数バックオフは行わない。
    """

    max_retries: int = 0
    delay: float = 0.0


CONFIG_RETRY_POLICY = RetryPolicy(max_retries=3, delay=2.0)
EVENTS_RETRY_POLICY = RetryPolicy(max_retries=1, delay=3.0)
NO_RETRY = RetryPolicy()


def is_retryable_status(status_code: int) -> bool:
    """リトライ対象の HTTP ステータスか判定する。"""
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600


@dataclass
class RequestResult:
    """リクエスト結果。error か value のどちらかを保持する。"""

    value: Any = None
    error: TransportError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResilientRequestClient:
    """httpx を使ったリトライ付き HTTP クライアント。

    HTTP・通信エラーは例外として送出せず、RequestResult.error で返す。
    """

    def __init__(self, headers: dict[str, str], timeout_seconds: float = 10.0) -> None:
        self._headers = dict(headers)
        self._timeout = timeout_seconds

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    async def request(
        self,
        method: str,
        url: str,
        policy: RetryPolicy,
        json: Any = None,
        parse_json: bool = True,
    ) -> RequestResult:
        """リクエストを送信し、ポリシーに従ってリトライする。"""
        attempt = 0
        while True:
            try:
                async with self._make_client() as client:
                    try:
                        req = client.build_request(method, url, json=json)
                    except (TypeError, ValueError) as e:
                        return RequestResult(
                            error=TransportError(
                                f"{method} {url}: request body is not JSON serializable",
                                code=FlagsenseErrorCodes.INVALID_REQUEST,
                                cause=e,
                            )
                        )
                    resp = await client.send(req)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                if attempt < policy.max_retries:
                    attempt += 1
                    logger.debug("request failed, retrying", url=url, attempt=attempt, error=str(e))
                    await asyncio.sleep(policy.delay)
                    continue
                return RequestResult(
                    error=TransportError(
                        f"{method} {url} failed: {e}",
                        code=FlagsenseErrorCodes.CONNECTION_ERROR,
                        cause=e,
                    )
                )

            if is_retryable_status(resp.status_code) and attempt < policy.max_retries:
                attempt += 1
                logger.debug(
                    "retryable status, retrying",
                    url=url,
                    status_code=resp.status_code,
                    attempt=attempt,
                )
                await asyncio.sleep(policy.delay)
                continue
            return self._to_result(method, url, resp, parse_json)

    def _to_result(
        self, method: str, url: str, resp: httpx.Response, parse_json: bool
    ) -> RequestResult:
        if not resp.is_success:
            return RequestResult(
                error=TransportError(
                    f"{method} {url}: HTTP {resp.status_code}",
                    status_code=resp.status_code,
                )
            )
        if not parse_json:
            return RequestResult(value=resp.status_code)
        if not resp.content:
            return RequestResult(value=None)
        try:
            return RequestResult(value=resp.json())
        except ValueError as e:
            return RequestResult(
                error=TransportError(
                    f"{method} {url}: invalid JSON response",
                    code=FlagsenseErrorCodes.INVALID_RESPONSE,
                    status_code=resp.status_code,
                    cause=e,
                )
            )

    async def get_json(self, url: str, policy: RetryPolicy = CONFIG_RETRY_POLICY) -> RequestResult:
        return await self.request("GET", url, policy)

    async def post_json(
        self, url: str, body: Any, policy: RetryPolicy = EVENTS_RETRY_POLICY
    ) -> RequestResult:
        return await self.request("POST", url, policy, json=body, parse_json=False)
