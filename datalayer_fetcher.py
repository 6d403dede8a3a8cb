"""
Fetches every story of one market from the Storyblok CDN API.

Page 1 is fetched first to learn the collection size (the `total` response header);
the remaining pages are then fetched in bulks of concurrent requests, each request
wrapped in an exponential-backoff retry.

Pieces:
- retry() -- one operation, bounded attempts, exponential delay between attempts.
- run_bulks() -- a queue of operations, run chunk by chunk; failures are logged and recorded, never fatal.
- StoryFetcher -- page requests, whole-market fetch, and the outer per-market retry loop.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import httpx

log = logging.getLogger(__name__)

T = TypeVar('T')

## constants --------------------------------------------------------
STORIES_URL: str = 'https://api.storyblok.com/v2/cdn/stories'

## default knobs ----------------------------------------------------
DEFAULT_PAGE_SIZE: int = 25  # stories per page
DEFAULT_PAGE_CONCURRENCY: int = 20  # pages in flight per bulk
DEFAULT_BULK_SIZE: int = 10
DEFAULT_MAX_ATTEMPTS: int = 5  # per page
DEFAULT_INITIAL_DELAY: float = 1.0  # seconds
DEFAULT_DELAY_MULTIPLIER: float = 2
DEFAULT_MARKET_RETRY_ATTEMPTS: int = 5  # whole-market restarts
TOO_MANY_REQUESTS_PAUSE_SECONDS: float = 10.0


## errors -----------------------------------------------------------
class DatalayerError(Exception):
    """Base class for retrieval errors."""


class RetryExhausted(DatalayerError):
    """Raised by retry() once every attempt failed; the underlying cause is not kept."""


class FetchFailed(DatalayerError):
    """Raised when the stories of a market could not be fetched."""


class TooManyRequests(FetchFailed):
    """Raised when the API answered 429; the whole market is retried after a pause."""


class RetryAttemptsExceeded(FetchFailed):
    """Raised when the outer per-market retry budget is used up."""


## types ------------------------------------------------------------
@dataclass(frozen=True)
class PageRequest:
    """
    Immutable parameters for one page of the stories collection.
    - `language` is the market code.
    - `page` of None means "let the API default to page 1" (the page number is omitted).
    """

    language: str
    cv: str
    per_page: int = DEFAULT_PAGE_SIZE
    page: int | None = None
    fallback_lang: str | None = None

    def for_page(self, page: int) -> PageRequest:
        return replace(self, page=page)

    def query_params(self, token: str) -> dict[str, str | int]:
        params: dict[str, str | int] = {
            'token': token,
            'per_page': self.per_page,
            'language': self.language,
            'cv': self.cv,
        }
        if self.page is not None:
            params['page'] = self.page
        if self.fallback_lang:
            params['fallback_lang'] = self.fallback_lang
        return params


@dataclass
class BulkResult:
    """Successes in chunk order, plus `(op_index, exception)` for each operation that exhausted its retries."""

    results: list[Any] = field(default_factory=list)
    failures: list[tuple[int, BaseException]] = field(default_factory=list)


@dataclass
class MarketFetchResult:
    """
    All stories fetched for one market, with enough bookkeeping to tell whether anything was lost.
    - `total` is the `total` header value (None when absent or unparsable).
    - `failed_pages` lists the page numbers dropped after exhausting their retries.
    """

    market: str
    stories: list[dict[str, Any]]
    total: int | None
    total_pages: int
    failed_pages: list[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_pages


## retry ------------------------------------------------------------
async def _sleep(seconds: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking (and patching in tests).
    """
    await asyncio.sleep(seconds)


async def retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    multiplier: float = DEFAULT_DELAY_MULTIPLIER,
) -> T:
    """
    Awaits `op()` until it succeeds, at most `max_attempts` times.
    Sleeps `initial_delay * multiplier ** attempt_index` between attempts; never after the last one.
    Every exception counts as retryable.
    """
    if max_attempts < 1:
        raise ValueError(f'max_attempts must be >= 1, got {max_attempts}')
    for attempt_index in range(max_attempts):
        try:
            return await op()
        except Exception as exc:
            log.debug(f'attempt {attempt_index + 1}/{max_attempts} failed: {exc!r}')
            if attempt_index + 1 < max_attempts:
                await _sleep(initial_delay * multiplier**attempt_index)
    raise RetryExhausted(f'max retries reached ({max_attempts} attempts)') from None


## bulks ------------------------------------------------------------
async def run_bulks(
    ops: list[Callable[[], Awaitable[T]]],
    bulk_size: int = DEFAULT_BULK_SIZE,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    multiplier: float = DEFAULT_DELAY_MULTIPLIER,
    labels: list[str] | None = None,
) -> BulkResult:
    """
    Runs `ops` in contiguous chunks of `bulk_size`.
    Members of a chunk run concurrently (each through retry()); the next chunk starts once all have settled.
    An op that exhausts its retries is logged (with its entry from `labels`, when given) and recorded
    in `failures`; the batch carries on.
    """
    if bulk_size < 1:
        raise ValueError(f'bulk_size must be >= 1, got {bulk_size}')
    if labels is not None and len(labels) != len(ops):
        raise ValueError(f'expected {len(ops)} labels, got {len(labels)}')
    outcome = BulkResult()
    for start in range(0, len(ops), bulk_size):
        bulk: list[Callable[[], Awaitable[T]]] = ops[start : start + bulk_size]
        settled: list[Any] = await asyncio.gather(
            *(retry(op, max_attempts, initial_delay, multiplier) for op in bulk),
            return_exceptions=True,
        )
        for offset, result in enumerate(settled):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result  # cancellation and friends
                label: str = labels[start + offset] if labels is not None else f'op {start + offset}'
                log.error(f'failed to fetch ({label}): {result}')
                outcome.failures.append((start + offset, result))
            else:
                outcome.results.append(result)
    return outcome


def total_pages_from_header(total_header: str | None, per_page: int) -> int:
    """
    Computes the page count from the `total` header; an absent or unparsable header means a single page.
    """
    try:
        total: int = int(total_header or '0')
    except ValueError:
        total = 0
    return max(1, math.ceil(total / per_page))


def stories_from_body(data: object, request: PageRequest) -> list[dict[str, Any]]:
    """
    Returns the `stories` list of a decoded page body; a body of any other shape raises FetchFailed.
    A missing or null `stories` means an empty page.
    """
    if not isinstance(data, dict):
        raise FetchFailed(
            f'unexpected body for market `{request.language}` page {request.page or 1}: '
            f'expected an object, got {type(data).__name__}'
        )
    stories: object = data.get('stories')
    if stories is None:
        return []
    if not isinstance(stories, list):
        raise FetchFailed(
            f'unexpected body for market `{request.language}` page {request.page or 1}: '
            f'`stories` is {type(stories).__name__}, not a list'
        )
    return stories


## fetcher ----------------------------------------------------------
class StoryFetcher:
    """
    Fetches all stories of a market from the CDN stories endpoint.
    - Uses an injected `httpx.AsyncClient` (timeouts and limits belong to the caller).
    - Fetches page 1 first and derives the page count from its `total` header.
    - Fetches the remaining pages through run_bulks() at a fixed concurrency.
    - Reports permanently failed pages on the result instead of failing the market.
    - Restarts a whole market on failure, pausing after a 429, up to `retry_attempts` times.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        *,
        stories_url: str = STORIES_URL,
        retry_attempts: int = DEFAULT_MARKET_RETRY_ATTEMPTS,
        fallback_languages: dict[str, str] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_concurrency: int = DEFAULT_PAGE_CONCURRENCY,
        page_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        page_initial_delay: float = DEFAULT_INITIAL_DELAY,
    ) -> None:
        self.client: httpx.AsyncClient = client
        self.access_token: str = access_token
        self.stories_url: str = stories_url
        self.retry_attempts: int = retry_attempts
        self.fallback_languages: dict[str, str] = dict(fallback_languages or {})
        self.page_size: int = page_size
        self.page_concurrency: int = page_concurrency
        self.page_max_attempts: int = page_max_attempts
        self.page_initial_delay: float = page_initial_delay

    async def _get_page(self, request: PageRequest) -> httpx.Response:
        resp: httpx.Response = await self.client.get(self.stories_url, params=request.query_params(self.access_token))
        resp.raise_for_status()
        return resp

    async def fetch_page(self, request: PageRequest) -> list[dict[str, Any]]:
        resp: httpx.Response = await self._get_page(request)
        return stories_from_body(resp.json(), request)

    async def fetch_stories(self, request: PageRequest) -> MarketFetchResult:
        """
        Fetches page 1, then every remaining page in bulks; page-1 stories come first.
        Page-1 failures raise FetchFailed (TooManyRequests for a 429).
        """
        start: float = time.monotonic()
        first_request: PageRequest = replace(request, page=None)
        try:
            first_resp: httpx.Response = await self._get_page(first_request)
            first_stories: list[dict[str, Any]] = stories_from_body(first_resp.json(), first_request)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == httpx.codes.TOO_MANY_REQUESTS:
                raise TooManyRequests(f'Too Many Requests (market `{request.language}`)') from exc
            raise FetchFailed(f'failed to fetch stories for market `{request.language}`: {exc}') from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchFailed(f'failed to fetch stories for market `{request.language}`: {exc}') from exc

        total_header: str | None = first_resp.headers.get('total')
        total_pages: int = total_pages_from_header(total_header, request.per_page)
        pages: list[int] = list(range(2, total_pages + 1))
        log.debug(f'market `{request.language}`: total header, ``{total_header}``; pages, ``{total_pages}``')

        ops: list[Callable[[], Awaitable[list[dict[str, Any]]]]] = [
            self._page_op(request.for_page(page)) for page in pages
        ]
        bulk: BulkResult = await run_bulks(
            ops,
            self.page_concurrency,
            max_attempts=self.page_max_attempts,
            initial_delay=self.page_initial_delay,
            labels=[f'market `{request.language}` page {page}' for page in pages],
        )
        stories: list[dict[str, Any]] = list(first_stories)
        for page_stories in bulk.results:
            stories.extend(page_stories)
        failed_pages: list[int] = sorted(pages[op_index] for op_index, _exc in bulk.failures)

        try:
            total: int | None = int(total_header) if total_header is not None else None
        except ValueError:
            total = None
        elapsed_ms: int = round((time.monotonic() - start) * 1000)
        log.info(f'[DATALAYER] Fetch market: {request.language} Execution time: {elapsed_ms}ms')
        if failed_pages:
            log.warning(f'[DATALAYER] market `{request.language}` is incomplete; failed pages, ``{failed_pages}``')
        return MarketFetchResult(
            market=request.language,
            stories=stories,
            total=total,
            total_pages=total_pages,
            failed_pages=failed_pages,
        )

    def _page_op(self, request: PageRequest) -> Callable[[], Awaitable[list[dict[str, Any]]]]:
        async def op() -> list[dict[str, Any]]:
            return await self.fetch_page(request)

        return op

    def build_request(self, market: str, cache_version: str) -> PageRequest:
        return PageRequest(
            language=market,
            cv=str(cache_version),
            per_page=self.page_size,
            fallback_lang=self.fallback_languages.get(market),
        )

    async def fetch_market_stories(self, market: str, cache_version: str) -> MarketFetchResult:
        """
        Fetches a whole market, restarting from page 1 after a 429 (with a fixed pause).
        Any other failure is logged and re-raised; running out of attempts raises RetryAttemptsExceeded.
        """
        request: PageRequest = self.build_request(market, cache_version)
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self.fetch_stories(request)
            except TooManyRequests as exc:
                if attempt == self.retry_attempts:
                    log.warning(f'{exc}; no attempts left ({attempt}/{self.retry_attempts})')
                    break
                log.warning(
                    f'{exc}; waiting {TOO_MANY_REQUESTS_PAUSE_SECONDS:g} seconds (attempt {attempt}/{self.retry_attempts})...'
                )
                await _sleep(TOO_MANY_REQUESTS_PAUSE_SECONDS)
            except FetchFailed as exc:
                log.error(f'[DATALAYER] Error in fetch_market_stories: {exc}')
                raise
        raise RetryAttemptsExceeded(
            f'[DATALAYER] Error in fetch_market_stories: Maximum retry attempts exceeded (market `{market}`)'
        )
