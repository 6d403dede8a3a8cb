# /// script
# requires-python = ">=3.12"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Builds the stories datalayer: one `index.json` per market, with story relations resolved.

Usage:
  SB_ACCESS_TOKEN=... uv run ./build_datalayer.py --markets it,de,fr --output-dir "datalayer/stories"

Args:
  --token (optional if SB_ACCESS_TOKEN is set)
  --markets (optional if SB_DATALAYER_MARKETS is set) -- comma-separated market codes
  --market (optional; also MARKET) -- build only this market
  --fallback-lang (optional, repeatable) -- like `ch-it=it`
  --retry-attempts (optional; also SB_DATALAYER_RETRY) -- whole-market retries, default 5
  --cache-version (optional; also SB_CACHE_VERSION) -- defaults to the space version
  --output-dir (optional) -- default `datalayer/stories`
  --strategy (optional) -- `declared-field` (default) or `whole-tree`
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import humanize
from tqdm import tqdm

from datalayer_fetcher import (
    DEFAULT_MARKET_RETRY_ATTEMPTS,
    FetchFailed,
    MarketFetchResult,
    StoryFetcher,
)
from relation_resolver import ResolutionStrategy, build_dictionary, resolve_relations

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False  # don't bubble up to root
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
SPACE_URL: str = 'https://api.storyblok.com/v2/cdn/spaces/me'
DEFAULT_OUTPUT_DIR: str = 'datalayer/stories'
EXCLUDED_MARKETS: frozenset[str] = frozenset({'cn'})  # not built unless asked for explicitly


class ConfigError(ValueError):
    """Raised for missing or malformed configuration."""


@dataclass(frozen=True)
class DatalayerConfig:
    """
    Everything a build needs, resolved once at startup from CLI args and the environment.
    - Components receive the values they need from here; none of them read the environment.
    - `markets` is already filtered (single-market override, or the default exclusions).
    - `cache_version` of None means "ask the space endpoint".
    """

    access_token: str
    markets: tuple[str, ...]
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    retry_attempts: int = DEFAULT_MARKET_RETRY_ATTEMPTS
    fallback_languages: Mapping[str, str] = field(default_factory=dict)
    cache_version: str | None = None
    strategy: ResolutionStrategy = ResolutionStrategy.DECLARED_FIELD

    @classmethod
    def from_args(cls, args: argparse.Namespace, environ: Mapping[str, str]) -> DatalayerConfig:
        token: str = (args.token or environ.get('SB_ACCESS_TOKEN') or '').strip()
        if not token:
            raise ConfigError('an access token is required (--token or SB_ACCESS_TOKEN)')

        markets_raw: str = args.markets or environ.get('SB_DATALAYER_MARKETS') or ''
        all_markets: list[str] = [m.strip() for m in markets_raw.split(',') if m.strip()]
        only_market: str = (args.market or environ.get('MARKET') or '').strip()
        markets: list[str] = filter_markets(all_markets, only_market or None)
        if not markets:
            raise ConfigError('no markets to build (--markets, SB_DATALAYER_MARKETS or MARKET)')

        retry_raw: object = args.retry_attempts if args.retry_attempts is not None else environ.get('SB_DATALAYER_RETRY')
        retry_attempts: int = DEFAULT_MARKET_RETRY_ATTEMPTS
        if retry_raw not in (None, ''):
            try:
                retry_attempts = int(retry_raw)  # type: ignore[arg-type]
            except ValueError:
                raise ConfigError(f'retry attempts must be an integer, got ``{retry_raw}``') from None
        if retry_attempts < 1:
            raise ConfigError(f'retry attempts must be positive, got {retry_attempts}')

        cache_version: str | None = args.cache_version or environ.get('SB_CACHE_VERSION') or None

        return cls(
            access_token=token,
            markets=tuple(markets),
            output_dir=Path(args.output_dir).expanduser(),
            retry_attempts=retry_attempts,
            fallback_languages=parse_fallback_languages(args.fallback_lang or []),
            cache_version=cache_version,
            strategy=ResolutionStrategy(args.strategy),
        )


def filter_markets(markets: list[str], only_market: str | None) -> list[str]:
    """
    With a single-market override, keeps only that market (even an excluded one); otherwise drops EXCLUDED_MARKETS.
    """
    if only_market:
        return [only_market] if not markets or only_market in markets else []
    return [m for m in markets if m not in EXCLUDED_MARKETS]


def parse_fallback_languages(pairs: list[str]) -> dict[str, str]:
    """
    Parses `market=lang` pairs.
    """
    fallbacks: dict[str, str] = {}
    for pair in pairs:
        market, sep, lang = pair.partition('=')
        if not sep or not market.strip() or not lang.strip():
            raise ConfigError(f'fallback language must look like `market=lang`, got ``{pair}``')
        fallbacks[market.strip()] = lang.strip()
    return fallbacks


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Every option has an environment-variable counterpart except the output dir and strategy.
    - Returns an argparse.Namespace; DatalayerConfig.from_args() does the validation.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Fetch stories per market, resolve relations, write the datalayer.')
        parser.add_argument('--token', default=None, help='Storyblok access token (default: $SB_ACCESS_TOKEN).')
        parser.add_argument('--markets', default=None, help='Comma-separated market codes (default: $SB_DATALAYER_MARKETS).')
        parser.add_argument('--market', default=None, help='Build only this market (default: $MARKET).')
        parser.add_argument(
            '--fallback-lang',
            action='append',
            metavar='MARKET=LANG',
            help='Fallback language for a market; repeatable.',
        )
        parser.add_argument(
            '--retry-attempts',
            type=int,
            default=None,
            metavar='INTEGER',
            help=f'Whole-market retry attempts (default: $SB_DATALAYER_RETRY or {DEFAULT_MARKET_RETRY_ATTEMPTS}).',
        )
        parser.add_argument('--cache-version', default=None, help='Cache version token (default: the space version).')
        parser.add_argument('--output-dir', default=DEFAULT_OUTPUT_DIR, help=f'Output directory (default: {DEFAULT_OUTPUT_DIR}).')
        parser.add_argument(
            '--strategy',
            choices=[s.value for s in ResolutionStrategy],
            default=ResolutionStrategy.DECLARED_FIELD.value,
            help='Relation resolution strategy.',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


@dataclass
class BuildSummary:
    """Totals for a run; `incomplete_markets` were written but lost pages."""

    story_count: int = 0
    written: dict[str, Path] = field(default_factory=dict)
    failed_markets: list[str] = field(default_factory=list)
    incomplete_markets: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_markets and not self.incomplete_markets


async def get_cache_version(client: httpx.AsyncClient, token: str, space_url: str = SPACE_URL) -> str:
    """
    Returns the space version, used as the `cv` param; falls back to the current time in milliseconds.
    """
    try:
        resp: httpx.Response = await client.get(space_url, params={'token': token})
        resp.raise_for_status()
        data: object = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        log.warning(f'space lookup failed ({exc}); using current time as cache version')
        return str(int(time.time() * 1000))
    space: object = data.get('space') if isinstance(data, dict) else None
    if isinstance(space, dict) and space.get('version') is not None:
        return str(space['version'])
    log.warning('space version not found; using current time as cache version')
    return str(int(time.time() * 1000))


def write_market_artifact(output_dir: Path, market: str, stories: list[dict[str, Any]]) -> Path:
    """
    Writes `<output_dir>/<market>/index.json` atomically and returns its path.
    """
    market_dir: Path = output_dir / market
    market_dir.mkdir(parents=True, exist_ok=True)
    path: Path = market_dir / 'index.json'
    tmp_path: Path = market_dir / 'index.json.tmp'
    with tmp_path.open('w', encoding='utf-8') as fh:
        json.dump({'stories': stories}, fh, ensure_ascii=False, indent=2)
    os.replace(tmp_path, path)
    return path


async def build_market(fetcher: StoryFetcher, config: DatalayerConfig, market: str, cache_version: str) -> tuple[Path, MarketFetchResult]:
    """
    Fetch -> dictionary -> resolve -> write, for one market.
    """
    fetched: MarketFetchResult = await fetcher.fetch_market_stories(market, cache_version)
    dictionary: dict[str, dict[str, Any]] = build_dictionary(fetched.stories)
    resolved: list[dict[str, Any]] = resolve_relations(fetched.stories, dictionary, config.strategy)
    path: Path = write_market_artifact(config.output_dir, market, resolved)
    return path, fetched


async def build_all_markets(config: DatalayerConfig, client: httpx.AsyncClient) -> BuildSummary:
    """
    Builds each configured market in turn; a market that fails to fetch is logged and skipped.
    """
    start: float = time.monotonic()
    config.output_dir.mkdir(parents=True, exist_ok=True)
    cache_version: str = config.cache_version or await get_cache_version(client, config.access_token)
    log.debug(f'cache_version: {cache_version}')

    fetcher = StoryFetcher(
        client,
        config.access_token,
        retry_attempts=config.retry_attempts,
        fallback_languages=dict(config.fallback_languages),
    )
    summary = BuildSummary()
    for market in tqdm(config.markets, total=len(config.markets), desc='Building markets'):
        market_start: float = time.monotonic()
        try:
            path, fetched = await build_market(fetcher, config, market, cache_version)
        except FetchFailed as exc:
            log.error(f'[DATALAYER] market `{market}` skipped: {exc}')
            summary.failed_markets.append(market)
            continue
        summary.story_count += len(fetched.stories)
        summary.written[market] = path
        if not fetched.complete:
            summary.incomplete_markets.append(market)
        log.info(
            f'[DATALAYER] market `{market}`: {len(fetched.stories)} stories, '
            f'{humanize.naturalsize(path.stat().st_size)}, '
            f'{humanize.precisedelta(timedelta(seconds=time.monotonic() - market_start), minimum_unit="milliseconds")}'
        )

    log.info(f'[DATALAYER] Number of stories: {summary.story_count}')
    if summary.failed_markets:
        log.error(f'[DATALAYER] failed markets, ``{summary.failed_markets}``')
    if summary.incomplete_markets:
        log.warning(f'[DATALAYER] incomplete markets (pages lost), ``{summary.incomplete_markets}``')
    log.info(
        f'[DATALAYER] Execution time: '
        f'{humanize.precisedelta(timedelta(seconds=time.monotonic() - start), minimum_unit="milliseconds")}'
    )
    return summary


async def run(config: DatalayerConfig) -> BuildSummary:
    ## create httpx client (headers, timeouts, limits) --------------
    headers: dict[str, str] = {'user-agent': 'datalayer-builder/1.0'}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=60.0)
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=20, max_connections=20)
    async with httpx.AsyncClient(headers=headers, timeout=timeout, limits=limits) as client:
        return await build_all_markets(config, client)


def main(argv: list[str] | None = None) -> int:
    """
    Parses args into a DatalayerConfig, builds every market, returns 0 only when every market is complete.
    Called by: dundermain
    """
    parser: argparse.ArgumentParser = CLI.build_parser()
    args: argparse.Namespace = parser.parse_args(argv)
    try:
        config: DatalayerConfig = DatalayerConfig.from_args(args, os.environ)
    except ConfigError as exc:
        parser.error(str(exc))
    log.info(f'[DATALAYER] building markets, ``{list(config.markets)}``')
    summary: BuildSummary = asyncio.run(run(config))
    return 0 if summary.ok else 1


if __name__ == '__main__':
    raise SystemExit(main())
