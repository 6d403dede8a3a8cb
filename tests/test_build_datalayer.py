import argparse
import json
import tempfile
import unittest
from pathlib import Path

import httpx

from build_datalayer import (
    CLI,
    ConfigError,
    DatalayerConfig,
    build_all_markets,
    filter_markets,
    get_cache_version,
    parse_fallback_languages,
    write_market_artifact,
)
from relation_resolver import ResolutionStrategy


def parse(argv: list[str]) -> argparse.Namespace:
    return CLI.parse_args(argv)


class TestConfig(unittest.TestCase):
    """
    Tests DatalayerConfig.from_args() and its helpers.
    """

    def test_from_env(self) -> None:
        """
        Checks that token, markets and retry count are read from the environment when not on the command line.
        """
        environ: dict = {'SB_ACCESS_TOKEN': 'tok', 'SB_DATALAYER_MARKETS': 'it, de,cn', 'SB_DATALAYER_RETRY': '3'}
        config: DatalayerConfig = DatalayerConfig.from_args(parse([]), environ)
        self.assertEqual(config.access_token, 'tok')
        self.assertEqual(config.markets, ('it', 'de'))
        self.assertEqual(config.retry_attempts, 3)
        self.assertIsNone(config.cache_version)
        self.assertIs(config.strategy, ResolutionStrategy.DECLARED_FIELD)
        self.assertEqual(config.output_dir, Path('datalayer/stories'))

    def test_args_override_env(self) -> None:
        """
        Checks that command-line values win over the environment.
        """
        argv: list[str] = [
            '--token', 'cli-tok',
            '--markets', 'it,fr',
            '--retry-attempts', '2',
            '--fallback-lang', 'ch-it=it',
            '--cache-version', '99',
            '--strategy', 'whole-tree',
        ]
        config: DatalayerConfig = DatalayerConfig.from_args(parse(argv), {'SB_ACCESS_TOKEN': 'env-tok', 'SB_DATALAYER_RETRY': '7'})
        self.assertEqual(config.access_token, 'cli-tok')
        self.assertEqual(config.markets, ('it', 'fr'))
        self.assertEqual(config.retry_attempts, 2)
        self.assertEqual(dict(config.fallback_languages), {'ch-it': 'it'})
        self.assertEqual(config.cache_version, '99')
        self.assertIs(config.strategy, ResolutionStrategy.WHOLE_TREE)

    def test_single_market_override(self) -> None:
        """
        Checks that MARKET narrows the build to one market, even an otherwise excluded one.
        """
        environ: dict = {'SB_ACCESS_TOKEN': 'tok', 'SB_DATALAYER_MARKETS': 'it,de,cn', 'MARKET': 'cn'}
        config: DatalayerConfig = DatalayerConfig.from_args(parse([]), environ)
        self.assertEqual(config.markets, ('cn',))

    def test_invalid_config(self) -> None:
        """
        Checks that a missing token, no markets, or a bad retry count raise ConfigError.
        """
        with self.assertRaises(ConfigError):
            DatalayerConfig.from_args(parse(['--markets', 'it']), {})
        with self.assertRaises(ConfigError):
            DatalayerConfig.from_args(parse(['--token', 't']), {})
        with self.assertRaises(ConfigError):
            DatalayerConfig.from_args(parse(['--token', 't', '--markets', 'it']), {'SB_DATALAYER_RETRY': 'many'})
        with self.assertRaises(ConfigError):
            DatalayerConfig.from_args(parse(['--token', 't', '--markets', 'it', '--retry-attempts', '0']), {})

    def test_filter_markets(self) -> None:
        """
        Checks the default exclusion and the single-market override.
        """
        self.assertEqual(filter_markets(['it', 'cn', 'de'], None), ['it', 'de'])
        self.assertEqual(filter_markets(['it', 'cn', 'de'], 'de'), ['de'])
        self.assertEqual(filter_markets(['it'], 'xx'), [])
        self.assertEqual(filter_markets([], 'it'), ['it'])

    def test_parse_fallback_languages(self) -> None:
        """
        Checks `market=lang` parsing and rejection of malformed pairs.
        """
        self.assertEqual(parse_fallback_languages(['ch-it=it', ' at = de ']), {'ch-it': 'it', 'at': 'de'})
        with self.assertRaises(ConfigError):
            parse_fallback_languages(['ch-it'])


class TestArtifacts(unittest.TestCase):
    """
    Tests write_market_artifact().
    """

    def test_writes_index_json(self) -> None:
        """
        Checks that `<out>/<market>/index.json` holds `{"stories": [...]}` and no temp file is left.
        """
        with tempfile.TemporaryDirectory() as tmp:
            stories: list[dict] = [{'uuid': 'a', 'content': {'title': 'Caffè'}}]
            path: Path = write_market_artifact(Path(tmp), 'it', stories)
            self.assertEqual(path, Path(tmp) / 'it' / 'index.json')
            with path.open('r', encoding='utf-8') as fh:
                self.assertEqual(json.load(fh), {'stories': stories})
            self.assertEqual(sorted(p.name for p in path.parent.iterdir()), ['index.json'])


class TestDriver(unittest.IsolatedAsyncioTestCase):
    """
    Tests the per-market driver against an httpx.MockTransport.
    """

    async def test_cache_version_from_space(self) -> None:
        """
        Checks that the space version is used, and a timestamp when the space is absent.
        """
        responses: list[dict] = [{'space': {'version': 1234}}, {}]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=responses.pop(0))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            self.assertEqual(await get_cache_version(client, 'tok'), '1234')
            with self.assertLogs('build_datalayer', level='WARNING'):
                fallback: str = await get_cache_version(client, 'tok')
        self.assertTrue(fallback.isdigit())

    async def test_cache_version_when_space_lookup_fails(self) -> None:
        """
        Checks that an error response or a non-JSON body falls back to a timestamp instead of raising.
        """
        responses: list[httpx.Response] = [
            httpx.Response(500, json={'error': 'boom'}),
            httpx.Response(200, content=b'<html>not json</html>'),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with self.assertLogs('build_datalayer', level='WARNING'):
                after_500: str = await get_cache_version(client, 'tok')
                after_html: str = await get_cache_version(client, 'tok')
        self.assertTrue(after_500.isdigit())
        self.assertTrue(after_html.isdigit())

    async def test_malformed_market_body_is_skipped(self) -> None:
        """
        Checks that a market whose page 1 is not a JSON object is skipped and the next market is still built.
        """

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params['language'] == 'de':
                return httpx.Response(200, json=[])
            return httpx.Response(200, json={'stories': [{'uuid': 'a', 'content': {}}]}, headers={'total': '1'})

        with tempfile.TemporaryDirectory() as tmp:
            config = DatalayerConfig(access_token='tok', markets=('de', 'it'), output_dir=Path(tmp), cache_version='5')
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                with self.assertLogs('build_datalayer', level='ERROR'):
                    summary = await build_all_markets(config, client)
            self.assertEqual(summary.failed_markets, ['de'])
            self.assertEqual(list(summary.written), ['it'])

    async def test_failed_market_does_not_stop_the_build(self) -> None:
        """
        Checks that a market failing to fetch is logged and skipped while the others are written resolved.
        """
        stories: list[dict] = [
            {'uuid': 'a', 'content': {'body': [{'component': 'Target', 'modelLabel': 'b'}]}},
            {'uuid': 'b', 'content': {'title': 'B'}},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params['language'] == 'de':
                return httpx.Response(404)
            return httpx.Response(200, json={'stories': stories}, headers={'total': '2'})

        with tempfile.TemporaryDirectory() as tmp:
            config = DatalayerConfig(
                access_token='tok',
                markets=('de', 'it'),
                output_dir=Path(tmp) / 'out',
                cache_version='5',
            )
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                with self.assertLogs('build_datalayer', level='ERROR'):
                    summary = await build_all_markets(config, client)

            self.assertEqual(summary.failed_markets, ['de'])
            self.assertEqual(summary.incomplete_markets, [])
            self.assertEqual(summary.story_count, 2)
            self.assertFalse(summary.ok)
            self.assertFalse((Path(tmp) / 'out' / 'de').exists())
            with summary.written['it'].open('r', encoding='utf-8') as fh:
                written: dict = json.load(fh)
        self.assertEqual(written['stories'][0]['content']['body'][0]['modelLabel'], stories[1])
        self.assertEqual(written['stories'][1], stories[1])


if __name__ == '__main__':
    unittest.main()
