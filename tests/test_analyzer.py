"""
Orchestrator tests: every fetcher is patched in the analyzer's namespace, so
these exercise the pipeline (fan-out, context, scoring, deadline, cancellation)
without any network.
"""
import asyncio
import time
from contextlib import ExitStack

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import make_document, make_psi, reachable_sitemap
from pagegrade.exceptions import (
    AnalysisCancelledError, AnalysisError, AnalysisTimeoutError, HtmlFetchError, InvalidUrlError,
    UpstreamAuditError,
)
from pagegrade.models import (
    GeoLookupResult, LinkSampleSummary, ModuleKey, ModuleStatus, RobotsResult,
    Strategy, StructuredDataReport,
)
from pagegrade.services import analyzer, modules
from pagegrade.services.analyzer import analyze_site, resolve_locale, resolve_strategy
from pagegrade.services.score_calculator import weighted_score
from pagegrade.utils.cancellation import CancellationToken
from pagegrade.utils.history import InMemoryHistoryStore

PAGE = (
    "<html><head><title>Example Domain</title>"
    '<meta name="viewport" content="width=device-width, initial-scale=1">'
    "</head><body><main><p>Hello</p></main><nav><a href='/about'>About</a></nav></body></html>"
)


def patch_pipeline(stack: ExitStack, **overrides):
    """Patch every outbound call the analyzer makes; returns the mocks by name."""
    mocks = {
        "fetch_psi": AsyncMock(return_value=make_psi(perf=0.8)),
        "fetch_html_document": AsyncMock(return_value=make_document(PAGE, url="https://example.com/")),
        "fetch_robots_txt": AsyncMock(return_value=RobotsResult(text="User-agent: *\nAllow: /",
                                                                fetched_from="https://example.com/robots.txt")),
        "fetch_sitemaps": AsyncMock(return_value=reachable_sitemap()),
        "lookup_geo": AsyncMock(return_value=GeoLookupResult(status="success", country_code="US")),
        "evaluate_link_sample": AsyncMock(return_value=LinkSampleSummary(total=1)),
    }
    mocks.update(overrides)
    for name, mock in mocks.items():
        stack.enter_context(patch.object(analyzer, name, mock))
    stack.enter_context(patch.object(modules, "validate_structured_data",
                                     AsyncMock(return_value=StructuredDataReport(schemas=["WebSite"]))))
    stack.enter_context(patch.object(modules, "probe_link", AsyncMock()))
    return mocks


class TestResolution:

    def test_strategy_defaults_to_mobile(self):
        assert resolve_strategy("desktop") == Strategy.DESKTOP
        assert resolve_strategy("DESKTOP") == Strategy.DESKTOP
        assert resolve_strategy("tablet") == Strategy.MOBILE
        assert resolve_strategy(None) == Strategy.MOBILE

    def test_locale_defaults(self):
        assert resolve_locale(None) == "en_US"
        assert resolve_locale("  ") == "en_US"
        assert resolve_locale(" de_DE ") == "de_DE"


class TestAnalyzeSite:

    @pytest.mark.asyncio
    async def test_successful_run(self, session):
        with ExitStack() as stack:
            mocks = patch_pipeline(stack)
            result = await analyze_site("Example.com", locale="en_US", session=session)

        assert result.ok
        assert result.normalized_url == "https://example.com/"
        assert result.strategy == Strategy.MOBILE
        assert [m.key for m in result.modules] == list(ModuleKey)
        assert result.overall == weighted_score(result.modules)
        assert 0 <= result.overall <= 10
        assert result.raw.robots == "User-agent: *\nAllow: /"
        assert result.finished_at >= result.started_at

        psi_args = mocks["fetch_psi"].await_args
        assert psi_args.args[1:4] == ("https://example.com/", Strategy.MOBILE, "en_US")
        # secondary fetches target the final origin
        assert mocks["fetch_sitemaps"].await_args.args[1] == "https://example.com"
        assert mocks["lookup_geo"].await_args.args[1] == "example.com"

    @pytest.mark.asyncio
    async def test_secondary_fetches_use_redirected_origin(self, session):
        redirected = make_document(PAGE, url="https://www.example.org/home")
        with ExitStack() as stack:
            mocks = patch_pipeline(stack, fetch_html_document=AsyncMock(return_value=redirected))
            result = await analyze_site("https://example.com", session=session)

        assert result.url == "https://www.example.org/home"
        assert mocks["fetch_sitemaps"].await_args.args[1] == "https://www.example.org"
        assert mocks["lookup_geo"].await_args.args[1] == "www.example.org"

    @pytest.mark.asyncio
    async def test_invalid_url(self, session):
        with pytest.raises(InvalidUrlError):
            await analyze_site("   ", session=session)

    @pytest.mark.asyncio
    async def test_malformed_port_is_typed_error(self, session):
        with ExitStack() as stack:
            mocks = patch_pipeline(stack)
            with pytest.raises(AnalysisError):
                await analyze_site("https://example.com:abc/", session=session)
        mocks["fetch_psi"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_psi_failure_fails_run(self, session):
        with ExitStack() as stack:
            patch_pipeline(stack, fetch_psi=AsyncMock(side_effect=UpstreamAuditError("no lighthouse")))
            with pytest.raises(UpstreamAuditError):
                await analyze_site("https://example.com", session=session)

    @pytest.mark.asyncio
    async def test_html_failure_fails_run(self, session):
        with ExitStack() as stack:
            patch_pipeline(stack, fetch_html_document=AsyncMock(side_effect=HtmlFetchError("404", 404)))
            with pytest.raises(HtmlFetchError):
                await analyze_site("https://example.com", session=session)

    @pytest.mark.asyncio
    async def test_degraded_secondary_sources(self, session):
        with ExitStack() as stack:
            patch_pipeline(
                stack,
                fetch_sitemaps=AsyncMock(side_effect=RuntimeError("sitemap parser bug")),
                lookup_geo=AsyncMock(return_value=None),
                evaluate_link_sample=AsyncMock(side_effect=RuntimeError("pool bug")),
            )
            result = await analyze_site("https://example.com", session=session)

        assert result.raw.sitemap is None
        assert result.raw.geo is None
        assert result.raw.link_sample.total == 0
        assert len(result.modules) == 8

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout(self, session):
        async def slow_psi(*args, **kwargs):
            await asyncio.sleep(0.5)
            return make_psi()

        build = AsyncMock()
        with ExitStack() as stack:
            patch_pipeline(stack, fetch_psi=slow_psi)
            stack.enter_context(patch.object(analyzer, "build_module_results", build))
            start = time.perf_counter()
            with pytest.raises(AnalysisTimeoutError):
                await analyze_site("https://example.com", session=session, timeout_seconds=0.05)
            elapsed = time.perf_counter() - start

        assert elapsed < 0.3
        build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_external_cancellation_propagates_reason(self, session):
        async def slow_psi(*args, **kwargs):
            await asyncio.sleep(0.5)
            return make_psi()

        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, AnalysisCancelledError("user left"))
        with ExitStack() as stack:
            patch_pipeline(stack, fetch_psi=slow_psi)
            with pytest.raises(AnalysisCancelledError, match="user left"):
                await analyze_site("https://example.com", session=session, cancel_token=token)

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self, session):
        token = CancellationToken()
        token.cancel()
        with ExitStack() as stack:
            mocks = patch_pipeline(stack)
            with pytest.raises(AnalysisCancelledError):
                await analyze_site("https://example.com", session=session, cancel_token=token)
        mocks["fetch_psi"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_module_still_aggregated(self, session):
        async def boom(ctx, session):
            raise ValueError("schema module bug")

        with ExitStack() as stack:
            patch_pipeline(stack)
            stack.enter_context(patch.dict(modules.COMPUTERS, {ModuleKey.SCHEMA: boom}))
            result = await analyze_site("https://example.com", session=session)

        schema = next(m for m in result.modules if m.key == ModuleKey.SCHEMA)
        assert schema.status == ModuleStatus.INTERNAL_ERROR
        assert schema.score == 0
        assert result.overall == weighted_score(result.modules)

    @pytest.mark.asyncio
    async def test_history_snapshots_attached(self, session):
        store = InMemoryHistoryStore()
        with ExitStack() as stack:
            patch_pipeline(stack)
            first = await analyze_site("https://example.com", session=session, history=store)
            await store.record(first)
            second = await analyze_site("https://example.com/", session=session, history=store)

        assert first.history_snapshots == []
        assert len(second.history_snapshots) == 1
        assert second.history_snapshots[0].overall_score == first.overall

    @pytest.mark.asyncio
    async def test_creates_and_closes_own_session(self):
        own_session = MagicMock()
        own_session.close = AsyncMock()
        with ExitStack() as stack:
            patch_pipeline(stack)
            stack.enter_context(patch.object(analyzer, "create_session", MagicMock(return_value=own_session)))
            await analyze_site("https://example.com")

        own_session.close.assert_awaited_once()
