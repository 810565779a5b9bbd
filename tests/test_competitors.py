"""Tests for competitor discovery and the SERP aggregates."""

from datetime import date
from unittest.mock import AsyncMock, Mock

import pytest

from competitors import (
    CompetitorDiscovery,
    build_competitive_insights,
    build_serp_share_timeline,
    normalize_domain,
    parse_domains,
)


@pytest.mark.parametrize("raw, expected", [
    ("https://WWW.Example.com:443/path?q=1", "example.com"),
    ("example.com", "example.com"),
    ("www.example.com.", "example.com"),
    ("http://shop.example.com", "shop.example.com"),
    ("", ""),
    (None, ""),
])
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected


def test_parse_domains_from_model_text():
    text = "Here you go:\n1. HubSpot.com\n2. www.salesforce.com\n3. hubspot.com\n4. pipedrive.com"
    assert parse_domains(text) == ["hubspot.com", "salesforce.com", "pipedrive.com"]


class TestCompetitorDiscovery:
    @pytest.mark.asyncio
    async def test_target_excluded_by_exact_match_only(self, context):
        dataforseo = Mock()
        dataforseo.items = AsyncMock(return_value=[
            {"domain": "www.example.com"},
            {"domain": "notexample.com"},
            {"domain": "shop.example.com"},
        ])

        found = await CompetitorDiscovery(dataforseo, None).discover(context)

        assert found == ["notexample.com", "shop.example.com"]

    @pytest.mark.asyncio
    async def test_user_domains_first_and_capped(self, context):
        context.competitor_domains = ["https://rival.com", "Example.com", "other.io"]
        dataforseo = Mock()
        dataforseo.items = AsyncMock(return_value=[{"domain": f"d{i}.com"} for i in range(10)])

        found = await CompetitorDiscovery(dataforseo, None).discover(context)

        assert found == ["rival.com", "other.io", "d0.com", "d1.com", "d2.com"]
        assert len(found) == 5

    @pytest.mark.asyncio
    async def test_enough_user_domains_skip_lookup(self, context):
        context.competitor_domains = [f"r{i}.com" for i in range(6)]
        dataforseo = Mock()
        dataforseo.items = AsyncMock()

        found = await CompetitorDiscovery(dataforseo, None).discover(context)

        assert len(found) == 5
        dataforseo.items.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_fallback_when_nothing_found(self, context):
        dataforseo = Mock()
        dataforseo.items = AsyncMock(side_effect=RuntimeError("vendor down"))
        llm = Mock()
        llm.complete = AsyncMock(return_value="example.com\nrival.com\nother.io")

        found = await CompetitorDiscovery(dataforseo, llm).discover(context)

        assert found == ["rival.com", "other.io"]
        llm.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_never_raises(self, context):
        llm = Mock()
        llm.complete = AsyncMock(side_effect=RuntimeError("model down"))
        assert await CompetitorDiscovery(None, llm).discover(context) == []


class TestSerpShareTimeline:
    def test_only_target_rows_count(self):
        serp = [
            {"keyword": "crm", "position": 1, "is_target": True},
            {"keyword": "crm", "position": 2, "is_target": False},
            {"keyword": "crm tools", "position": 15, "is_target": True},
        ]
        timeline = build_serp_share_timeline(serp, captured_on=date(2026, 10, 1))
        assert timeline == [
            {"captured_at": "2026-10-01", "keyword": "crm", "share_of_voice": 50.0},
            {"captured_at": "2026-10-01", "keyword": "crm tools", "share_of_voice": 0.0},
        ]

    def test_empty(self):
        assert build_serp_share_timeline([]) == []


class TestCompetitiveInsights:
    def test_leaders_overlap_and_share(self):
        serp = [
            {"keyword": "crm", "position": 1, "domain": "rival.com"},
            {"keyword": "crm", "position": 3, "domain": "other.io"},
            {"keyword": "crm", "position": 4, "domain": "example.com"},
            {"keyword": "crm tools", "position": 5, "domain": "rival.com"},
        ]
        insights = build_competitive_insights(serp, ["rival.com", "other.io"])

        assert insights["top_competitors"][0] == {"domain": "rival.com", "appearances": 2, "avg_position": 3.0}
        assert insights["competitive_keywords"] == [{"keyword": "crm", "domains": ["rival.com", "other.io"]}]
        shares = {row["domain"]: row["market_share"] for row in insights["market_share"]}
        assert shares == {"rival.com": 50.0, "other.io": 25.0, "example.com": 25.0}

    def test_no_serp_data(self):
        assert build_competitive_insights([], ["rival.com"]) == {
            "top_competitors": [],
            "competitive_keywords": [],
            "market_share": [],
        }
