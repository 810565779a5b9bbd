"""
competitors.py: competitor discovery and the SERP-derived aggregates.

Discovery order: domains the user gave us, then DataForSEO's competitor
list, then a model suggestion. The target's own domain is excluded by exact
match after normalisation, never by substring.
"""

import logging
import re
from collections import defaultdict
from datetime import date
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger("intel-report.competitors")

MAX_COMPETITORS = 5

_DOMAIN_RE = re.compile(r"\b((?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,})\b", re.IGNORECASE)

SUGGEST_SYSTEM = (
    "You are a market research analyst. Reply with bare domain names only, "
    "one per line, no commentary."
)

SUGGEST_PROMPT = """List the {limit} strongest online competitors for this business.

WEBSITE: {website}
INDUSTRY: {industry}
LOCATION: {location}

Do not include {domain} itself."""


def normalize_domain(value: Optional[str]) -> str:
    """'https://WWW.Example.com:443/path' -> 'example.com'."""
    if not value:
        return ""
    value = value.strip().lower()
    if "://" not in value:
        value = "//" + value
    host = urlparse(value).hostname or ""
    host = host.rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def parse_domains(text: str) -> list[str]:
    """Bare domains mentioned in free text, normalised, in order of appearance."""
    found = []
    for match in _DOMAIN_RE.finditer(text or ""):
        domain = normalize_domain(match.group(1))
        if domain and domain not in found:
            found.append(domain)
    return found


def _merge(domains, target: str, into: list[str], limit: int) -> None:
    for raw in domains:
        domain = normalize_domain(raw)
        if not domain or domain == target or domain in into:
            continue
        into.append(domain)
        if len(into) >= limit:
            return


class CompetitorDiscovery:
    """
    ``dataforseo`` is an adapters.DataForSEOClient and ``llm`` a ClaudeClient;
    either may be None. ``discover`` never raises.
    """

    def __init__(self, dataforseo=None, llm=None, limit: int = MAX_COMPETITORS):
        self.dataforseo = dataforseo
        self.llm = llm
        self.limit = limit

    async def discover(self, context) -> list[str]:
        target = normalize_domain(context.website_url)
        competitors: list[str] = []

        _merge(context.competitor_domains, target, competitors, self.limit)
        if len(competitors) >= self.limit:
            return competitors

        if self.dataforseo is not None:
            try:
                items = await self.dataforseo.items(
                    "/v3/dataforseo_labs/google/competitors_domain/live",
                    {
                        "target": target,
                        "location_name": context.location,
                        "language_name": "English",
                        "limit": 10,
                    },
                )
                _merge((i.get("domain") for i in items), target, competitors, self.limit)
            except Exception as e:
                logger.warning(f"[{context.workflow_id}] Competitor lookup failed: {e!r}")

        if not competitors and self.llm is not None:
            try:
                text = await self.llm.complete(
                    SUGGEST_SYSTEM,
                    SUGGEST_PROMPT.format(
                        limit=self.limit,
                        website=context.website_url,
                        industry=context.industry,
                        location=context.location,
                        domain=target,
                    ),
                    max_tokens=300,
                )
                _merge(parse_domains(text), target, competitors, self.limit)
            except Exception as e:
                logger.warning(f"[{context.workflow_id}] Competitor suggestion failed: {e!r}")

        logger.info(f"[{context.workflow_id}] Competitors: {', '.join(competitors) or 'none'}")
        return competitors


# ---------------------------------------------------------------------------
# SERP aggregates
# ---------------------------------------------------------------------------

def build_serp_share_timeline(serp_results: list[dict], captured_on: Optional[date] = None) -> list[dict]:
    """
    Share of voice per keyword for one capture date.

    Every tracked result adds 10 to the keyword's denominator and target
    results add max(0, 11 - position) to the numerator.
    """
    day = (captured_on or date.today()).isoformat()
    grouped: dict[str, dict] = {}
    for result in serp_results:
        entry = grouped.setdefault(result["keyword"], {"appearances": 0, "total": 0})
        if result.get("is_target") and result.get("position"):
            entry["appearances"] += max(0, 11 - int(result["position"]))
        entry["total"] += 10

    return [
        {
            "captured_at": day,
            "keyword": keyword,
            "share_of_voice": round(value["appearances"] / value["total"] * 100, 2) if value["total"] else 0.0,
        }
        for keyword, value in grouped.items()
    ]


def build_competitive_insights(serp_results: list[dict], competitors: list[str]) -> dict:
    tracked = set(competitors)
    leaders: dict[str, dict] = {}
    overlap: dict[str, list[str]] = defaultdict(list)
    counts: dict[str, int] = defaultdict(int)

    for result in serp_results:
        domain = result.get("domain") or normalize_domain(result.get("url"))
        counts[domain] += 1
        if domain not in tracked:
            continue
        stats = leaders.setdefault(domain, {"appearances": 0, "position_sum": 0})
        stats["appearances"] += 1
        stats["position_sum"] += int(result.get("position") or 0)
        if domain not in overlap[result["keyword"]]:
            overlap[result["keyword"]].append(domain)

    top = sorted(
        (
            {
                "domain": domain,
                "appearances": s["appearances"],
                "avg_position": round(s["position_sum"] / s["appearances"], 1),
            }
            for domain, s in leaders.items()
        ),
        key=lambda row: (-row["appearances"], row["avg_position"]),
    )[:5]

    total = len(serp_results)
    market_share = sorted(
        (
            {
                "domain": domain,
                "market_share": round(count / total * 100, 2),
                "serp_appearances": count,
            }
            for domain, count in counts.items()
        ),
        key=lambda row: -row["market_share"],
    )[:10] if total else []

    return {
        "top_competitors": top,
        "competitive_keywords": [
            {"keyword": kw, "domains": domains}
            for kw, domains in overlap.items()
            if len(domains) > 1
        ][:10],
        "market_share": market_share,
    }
