# =============================================================================
# Source adapters: one class per external data vendor
# =============================================================================
#
# Every adapter exposes ``await adapter.fetch(context, ...)`` and returns a
# list of small normalized dicts. Vendor failures never escape ``fetch``:
# they are logged and the adapter answers with an empty list, so one bad
# vendor cannot take a run down with it. Adapters do no persistence.
#
# Vendors:
#   DataForSEO        : SERP, keyword metrics, competitor keywords, content
#                        sentiment, domain overview, backlinks, on-page,
#                        business info
#   Jina reader / HTML: competitor page crawl
#   PageSpeed Insights: Core Web Vitals
#   Google CSE        : news search
#   VoilaNorbert      : contact enrichment
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup

from competitors import normalize_domain
from config import Settings
from http_client import RequestFailedError, fetch_with_retry
from models import WorkflowContext

logger = logging.getLogger("intel-report.adapters")

PAGESPEED_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
CUSTOM_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
VOILANORBERT_URL = "https://api.voilanorbert.com/v2/search/person"

SERP_KEYWORD_LIMIT = 3
SERP_DEPTH = 50
SERP_RESULTS_PER_KEYWORD = 20
KEYWORD_METRIC_LIMIT = 20
COMPETITOR_KEYWORD_DOMAINS = 3
COMPETITOR_KEYWORD_LIMIT = 20
SENTIMENT_URL_LIMIT = 10
CRAWL_URL_LIMIT = 8
DOMAIN_ANALYTICS_LIMIT = 5
BACKLINK_LIMIT = 100
BUSINESS_DOMAIN_LIMIT = 5
NEWS_RESULTS = 5
CONTACT_LEAD_LIMIT = 3

TECH_KEYWORDS = [
    "React", "Vue", "Angular", "JavaScript", "TypeScript", "Node.js",
    "Python", "Django", "Flask", "Ruby", "Rails", "PHP", "Laravel",
    "WordPress", "Shopify", "WooCommerce", "Magento",
    "AWS", "Google Cloud", "Azure", "Cloudflare",
    "MongoDB", "PostgreSQL", "MySQL", "Redis",
    "Docker", "Kubernetes", "Next.js", "Gatsby", "Nuxt",
]

# Markup fingerprints that give a platform away even when the copy never names it
TECH_FINGERPRINTS = {
    "wp-content": "WordPress",
    "cdn.shopify.com": "Shopify",
    "__next": "Next.js",
    "__nuxt": "Nuxt",
    "data-reactroot": "React",
    "ng-version": "Angular",
    "gatsby": "Gatsby",
}

CTA_RE = re.compile(
    r"\b(get started|sign up|try free|free trial|book (?:a )?demo|contact us|learn more|download|subscribe|get a quote|request a quote)\b",
    re.IGNORECASE,
)


class MissingCredentialsError(Exception):
    """Raised inside an adapter when its vendor is not configured."""


# ---------------------------------------------------------------------------
# Small coercion helpers: vendor payloads are loosely typed
# ---------------------------------------------------------------------------

def _num(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# DataForSEO task-array protocol
# ---------------------------------------------------------------------------

class DataForSEOClient:
    """POSTs ``[task, ...]`` with Basic auth and unwraps ``tasks[].result[]``."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    async def post(self, endpoint: str, tasks: list[dict]) -> list[dict]:
        if not self.settings.has_dataforseo:
            raise MissingCredentialsError("DataForSEO credentials are missing")

        url = f"{self.settings.dataforseo_base_url.rstrip('/')}{endpoint}"
        auth = (self.settings.dataforseo_login, self.settings.dataforseo_password)
        response = await fetch_with_retry(
            lambda: self.http.post(url, json=tasks, auth=auth),
            retries=self.settings.http_retries,
            backoff=self.settings.http_backoff_seconds,
        )
        data = response.json()
        # DataForSEO answers 200 and reports failures in its own status codes
        if int(data.get("status_code") or 20000) >= 40000:
            raise RequestFailedError(int(data["status_code"]), url, str(data.get("status_message", "")))
        return data.get("tasks") or []

    async def result(self, endpoint: str, body: dict) -> dict:
        """Single-task helper: first result object of the first task, or {}."""
        tasks = await self.post(endpoint, [body])
        if not tasks:
            return {}
        task = tasks[0]
        if int(task.get("status_code") or 20000) >= 40000:
            raise RequestFailedError(int(task["status_code"]), endpoint, str(task.get("status_message", "")))
        results = task.get("result") or []
        return (results[0] or {}) if results else {}

    async def items(self, endpoint: str, body: dict) -> list[dict]:
        return (await self.result(endpoint, body)).get("items") or []


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class SourceAdapter:
    name = "source"

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http
        self.dataforseo = DataForSEOClient(settings, http)

    async def fetch(self, context: WorkflowContext, *args, **kwargs) -> list[dict]:
        try:
            records = await self.collect(context, *args, **kwargs)
            logger.info(f"[{context.workflow_id}] {self.name}: {len(records)} records")
            return records
        except MissingCredentialsError as e:
            logger.warning(f"[{context.workflow_id}] {self.name} skipped: {e}")
        except Exception as e:
            logger.warning(f"[{context.workflow_id}] {self.name} failed, continuing with empty output: {e!r}")
        return []

    async def collect(self, context: WorkflowContext, *args, **kwargs) -> list[dict]:
        raise NotImplementedError

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        return await fetch_with_retry(
            lambda: self.http.get(url, **kwargs),
            retries=self.settings.http_retries,
            backoff=self.settings.http_backoff_seconds,
        )

    def _locale(self, context: WorkflowContext) -> dict:
        return {"location_name": context.location, "language_name": "English"}


async def _settle(coros) -> list:
    """Run concurrently, keep what succeeded."""
    results = await asyncio.gather(*coros, return_exceptions=True)
    kept = []
    for result in results:
        if isinstance(result, BaseException):
            logger.debug(f"sub-request dropped: {result!r}")
            continue
        if result:
            kept.append(result)
    return kept


# ---------------------------------------------------------------------------
# SERP rankings
# ---------------------------------------------------------------------------

def seed_keywords(context: WorkflowContext) -> list[str]:
    if context.target_keywords:
        return context.target_keywords[:SERP_KEYWORD_LIMIT]
    industry = context.industry
    seeds = [
        industry,
        f"{industry} services",
        f"{industry} {context.location}",
        f"best {industry}",
        f"top {industry} companies",
    ]
    return seeds[:SERP_KEYWORD_LIMIT]


class SerpAdapter(SourceAdapter):
    name = "serp"

    async def collect(self, context: WorkflowContext, competitors: Optional[list[str]] = None) -> list[dict]:
        if not self.settings.has_dataforseo:
            raise MissingCredentialsError("DataForSEO credentials are missing")

        keywords = seed_keywords(context)
        batches = await asyncio.gather(
            *[self._keyword(context, kw) for kw in keywords], return_exceptions=True
        )

        records: list[dict] = []
        for keyword, batch in zip(keywords, batches):
            if isinstance(batch, Exception):
                logger.warning(f"[{context.workflow_id}] SERP lookup for '{keyword}' failed: {batch!r}")
                continue
            records.extend(batch)
        return records

    async def _keyword(self, context: WorkflowContext, keyword: str) -> list[dict]:
        items = await self.dataforseo.items(
            "/v3/serp/google/organic/live/advanced",
            {"keyword": keyword, "depth": SERP_DEPTH, **self._locale(context)},
        )
        target = context.target_domain
        rows = []
        for index, item in enumerate(i for i in items if i.get("type", "organic") == "organic"):
            url = item.get("url")
            if not url:
                continue
            domain = normalize_domain(item.get("domain") or url)
            rows.append({
                "search_engine": "google",
                "keyword": keyword,
                "position": int(item.get("rank_absolute") or item.get("rank_group") or index + 1),
                "url": url,
                "domain": domain,
                "title": item.get("title") or "",
                "is_target": domain == target,
            })
            if len(rows) >= SERP_RESULTS_PER_KEYWORD:
                break
        return rows


# ---------------------------------------------------------------------------
# Keyword metrics
# ---------------------------------------------------------------------------

def _keyword_metric(item: dict) -> Optional[dict]:
    data = item.get("keyword_data") or item
    keyword = data.get("keyword")
    if not keyword:
        return None
    info = data.get("keyword_info") or {}
    props = data.get("keyword_properties") or {}
    impressions = data.get("impressions_info") or {}
    return {
        "keyword": keyword,
        "volume": int(_num(info.get("search_volume"))),
        "cpc": _num(info.get("cpc")),
        "difficulty": _num(props.get("keyword_difficulty"), 50.0),
        "ctr_potential": _clamp(_num(impressions.get("ctr")) / 100, 0.0, 1.0),
    }


class KeywordMetricsAdapter(SourceAdapter):
    """
    User keywords → keyword overview.
    Otherwise discover what the site already ranks for; if that turns up
    nothing, expand the industry name as a single seed keyword.
    """

    name = "keyword_metrics"

    async def collect(self, context: WorkflowContext) -> list[dict]:
        locale = self._locale(context)

        if context.target_keywords:
            items = await self.dataforseo.items(
                "/v3/dataforseo_labs/google/keyword_overview/live",
                {"keywords": context.target_keywords, **locale},
            )
        else:
            items = await self.dataforseo.items(
                "/v3/dataforseo_labs/google/keywords_for_site/live",
                {"target": context.target_domain, "limit": 50, **locale},
            )
            if not items:
                logger.info(f"[{context.workflow_id}] keyword discovery empty, falling back to '{context.industry}'")
                items = await self.dataforseo.items(
                    "/v3/dataforseo_labs/google/keyword_suggestions/live",
                    {"keyword": context.industry, "limit": 50, "include_seed_keyword": True, **locale},
                )

        metrics = [m for m in (_keyword_metric(i) for i in items) if m]
        return metrics[:KEYWORD_METRIC_LIMIT]


class CompetitorKeywordsAdapter(SourceAdapter):
    name = "competitor_keywords"

    async def collect(self, context: WorkflowContext, competitors: list[str]) -> list[dict]:
        if not competitors:
            return []
        if not self.settings.has_dataforseo:
            raise MissingCredentialsError("DataForSEO credentials are missing")
        return await _settle(
            [self._domain(context, d) for d in competitors[:COMPETITOR_KEYWORD_DOMAINS]]
        )

    async def _domain(self, context: WorkflowContext, domain: str) -> dict:
        result = await self.dataforseo.result(
            "/v3/dataforseo_labs/google/ranked_keywords/live",
            {"target": domain, "limit": 100, **self._locale(context)},
        )
        items = result.get("items") or []
        keywords = []
        for item in items[:COMPETITOR_KEYWORD_LIMIT]:
            data = item.get("keyword_data") or {}
            serp_item = (item.get("ranked_serp_element") or {}).get("serp_item") or {}
            keywords.append({
                "keyword": data.get("keyword"),
                "search_volume": int(_num((data.get("keyword_info") or {}).get("search_volume"))),
                "position": serp_item.get("rank_absolute"),
            })
        return {
            "domain": domain,
            "keywords": keywords,
            "total_keywords": int(_num(result.get("total_count"), len(items))),
        }


# ---------------------------------------------------------------------------
# Content sentiment
# ---------------------------------------------------------------------------

def _tone(sentiment: dict) -> str:
    if sentiment.get("tone"):
        return str(sentiment["tone"])
    scores = {k: _num(sentiment.get(k), -1) for k in ("positive", "negative", "neutral")}
    best = max(scores, key=scores.get)
    return best if scores[best] >= 0 else "neutral"


class ContentSentimentAdapter(SourceAdapter):
    name = "content_sentiment"

    async def collect(self, context: WorkflowContext, serp_results: list[dict]) -> list[dict]:
        urls = list(dict.fromkeys(r["url"] for r in serp_results if r.get("url")))[:SENTIMENT_URL_LIMIT]
        if not urls:
            return []

        tasks = await self.dataforseo.post(
            "/v3/content_analysis/sentiment_analysis/live",
            [{"url": url, "tags": ["sentiment", "topics"]} for url in urls],
        )

        records = []
        for url, task in zip(urls, tasks):
            if int(task.get("status_code") or 20000) >= 40000:
                continue
            for entry in task.get("result") or []:
                if not entry:
                    continue
                sentiment = entry.get("sentiment") or {}
                categories = entry.get("categories") or []
                label = (categories[0].get("name") if categories and isinstance(categories[0], dict) else None)
                records.append({
                    "source": entry.get("url") or url,
                    "label": label or entry.get("url") or url,
                    "score": _clamp(_num(sentiment.get("score"), 50.0), 0.0, 100.0),
                    "tone": _tone(sentiment),
                    "sentiment": sentiment,
                })
        return records


# ---------------------------------------------------------------------------
# Competitor crawl: Jina reader first, plain HTML as fallback
# ---------------------------------------------------------------------------

def detect_technologies(text: str) -> list[str]:
    lowered = text.lower()
    found = [tech for tech in TECH_KEYWORDS if tech.lower() in lowered]
    for marker, tech in TECH_FINGERPRINTS.items():
        if marker in lowered and tech not in found:
            found.append(tech)
    return found[:10]


def extract_ctas(text: str) -> list[str]:
    seen = []
    for match in CTA_RE.finditer(text):
        phrase = match.group(0).strip()
        if phrase.lower() not in (s.lower() for s in seen):
            seen.append(phrase)
    return seen[:5]


def parse_markdown_page(url: str, markdown: str) -> dict:
    """Jina returns the page as markdown; pull out the bits we report on."""
    title_match = re.search(r"^(?:Title:|#)\s+(.+)$", markdown, re.MULTILINE)
    headings = [h.strip() for h in re.findall(r"^#{1,6}\s+(.+)$", markdown, re.MULTILINE)]
    content = re.sub(r"\s+", " ", markdown).strip()[:2000]
    first_sentence = re.split(r"[.!?]+", content, maxsplit=1)[0].strip()
    meta = first_sentence if 20 < len(first_sentence) < 160 else content[:150].strip()
    return {
        "url": url,
        "title": title_match.group(1).strip() if title_match else "",
        "headings": headings[:15],
        "content": content,
        "meta_description": meta,
        "technologies": detect_technologies(markdown),
        "ctas": extract_ctas(markdown),
        "source": "jina",
    }


def parse_html_page(url: str, html: str) -> dict:
    soup = BeautifulSoup(html, "html.parser")
    fingerprints = detect_technologies(html)

    for tag in soup(["script", "style", "noscript", "iframe"]):
        tag.decompose()

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    meta_tag = soup.find("meta", attrs={"name": "description"})
    meta = meta_tag["content"].strip() if meta_tag and meta_tag.get("content") else ""

    headings = []
    for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = tag.get_text(strip=True)
        if text:
            headings.append(text)

    button_text = " | ".join(
        el.get_text(" ", strip=True) for el in soup.find_all(["a", "button"]) if el.get_text(strip=True)
    )
    body_text = soup.get_text(separator=" ", strip=True)

    return {
        "url": url,
        "title": title,
        "headings": headings[:10],
        "content": body_text[:2000],
        "meta_description": meta,
        "technologies": fingerprints,
        "ctas": extract_ctas(button_text),
        "source": "html",
    }


class CrawlInsightsAdapter(SourceAdapter):
    name = "crawl_insights"

    async def collect(self, context: WorkflowContext, serp_results: list[dict]) -> list[dict]:
        target = context.target_domain
        urls = list(dict.fromkeys(
            r["url"] for r in serp_results
            if r.get("url") and normalize_domain(r["url"]) != target
        ))[:CRAWL_URL_LIMIT]
        if not urls:
            return []
        pages = await asyncio.gather(*[self._page(context, u) for u in urls])
        return [p for p in pages if p]

    async def _page(self, context: WorkflowContext, url: str) -> Optional[dict]:
        try:
            return await self._jina(url)
        except Exception as e:
            logger.info(f"[{context.workflow_id}] Jina reader failed for {url} ({e!r}), trying direct fetch")
        try:
            resp = await self._get(url, timeout=15.0)
            return parse_html_page(url, resp.text)
        except Exception as e:
            logger.warning(f"[{context.workflow_id}] Crawl failed for {url}: {e!r}")
            return None

    async def _jina(self, url: str) -> dict:
        headers = {"Accept": "text/plain, text/markdown"}
        if self.settings.jina_api_key:
            headers["Authorization"] = f"Bearer {self.settings.jina_api_key}"
        resp = await self._get(f"{self.settings.jina_reader_url}{url}", headers=headers, timeout=20.0)
        if not resp.text.strip():
            raise ValueError("empty reader response")
        return parse_markdown_page(url, resp.text)


# ---------------------------------------------------------------------------
# Domain analytics
# ---------------------------------------------------------------------------

class DomainAnalyticsAdapter(SourceAdapter):
    name = "domain_analytics"

    async def collect(
        self,
        context: WorkflowContext,
        serp_results: list[dict],
        competitors: Optional[list[str]] = None,
    ) -> list[dict]:
        target = context.target_domain
        candidates = list(competitors or []) + [r.get("domain") or normalize_domain(r.get("url", "")) for r in serp_results]
        domains = []
        for d in candidates:
            d = normalize_domain(d) if d else ""
            if d and d != target and d not in domains:
                domains.append(d)
        domains = domains[:DOMAIN_ANALYTICS_LIMIT]
        if not domains:
            return []
        if not self.settings.has_dataforseo:
            raise MissingCredentialsError("DataForSEO credentials are missing")
        return await _settle([self._domain(context, d) for d in domains])

    async def _domain(self, context: WorkflowContext, domain: str) -> Optional[dict]:
        result = await self.dataforseo.result(
            "/v3/dataforseo_labs/google/domain_rank_overview/live",
            {"target": domain, **self._locale(context)},
        )
        if not result:
            return None
        item = (result.get("items") or [result])[0] or {}
        organic = (item.get("metrics") or {}).get("organic") or {}
        technologies = result.get("technologies") or item.get("technologies") or []
        return {
            "target": result.get("target") or domain,
            "traffic": _num(result.get("organic_traffic") or organic.get("etv")),
            "keywords": int(_num(organic.get("count"))),
            "technologies": [t.get("name") if isinstance(t, dict) else str(t) for t in technologies if t],
        }


# ---------------------------------------------------------------------------
# Backlinks
# ---------------------------------------------------------------------------

class BacklinkAdapter(SourceAdapter):
    name = "backlinks"

    async def collect(self, context: WorkflowContext) -> list[dict]:
        items = await self.dataforseo.items(
            "/v3/backlinks/backlinks/live",
            {"target": context.target_domain, "limit": BACKLINK_LIMIT, "mode": "one_per_domain", "rank_scale": "one_hundred"},
        )
        records = []
        for item in items:
            source = item.get("source_domain") or item.get("domain_from")
            if not source:
                continue
            records.append({
                "source": source,
                "authority": _clamp(_num(item.get("source_trust_score", item.get("domain_from_rank"))), 0.0, 100.0),
                "anchor_text": item.get("anchor_text") or item.get("anchor") or "",
            })
        return records


# ---------------------------------------------------------------------------
# On-page audit (instant pages, no task polling)
# ---------------------------------------------------------------------------

class OnPageAuditAdapter(SourceAdapter):
    name = "onpage"

    async def collect(self, context: WorkflowContext) -> list[dict]:
        items = await self.dataforseo.items(
            "/v3/on_page/instant_pages",
            {"url": context.website_url, "enable_javascript": False},
        )
        if not items:
            return []
        page = items[0]
        checks = page.get("checks") or {}
        meta = page.get("meta") or {}
        return [{
            "url": page.get("url") or context.website_url,
            "onpage_score": _num(page.get("onpage_score")),
            "status_code": page.get("status_code"),
            "failed_checks": sorted(
                k for k, v in checks.items()
                if (v is True and k.startswith("no_")) or (v is False and k.startswith("has_"))
            ),
            "checks": checks,
            "meta": {
                "title": meta.get("title"),
                "description": meta.get("description"),
                "internal_links_count": meta.get("internal_links_count"),
                "external_links_count": meta.get("external_links_count"),
            },
        }]


# ---------------------------------------------------------------------------
# PageSpeed Insights
# ---------------------------------------------------------------------------

CORE_WEB_VITALS = [
    ("lcp", "Largest Contentful Paint (ms)", "largest-contentful-paint"),
    ("fid", "First Input Delay (ms)", "max-potential-fid"),
    ("cls", "Cumulative Layout Shift", "cumulative-layout-shift"),
]


def build_core_web_vitals(pagespeed: list[dict]) -> list[dict]:
    """Pivot per-strategy metrics into {metric, desktop, mobile} rows."""
    if not pagespeed:
        return []
    by_strategy = {entry.get("strategy"): entry.get("metrics") or {} for entry in pagespeed}
    desktop = by_strategy.get("DESKTOP", {})
    mobile = by_strategy.get("MOBILE", {})
    return [
        {"metric": label, "desktop": _num(desktop.get(key)), "mobile": _num(mobile.get(key))}
        for key, label, _audit in CORE_WEB_VITALS
    ]


class PageSpeedAdapter(SourceAdapter):
    name = "pagespeed"

    async def collect(self, context: WorkflowContext) -> list[dict]:
        if not self.settings.pagespeed_api_key:
            raise MissingCredentialsError("PAGESPEED_API_KEY is missing")
        results = await asyncio.gather(
            self._strategy(context, "DESKTOP"),
            self._strategy(context, "MOBILE"),
            return_exceptions=True,
        )
        kept = []
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"[{context.workflow_id}] PageSpeed strategy failed: {result!r}")
                continue
            kept.append(result)
        return kept

    async def _strategy(self, context: WorkflowContext, strategy: str) -> dict:
        resp = await self._get(
            PAGESPEED_URL,
            params={"url": context.website_url, "strategy": strategy, "key": self.settings.pagespeed_api_key},
            timeout=60.0,
        )
        lighthouse = resp.json().get("lighthouseResult") or {}
        audits = lighthouse.get("audits") or {}
        performance = ((lighthouse.get("categories") or {}).get("performance") or {}).get("score")
        metrics = {key: (audits.get(audit_id) or {}).get("numericValue") for key, _label, audit_id in CORE_WEB_VITALS}
        return {
            "strategy": strategy,
            "performance_score": round(_num(performance) * 100),
            "metrics": metrics,
            "payload": {
                "final_url": lighthouse.get("finalUrl"),
                "fetch_time": lighthouse.get("fetchTime"),
                "performance_score": performance,
                "metrics": metrics,
            },
        }


# ---------------------------------------------------------------------------
# Business data
# ---------------------------------------------------------------------------

class BusinessDataAdapter(SourceAdapter):
    name = "business_data"

    async def collect(self, context: WorkflowContext, domain_analytics: list[dict]) -> list[dict]:
        domains = [d["target"] for d in domain_analytics if d.get("target")][:BUSINESS_DOMAIN_LIMIT]
        if not domains:
            return []
        tasks = await self.dataforseo.post(
            "/v3/business_data/business_info/live",
            [{"keyword": domain, **self._locale(context)} for domain in domains],
        )
        records = []
        for domain, task in zip(domains, tasks):
            results = task.get("result") or []
            if int(task.get("status_code") or 20000) >= 40000 or not results or not results[0]:
                continue
            result = results[0]
            item = (result.get("items") or [result])[0] or {}
            address = item.get("address")
            records.append({
                "target": result.get("target") or domain,
                "company": item.get("company_name") or item.get("title"),
                "revenue": item.get("revenue_estimate"),
                "employees": item.get("employee_count"),
                "locations": item.get("locations") or ([address] if address else []),
            })
        return records


# ---------------------------------------------------------------------------
# News search + contact enrichment
# ---------------------------------------------------------------------------

class NewsSearchAdapter(SourceAdapter):
    name = "news"

    async def collect(self, context: WorkflowContext) -> list[dict]:
        if not (self.settings.google_search_api_key and self.settings.google_search_cse_id):
            raise MissingCredentialsError("Custom search credentials are missing")
        resp = await self._get(
            CUSTOM_SEARCH_URL,
            params={
                "key": self.settings.google_search_api_key,
                "cx": self.settings.google_search_cse_id,
                "q": f"{context.industry} news site:{context.target_domain}",
                "num": NEWS_RESULTS,
            },
        )
        return [
            {
                "title": item.get("title", ""),
                "link": item.get("link", ""),
                "snippet": item.get("snippet", ""),
                "display_link": item.get("displayLink", ""),
            }
            for item in (resp.json().get("items") or [])
        ]


class ContactEnrichmentAdapter(SourceAdapter):
    name = "contacts"

    async def collect(self, context: WorkflowContext, news: list[dict]) -> list[dict]:
        if not self.settings.voilanorbert_api_key:
            raise MissingCredentialsError("VOILANORBERT_API_KEY is missing")
        leads = [n["title"] for n in news if n.get("title")][:CONTACT_LEAD_LIMIT]
        if not leads:
            return []
        return await _settle([self._lead(context, lead) for lead in leads])

    async def _lead(self, context: WorkflowContext, lead: str) -> Optional[dict]:
        resp = await fetch_with_retry(
            lambda: self.http.post(
                VOILANORBERT_URL,
                json={"company": context.target_domain, "name": lead},
                headers={"X-Api-Key": self.settings.voilanorbert_api_key},
            ),
            retries=self.settings.http_retries,
            backoff=self.settings.http_backoff_seconds,
        )
        body = resp.json()
        if not isinstance(body, dict) or not body:
            return None
        return {"lead": lead, **body}


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------

@dataclass
class AdapterSet:
    serp: SerpAdapter
    keywords: KeywordMetricsAdapter
    competitor_keywords: CompetitorKeywordsAdapter
    content_sentiment: ContentSentimentAdapter
    crawl: CrawlInsightsAdapter
    domain_analytics: DomainAnalyticsAdapter
    backlinks: BacklinkAdapter
    onpage: OnPageAuditAdapter
    pagespeed: PageSpeedAdapter
    business_data: BusinessDataAdapter
    news: NewsSearchAdapter
    contacts: ContactEnrichmentAdapter


def build_adapters(settings: Settings, http: httpx.AsyncClient) -> AdapterSet:
    return AdapterSet(
        serp=SerpAdapter(settings, http),
        keywords=KeywordMetricsAdapter(settings, http),
        competitor_keywords=CompetitorKeywordsAdapter(settings, http),
        content_sentiment=ContentSentimentAdapter(settings, http),
        crawl=CrawlInsightsAdapter(settings, http),
        domain_analytics=DomainAnalyticsAdapter(settings, http),
        backlinks=BacklinkAdapter(settings, http),
        onpage=OnPageAuditAdapter(settings, http),
        pagespeed=PageSpeedAdapter(settings, http),
        business_data=BusinessDataAdapter(settings, http),
        news=NewsSearchAdapter(settings, http),
        contacts=ContactEnrichmentAdapter(settings, http),
    )
