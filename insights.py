# =============================================================================
# Insight synthesis: report payload + LLM narrative
# =============================================================================
#
#   1. build_report_payload() : every stage output folded into the report shape
#   2. brand sentiment         : Perplexity fills an empty sentiment section
#   3. breaking insights       : Perplexity, best effort, "" on any failure
#   4. primary narrative       : Claude, strict JSON; the only fatal call
#
# Parsing the primary reply never raises: invalid JSON becomes the executive
# summary verbatim with no recommendations.
# =============================================================================

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from competitors import normalize_domain
from errors import LLMError
from llm import ClaudeClient, PerplexityClient, extract_json, strip_code_fences
from models import WorkflowContext

logger = logging.getLogger("intel-report.insights")

PAYLOAD_VERSION = 2

PRIMARY_SYSTEM = (
    "You are a senior marketing intelligence analyst. Analyze the provided data and respond "
    "with well-structured JSON containing executive_summary (string) and recommendations "
    "(array of objects with title, description, and confidence fields, confidence between 0 and 1). "
    "Return ONLY raw JSON. No markdown, no code fences, no commentary."
)

PRIMARY_PROMPT = """Analyze this marketing intelligence data for {website} ({industry}, {location}) and provide actionable business insights.

## Data collected {captured_at}
- {keyword_count} keywords, {backlink_count} backlinks, {vitals_count} performance metrics

## SERP share of voice
{serp_section}

## Keyword opportunities
{keyword_section}

## Backlink profile
{backlink_section}

## Technical performance
{vitals_section}

## Brand sentiment
{sentiment_section}

## Competitor technology
{tech_section}

## Competitive landscape
{competitive_section}
{market_section}
Respond with JSON:
{{
  "executive_summary": "3-4 paragraphs: key findings, biggest growth areas, quantified impact where possible",
  "recommendations": [
    {{"title": "...", "description": "expected outcome and how to implement", "confidence": 0.0}}
  ]
}}
Give 4-6 recommendations that can move measurable results within 90 days."""

SENTIMENT_PROMPT = """Analyze brand sentiment and perception for {website} in the {industry} industry ({location}).
Use online reviews, social media mentions, news coverage and customer feedback.
Score each category 0-100 (100 = most positive):
Brand Reputation, Product/Service Quality, Customer Service, Innovation & Technology, Value for Money, Trust & Reliability.

Respond with ONLY a JSON array like [{{"label": "Brand Reputation", "score": 75}}]."""

BREAKING_PROMPT = """Research recent developments, competitive moves and news relevant to a {industry} business at {website} in {location}.
Competitors: {competitors}.
Respond with concise JSON with keys "breaking_insights" (array of strings) and "sources" (array of URLs)."""


@dataclass
class SynthesisInputs:
    context: WorkflowContext
    competitors: list = field(default_factory=list)
    serp_results: list = field(default_factory=list)
    serp_timeline: list = field(default_factory=list)
    keyword_metrics: list = field(default_factory=list)
    competitor_keywords: list = field(default_factory=list)
    content_sentiment: list = field(default_factory=list)
    crawl_insights: list = field(default_factory=list)
    domain_analytics: list = field(default_factory=list)
    backlinks: list = field(default_factory=list)
    onpage: list = field(default_factory=list)
    core_web_vitals: list = field(default_factory=list)
    business_data: list = field(default_factory=list)
    news: list = field(default_factory=list)
    contacts: list = field(default_factory=list)
    competitive: dict = field(default_factory=dict)


@dataclass
class SynthesisResult:
    provider: str
    summary: str
    payload: dict
    breaking_insights: str = ""


# ---------------------------------------------------------------------------
# Payload assembly
# ---------------------------------------------------------------------------

def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def clamp_confidence(value: Any) -> float:
    """Confidence always lands in [0, 1]; 0-100 style scores are rescaled."""
    c = _num(value, 0.0)
    if c > 1.0:
        c = c / 100.0 if c <= 100.0 else 1.0
    return round(max(0.0, min(1.0, c)), 3)


def _tech_stack(inputs: SynthesisInputs) -> list[dict]:
    target = inputs.context.target_domain
    by_domain: dict[str, list[str]] = {}

    for page in inputs.crawl_insights:
        domain = normalize_domain(page.get("url"))
        if domain and domain != target:
            by_domain.setdefault(domain, [])
            for tech in page.get("technologies") or []:
                if tech not in by_domain[domain]:
                    by_domain[domain].append(tech)
    for row in inputs.domain_analytics:
        domain = normalize_domain(row.get("target"))
        if domain and domain != target:
            by_domain.setdefault(domain, [])
            for tech in row.get("technologies") or []:
                if tech not in by_domain[domain]:
                    by_domain[domain].append(tech)

    ordered = [c for c in inputs.competitors if c in by_domain] + [d for d in by_domain if d not in inputs.competitors]
    if not ordered:
        ordered = list(inputs.competitors)
    return [{"competitor": d, "categories": by_domain.get(d, [])} for d in ordered[:5]]


def build_report_payload(inputs: SynthesisInputs, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    captured_at = now.isoformat()

    return {
        "summary": {
            "id": str(uuid.uuid4()),
            "captured_at": captured_at,
            "executive_summary": "",
            "recommendations": [],
        },
        "serpTimeline": [
            {
                "captured_at": p.get("captured_at") or captured_at,
                "keyword": p.get("keyword"),
                "share_of_voice": _num(p.get("share_of_voice")),
            }
            for p in inputs.serp_timeline
        ],
        "keywordOpportunities": [
            {
                "keyword": m.get("keyword") or "Unknown keyword",
                "volume": int(_num(m.get("volume"))),
                "difficulty": _num(m.get("difficulty")),
                "ctrPotential": _num(m.get("ctr_potential", m.get("ctrPotential"))),
            }
            for m in inputs.keyword_metrics
        ],
        "sentiment": [
            {"label": s.get("label") or s.get("source") or "Content Analysis",
             "score": max(0.0, min(100.0, _num(s.get("score"), 50.0)))}
            for s in inputs.content_sentiment
        ],
        "backlinks": [
            {
                "source": b.get("source") or "Unknown source",
                "authority": max(0.0, min(100.0, _num(b.get("authority")))),
                "anchorText": b.get("anchor_text") or b.get("anchorText") or "N/A",
            }
            for b in inputs.backlinks
        ],
        "coreWebVitals": [
            {"metric": v.get("metric") or "Unknown metric", "desktop": _num(v.get("desktop")), "mobile": _num(v.get("mobile"))}
            for v in inputs.core_web_vitals
        ],
        "techStack": _tech_stack(inputs),
    }


# ---------------------------------------------------------------------------
# Primary reply parsing
# ---------------------------------------------------------------------------

def parse_insight_response(raw: str) -> dict:
    """Claude's reply -> {executive_summary, recommendations}. Never raises."""
    body = strip_code_fences(raw or "")
    parsed = extract_json(body) if body else None

    if not isinstance(parsed, dict) or "executive_summary" not in parsed:
        return {"executive_summary": body, "recommendations": []}

    recommendations = []
    for rec in parsed.get("recommendations") or []:
        if not isinstance(rec, dict):
            continue
        recommendations.append({
            "title": str(rec.get("title") or "").strip(),
            "description": str(rec.get("description") or "").strip(),
            "confidence": clamp_confidence(rec.get("confidence")),
        })

    summary = parsed.get("executive_summary")
    if not isinstance(summary, str):
        summary = json.dumps(summary) if summary is not None else ""
    return {"executive_summary": summary, "recommendations": recommendations}


def _lines(rows, fmt, empty: str, limit: int = 6) -> str:
    rows = list(rows)[:limit]
    return "\n".join(fmt(r) for r in rows) if rows else f"- {empty}"


def build_primary_prompt(payload: dict, inputs: SynthesisInputs, breaking: str) -> str:
    ctx = inputs.context
    competitive = inputs.competitive or {}
    market = f"\n## Market intelligence\n{breaking}\n" if breaking else ""
    return PRIMARY_PROMPT.format(
        website=ctx.website_url,
        industry=ctx.industry,
        location=ctx.location,
        captured_at=payload["summary"]["captured_at"],
        keyword_count=len(payload["keywordOpportunities"]),
        backlink_count=len(payload["backlinks"]),
        vitals_count=len(payload["coreWebVitals"]),
        serp_section=_lines(
            payload["serpTimeline"],
            lambda p: f"- \"{p['keyword']}\": {p['share_of_voice']:.1f}% share of voice",
            "No SERP data, baseline not yet established",
        ),
        keyword_section=_lines(
            payload["keywordOpportunities"],
            lambda k: f"- \"{k['keyword']}\": {k['volume']:,} searches/mo, difficulty {k['difficulty']:.0f}, CTR potential {k['ctrPotential'] * 100:.1f}%",
            "No keyword data, recommend keyword research",
        ),
        backlink_section=_lines(
            payload["backlinks"],
            lambda b: f"- {b['source']} (authority {b['authority']:.0f}/100), anchor \"{b['anchorText']}\"",
            "No backlink data",
            limit=5,
        ),
        vitals_section=_lines(
            payload["coreWebVitals"],
            lambda v: f"- {v['metric']}: desktop {v['desktop']:.2f}, mobile {v['mobile']:.2f}",
            "No performance data",
        ),
        sentiment_section=_lines(
            payload["sentiment"],
            lambda s: f"- {s['label']}: {s['score']:.0f}/100",
            "No sentiment data",
            limit=4,
        ),
        tech_section=_lines(
            payload["techStack"],
            lambda t: f"- {t['competitor']}: {', '.join(t['categories']) or 'not identified'}",
            "No competitor technology data",
            limit=3,
        ),
        competitive_section=_lines(
            competitive.get("top_competitors") or [],
            lambda c: f"- {c['domain']}: {c['appearances']} SERP appearances, avg position {c['avg_position']}",
            "No competitor ranking data",
            limit=5,
        ),
        market_section=market,
    )


# ---------------------------------------------------------------------------
# Synthesizer
# ---------------------------------------------------------------------------

class InsightSynthesizer:
    def __init__(self, primary: ClaudeClient, secondary: Optional[PerplexityClient] = None):
        self.primary = primary
        self.secondary = secondary

    async def brand_sentiment(self, context: WorkflowContext) -> list[dict]:
        if self.secondary is None or not self.secondary.configured:
            return []
        try:
            text = await self.secondary.chat(SENTIMENT_PROMPT.format(
                website=context.website_url, industry=context.industry, location=context.location,
            ))
        except Exception as e:
            logger.warning(f"[{context.workflow_id}] Brand sentiment generation failed: {e!r}")
            return []
        parsed = extract_json(text)
        if not isinstance(parsed, list):
            return []
        return [
            {"label": str(item.get("label") or "Unknown"), "score": max(0.0, min(100.0, _num(item.get("score"), 50.0)))}
            for item in parsed
            if isinstance(item, dict)
        ]

    async def breaking_insights(self, inputs: SynthesisInputs) -> str:
        """Secondary model enrichment. Any failure is an empty string."""
        if self.secondary is None or not self.secondary.configured:
            return ""
        ctx = inputs.context
        try:
            text = await self.secondary.chat(BREAKING_PROMPT.format(
                industry=ctx.industry,
                website=ctx.website_url,
                location=ctx.location,
                competitors=", ".join(inputs.competitors) or "unknown",
            ))
            return strip_code_fences(text)
        except Exception as e:
            logger.warning(f"[{ctx.workflow_id}] Breaking insights skipped: {e!r}")
            return ""

    async def synthesize(self, inputs: SynthesisInputs) -> SynthesisResult:
        ctx = inputs.context
        payload = build_report_payload(inputs)

        if not payload["sentiment"]:
            payload["sentiment"] = await self.brand_sentiment(ctx)

        breaking = await self.breaking_insights(inputs)

        # LLMError propagates: primary failure fails the run
        raw = await self.primary.complete(PRIMARY_SYSTEM, build_primary_prompt(payload, inputs, breaking))
        if raw is None:
            raise LLMError("Empty response from primary model")

        narrative = parse_insight_response(raw)
        final = copy.deepcopy(payload)
        final["summary"]["executive_summary"] = narrative["executive_summary"]
        final["summary"]["recommendations"] = narrative["recommendations"]

        logger.info(
            f"[{ctx.workflow_id}] Synthesis done: {len(narrative['recommendations'])} recommendations, "
            f"breaking insights {'present' if breaking else 'absent'}"
        )
        return SynthesisResult(
            provider=self.primary.provider,
            summary=narrative["executive_summary"],
            payload=final,
            breaking_insights=breaking,
        )
