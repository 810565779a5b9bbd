"""
database.py: SQLAlchemy models and session management.

Uses PostgreSQL in production (via DATABASE_URL).
Falls back to SQLite locally so you can develop without Postgres.
"""

import json
import logging
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, create_engine, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import get_settings

logger = logging.getLogger("intel-report")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = get_settings().database_url


def make_engine(url: str, **kwargs):
    return create_engine(
        url,
        # SQLite needs this flag; ignored by Postgres
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,
        **kwargs,
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

RUN_STATUSES = ("queued", "running", "completed", "failed")
ACTIVE_STATUSES = ("queued", "running")
TERMINAL_STATUSES = ("completed", "failed")


def new_id() -> str:
    return str(uuid.uuid4())


def dump_json(value) -> str:
    return json.dumps(value, default=str)


def load_json(raw, default=None):
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Stored JSON column could not be decoded")
        return default


class Base(DeclarativeBase):
    pass


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    id            = Column(String(36), primary_key=True, default=new_id)
    user_id       = Column(String(255), nullable=False, index=True)
    website_url   = Column(String(2048), nullable=False)
    status        = Column(String(20), nullable=False, default="queued", index=True)
    triggered_at  = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at  = Column(DateTime, nullable=True)
    # "metadata" is reserved on declarative classes, so the attribute differs from the column
    run_metadata  = Column("metadata", Text, nullable=True)
    source        = Column(String(20), nullable=True)      # "user" | "scheduler"

    @property
    def meta(self) -> dict:
        return load_json(self.run_metadata, {}) or {}

    def update_meta(self, **values) -> dict:
        merged = self.meta
        merged.update(values)
        self.run_metadata = dump_json(merged)
        return merged


class OnboardingProfile(Base):
    __tablename__ = "onboarding_profiles"

    id                 = Column(String(36), primary_key=True, default=new_id)
    user_id            = Column(String(255), nullable=False, unique=True, index=True)
    full_name          = Column(String(255), nullable=False)
    website_url        = Column(String(2048), nullable=False)
    industry           = Column(String(255), nullable=False)
    location           = Column(String(255), nullable=False)
    competitor_domains = Column(Text, nullable=True)       # JSON array as text
    target_keywords    = Column(Text, nullable=True)       # JSON array as text
    created_at         = Column(DateTime, default=datetime.utcnow)
    updated_at         = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SerpResult(Base):
    __tablename__ = "serp_results"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    search_engine = Column(String(50), nullable=False, default="google")
    keyword       = Column(String(255), nullable=False)
    position      = Column(Integer, nullable=True)
    url           = Column(String(2048), nullable=True)
    domain        = Column(String(255), nullable=True)
    title         = Column(String(1024), nullable=True)
    is_target     = Column(Integer, default=0)
    captured_at   = Column(DateTime, default=datetime.utcnow)


class KeywordMetric(Base):
    __tablename__ = "keyword_metrics"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    keyword       = Column(String(255), nullable=False)
    volume        = Column(Integer, default=0)
    cpc           = Column(Float, default=0.0)
    difficulty    = Column(Float, default=0.0)
    ctr_potential = Column(Float, default=0.0)


class ContentSentiment(Base):
    __tablename__ = "content_sentiment"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    source        = Column(String(2048), nullable=True)
    label         = Column(String(255), nullable=True)
    score         = Column(Float, nullable=True)
    sentiment     = Column(Text, nullable=True)             # raw vendor result, JSON


class BacklinkMetric(Base):
    __tablename__ = "backlink_metrics"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    source_domain = Column(String(255), nullable=True)
    authority     = Column(Float, default=0.0)
    anchor_text   = Column(Text, nullable=True)


class TechnicalAudit(Base):
    __tablename__ = "technical_audits"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    audit_type    = Column(String(50), nullable=False)
    payload       = Column(Text, nullable=True)


class BusinessProfile(Base):
    __tablename__ = "business_profiles"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    domain        = Column(String(255), nullable=True)
    firmographics = Column(Text, nullable=True)


class AIInsight(Base):
    __tablename__ = "ai_insights"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id   = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, unique=True, index=True)
    provider      = Column(String(50), nullable=False)
    summary       = Column(Text, nullable=True)
    created_at    = Column(DateTime, default=datetime.utcnow)


class Report(Base):
    __tablename__ = "reports"

    id              = Column(String(36), primary_key=True, default=new_id)
    workflow_id     = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    # Full JSON payload as text; avoids a JSON column type that behaves differently across SQLite and Postgres.
    payload         = Column(Text, nullable=False)
    payload_version = Column(Integer, nullable=True)       # NULL = rows written before versioning (v1)
    captured_at     = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class SignupFingerprint(Base):
    __tablename__ = "signup_fingerprints"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    user_id       = Column(String(255), nullable=False, unique=True, index=True)
    ip_address    = Column(String(64), nullable=True, index=True)
    created_at    = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# Migration helpers: idempotent ALTER TABLE for existing databases
# ---------------------------------------------------------------------------

_ADDED_COLUMNS = [
    ("workflow_runs", "source",          "VARCHAR(20)"),
    ("reports",       "payload_version", "INTEGER"),
    ("serp_results",  "title",           "VARCHAR(1024)"),
    ("serp_results",  "is_target",       "INTEGER"),
]


def _migrate_schema(bind=None) -> None:
    """Add columns introduced after the first release. Safe to run repeatedly."""
    bind = bind or engine
    with bind.connect() as conn:
        existing = {}
        for table, col_name, col_type in _ADDED_COLUMNS:
            if table not in existing:
                rows = conn.execute(text(f"SELECT * FROM {table} WHERE 1=0"))
                existing[table] = set(rows.keys())
            if col_name in existing[table]:
                continue
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}"))
            conn.commit()
            existing[table].add(col_name)
            logger.info(f"Migration: added {table}.{col_name}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def init_db(bind=None) -> None:
    """Create all tables + run migrations. Safe to call on every startup."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _migrate_schema(bind)


def get_db():
    """Yield a session and ensure it's closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
