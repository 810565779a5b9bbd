"""
config.py: runtime settings for the intelligence pipeline.

Everything the pipeline needs from the environment is read once here and
handed to adapters, the synthesiser and the orchestrator as a Settings
object. Nothing downstream calls os.getenv directly. Each field is read from
the upper-cased environment variable of the same name.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("intel-report")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, env_ignore_empty=True, extra="ignore")

    # Vendor credentials
    dataforseo_login: str = ""
    dataforseo_password: str = ""
    dataforseo_base_url: str = "https://api.dataforseo.com"
    pagespeed_api_key: str = ""
    google_search_api_key: str = ""
    google_search_cse_id: str = ""
    voilanorbert_api_key: str = ""
    jina_reader_url: str = "https://r.jina.ai/"
    jina_api_key: str = ""

    # LLM providers
    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-6"
    perplexity_api_key: str = ""
    perplexity_model: str = "sonar-pro"
    llm_retries: int = 3
    llm_backoff_seconds: float = 2.0

    # Auth
    jwt_secret: str = ""
    jwt_public_key: str = ""
    jwt_algorithm: str = "HS256"
    scheduler_secret: str = ""

    # Runtime
    database_url: str = "sqlite:///./intel_reports.db"
    allowed_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000", "http://localhost:5173"]
    http_timeout_seconds: float = 30.0
    http_retries: int = 2
    http_backoff_seconds: float = 0.5
    workflow_timeout_seconds: Optional[float] = 120.0
    run_workers: int = 2
    parallel_stages: bool = False
    serialize_user_runs: bool = True
    trial_ip_limit_enabled: bool = True
    daily_run_limit: int = 10
    refresh_interval_days: int = 7

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def _sqlalchemy_scheme(cls, v: str) -> str:
        # Railway (and some other hosts) expose postgres:// but SQLAlchemy requires postgresql://
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("jwt_public_key")
    @classmethod
    def _unescape_pem(cls, v: str) -> str:
        return v.replace("\\n", "\n")

    @field_validator("http_retries", "llm_retries", "daily_run_limit")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("run_workers")
    @classmethod
    def _at_least_one_worker(cls, v: int) -> int:
        return max(1, v)

    @field_validator("workflow_timeout_seconds")
    @classmethod
    def _timeout_optional(cls, v: Optional[float]) -> Optional[float]:
        # 0 disables the wall-clock budget
        if v is not None and v <= 0:
            return None
        return v

    @property
    def has_dataforseo(self) -> bool:
        return bool(self.dataforseo_login and self.dataforseo_password)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after loading .env)."""
        load_dotenv()
        return cls()

    def warn_missing(self) -> None:
        """Log one warning per missing credential. Called once at startup."""
        if not self.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY is not set: every run will fail at synthesis")
        if not self.has_dataforseo:
            logger.warning("DATAFORSEO credentials are not set: SERP, keyword and backlink data will be empty")
        if not self.pagespeed_api_key:
            logger.warning("PAGESPEED_API_KEY is not set: Core Web Vitals will be empty")
        if not (self.google_search_api_key and self.google_search_cse_id):
            logger.warning("Google Custom Search is not configured: news search will be empty")
        if not self.voilanorbert_api_key:
            logger.warning("VOILANORBERT_API_KEY is not set: contact enrichment will be empty")
        if not self.perplexity_api_key:
            logger.warning("PERPLEXITY_API_KEY is not set: breaking insights will be skipped")
        if not (self.jwt_secret or self.jwt_public_key):
            logger.warning("JWT_SECRET / JWT_PUBLIC_KEY not set: authenticated endpoints will reject every request")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
