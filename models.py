"""
models.py: request models and the per-run context handed to every adapter.
"""

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from competitors import normalize_domain

REQUIRED_FIELDS = ("fullName", "websiteUrl", "industry", "location")


class OnboardingRequest(BaseModel):
    """
    Onboarding form body. Every field defaults to empty so FastAPI never
    answers 422 itself; ``missing_fields`` drives the 400 response instead.
    """

    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(default="", alias="fullName")
    website_url: str = Field(default="", alias="websiteUrl")
    industry: str = Field(default="", alias="industry")
    location: str = Field(default="", alias="location")
    competitor_domains: list[str] = Field(default_factory=list, alias="competitorDomains")
    target_keywords: list[str] = Field(default_factory=list, alias="targetKeywords")

    @field_validator("full_name", "website_url", "industry", "location", mode="before")
    @classmethod
    def _strip(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("competitor_domains", "target_keywords", mode="before")
    @classmethod
    def _clean_list(cls, v):
        if not v:
            return []
        if isinstance(v, str):
            v = v.split(",")
        elif not isinstance(v, (list, tuple)):
            raise ValueError("must be a list of strings or a comma-separated string")
        return [str(item).strip() for item in v if str(item).strip()]

    def missing_fields(self) -> list[str]:
        values = {
            "fullName": self.full_name,
            "websiteUrl": self.website_url,
            "industry": self.industry,
            "location": self.location,
        }
        return [name for name in REQUIRED_FIELDS if not values[name]]

    def normalized_url(self) -> str:
        url = self.website_url
        if url and not url.startswith(("http://", "https://")):
            url = "https://" + url
        return url


@dataclass
class WorkflowContext:
    """Everything an adapter needs to know about the run it is working for."""

    workflow_id: str
    user_id: str
    full_name: str
    website_url: str
    industry: str
    location: str
    competitor_domains: list[str] = field(default_factory=list)
    target_keywords: list[str] = field(default_factory=list)

    @property
    def target_domain(self) -> str:
        return normalize_domain(self.website_url)

    @property
    def hostname(self) -> Optional[str]:
        return urlparse(self.website_url).hostname
