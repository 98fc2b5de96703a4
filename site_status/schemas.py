"""
Site Status — Pydantic request/response schemas.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    queue: dict | None = None


class SiteRequest(BaseModel):
    domain: str = Field(..., min_length=3, max_length=255)
    github_url: str | None = Field(None, alias="gitHubURL", max_length=512)
    prod_url: str | None = Field(None, alias="prodURL", max_length=512)
    is_live: bool = Field(False, alias="isLive")

    model_config = {"populate_by_name": True}


class LiveStatusRequest(BaseModel):
    is_live: bool = Field(..., alias="isLive")

    model_config = {"populate_by_name": True}


class Scores(BaseModel):
    performance: float | None = None
    accessibility: float | None = None
    best_practices: float | None = Field(None, alias="bestPractices")
    seo: float | None = None

    model_config = {"populate_by_name": True}


class AuditResponse(BaseModel):
    audited_at: str | None = Field(None, alias="auditedAt")
    is_error: bool = Field(False, alias="isError")
    is_live: bool = Field(False, alias="isLive")
    error_message: str | None = Field(None, alias="errorMessage")
    markdown_content: str | None = Field(None, alias="markdownContent")
    markdown_diff: str | None = Field(None, alias="markdownDiff")
    github_diff: str = Field("", alias="githubDiff")
    scores: Scores | dict = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class SiteResponse(BaseModel):
    id: str
    domain: str
    prod_url: str | None = Field(None, alias="prodURL")
    github_url: str | None = Field(None, alias="gitHubURL")
    is_live: bool = Field(False, alias="isLive")
    last_audited: str | None = Field(None, alias="lastAudited")
    created_at: str | None = Field(None, alias="createdAt")
    last_audit: AuditResponse | None = Field(None, alias="lastAudit")

    model_config = {"populate_by_name": True}


class SiteDetailResponse(SiteResponse):
    audits: list[AuditResponse] = Field(default_factory=list)


class SiteListResponse(BaseModel):
    sites: list[SiteResponse]
    total: int


class QueuedResponse(BaseModel):
    site_id: str = Field(..., alias="siteId")
    domain: str
    message: str

    model_config = {"populate_by_name": True}
