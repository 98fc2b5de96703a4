"""
Site Status — SQLAlchemy ORM models for tracked sites and their audits.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from site_status.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    prod_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    github_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_live: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")

    last_audited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def audit_target(self) -> str:
        """Production URL when the site is live and has one, else the bare domain."""
        if self.is_live and self.prod_url:
            return self.prod_url
        return self.domain

    def to_dict(self) -> dict:
        last = as_utc(self.last_audited_at)
        created = as_utc(self.created_at)
        return {
            "id": self.id,
            "domain": self.domain,
            "prodURL": self.prod_url,
            "gitHubURL": self.github_url,
            "isLive": self.is_live,
            "lastAudited": last.isoformat() if last else None,
            "createdAt": created.isoformat() if created else None,
        }


class Audit(Base):
    """One row per completed audit attempt, success or error.

    ``site_id`` is indexed but deliberately not a foreign key: a task that
    references a deleted site still gets its error record.
    """

    __tablename__ = "audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(36), nullable=False)
    audited_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_live: Mapped[bool] = mapped_column(Boolean, default=False)
    is_error: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Trimmed Lighthouse result, keys sanitized (no "." anywhere)
    audit_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    markdown_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    markdown_diff: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_diff: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        Index("ix_audits_site_audited", "site_id", "audited_at"),
        Index("ix_audits_audited_at", "audited_at"),
        Index("ix_audits_expires_at", "expires_at"),
    )

    @property
    def scores(self) -> dict:
        """Category scores (0..1) keyed the way the read side reports them."""
        categories = (self.audit_result or {}).get("categories") or {}

        def _score(key: str):
            return (categories.get(key) or {}).get("score")

        if not categories:
            return {}
        return {
            "performance": _score("performance"),
            "accessibility": _score("accessibility"),
            "bestPractices": _score("best-practices"),
            "seo": _score("seo"),
        }

    def to_dict(self) -> dict:
        audited = as_utc(self.audited_at)
        return {
            "auditedAt": audited.isoformat() if audited else None,
            "isError": self.is_error,
            "isLive": self.is_live,
            "errorMessage": self.error_message,
            "markdownContent": self.markdown_content,
            "markdownDiff": self.markdown_diff,
            "githubDiff": self.github_diff,
            "scores": self.scores,
        }
