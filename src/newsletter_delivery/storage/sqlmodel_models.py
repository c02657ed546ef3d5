"""SQLModel ORM tables for newsletter issues and the delivery queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlmodel import Field, SQLModel


class NewsletterIssue(SQLModel, table=True):
    __tablename__ = "newsletter_issues"  # type: ignore[bad-override]

    newsletter_issue_id: str = Field(primary_key=True)
    title: str = Field(sa_column=Column(Text, nullable=False))
    text_content: str = Field(sa_column=Column(Text, nullable=False))
    html_content: str = Field(sa_column=Column(Text, nullable=False))
    published_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IssueDeliveryQueue(SQLModel, table=True):
    __tablename__ = "issue_delivery_queue"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_issue_delivery_queue_lease", "lease_expires_at"),)

    newsletter_issue_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("newsletter_issues.newsletter_issue_id"),
            primary_key=True,
        ),
    )
    subscriber_email: str = Field(sa_column=Column(String, primary_key=True))
    lease_owner: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
