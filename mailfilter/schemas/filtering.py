"""Schemas for the email filtering pipeline.

Covers the full lifecycle:
  IMAP fetch -> batch classification -> action dispatch -> run statistics
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# Fallback snippet length when the server gives no snippet.
SNIPPET_FALLBACK_CHARS = 500

# --- Config ---


class MailboxConfig(BaseModel):
    """Connection settings for the mailbox being filtered."""

    server: str
    email: str
    password: str
    port: int = 993
    ssl: bool = True
    is_gmail: bool = False
    folders: dict[str, str] = Field(
        default_factory=lambda: {"inbox": "INBOX", "archive": "Archive"}
    )  # logical name -> IMAP folder path
    processed_flag: str = "MailFilterProcessed"  # IMAP keyword marking handled mail


class RetryConfig(BaseModel):
    """Exponential backoff settings for classifier calls."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)


# --- Email data ---


class EmailSummary(BaseModel):
    """Classifier-facing view of a message."""

    model_config = ConfigDict(frozen=True)

    id: str
    from_address: str
    subject: str
    snippet: str
    date_str: str
    age_in_days: int = Field(ge=0)


class EmailMessage(BaseModel):
    """A fetched message. Immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    uid: str
    account_email: str = ""
    from_address: str
    from_name: str = ""
    subject: str
    date: datetime
    snippet: str = ""
    body_text: str = ""
    flags: list[str] = Field(default_factory=list)

    @property
    def sender(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_address}>"
        return self.from_address

    def age_in_days(self, now: datetime | None = None) -> int:
        """Whole days since the message date, never negative."""
        now = now or datetime.now(UTC)
        date = self.date if self.date.tzinfo else self.date.replace(tzinfo=UTC)
        return max(0, (now - date).days)

    def summarize(self, now: datetime | None = None) -> EmailSummary:
        snippet = self.snippet or self.body_text[:SNIPPET_FALLBACK_CHARS]
        return EmailSummary(
            id=self.uid,
            from_address=self.sender,
            subject=self.subject,
            snippet=snippet,
            date_str=self.date.strftime("%Y-%m-%d %H:%M"),
            age_in_days=self.age_in_days(now),
        )


# --- Rules ---


class FilterAction(StrEnum):
    """Action applied to a message after classification."""

    DELETE = "delete"
    ARCHIVE = "archive"
    MARK_READ = "mark_read"
    KEEP = "keep"


class FilterRule(BaseModel):
    """A filtering rule. Lower priority sorts first."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    condition: str
    action: FilterAction
    priority: int


# --- Classification ---


class FilterDecision(BaseModel):
    """The classifier's verdict for one message."""

    model_config = ConfigDict(populate_by_name=True)

    email_id: str = Field(alias="emailId")
    action: FilterAction
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifierResponse(BaseModel):
    """Expected shape of the LLM's JSON response."""

    decisions: list[FilterDecision]


# --- Pipeline results ---


class BatchFilterResult(BaseModel):
    """Aggregated output of the batch orchestrator."""

    decisions: list[FilterDecision] = Field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0  # messages in batches that produced no decisions
    errors: list[str] = Field(default_factory=list)  # one per failed batch


class ProcessingStats(BaseModel):
    """Counts accumulated by a filtering run."""

    total_processed: int = 0
    deleted: int = 0
    kept: int = 0
    archived: int = 0
    marked_read: int = 0
    errors: int = 0
    batch_errors: list[str] = Field(default_factory=list)
