"""Email classifier executor: decides an action for a batch of emails via LLM.

Stateless apart from its client handle: receives summaries and rules,
returns exactly one FilterDecision per email, in input order.

Backend failures (HTTP errors, timeouts) propagate to the caller so they can
be retried. A response that cannot be parsed never propagates: the whole
batch falls back to "keep".
"""

import json
import logging
import re
from collections.abc import Sequence

from pydantic import ValidationError

from mailfilter.integrations.ollama import OllamaClient
from mailfilter.rules import format_rules_for_prompt
from mailfilter.schemas.filtering import (
    ClassifierResponse,
    EmailSummary,
    FilterAction,
    FilterDecision,
    FilterRule,
)

logger = logging.getLogger(__name__)

# Preview length per email in the user prompt.
MAX_PREVIEW_CHARS = 200

MISSING_DECISION_REASON = "No explicit decision from classifier, keeping by default"
PARSE_FAILURE_REASON = "Failed to parse classifier response, keeping by default"

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """\
You are an intelligent email filtering assistant. Your job is to analyze \
emails and decide what action to take based on the given rules.

## Filtering Rules
{rules}

## Available Actions

- "delete": Move email to trash (spam, unwanted promotions, expired content)
- "keep": Leave in the inbox untouched (important emails that need attention)
- "archive": Remove from the inbox but keep (newsletters, reference material)
- "mark_read": Mark as read but keep in the inbox

## Consider Email Age

Each email includes its age in days.
- Time-sensitive content (download links, verification codes, limited-time \
offers, past events) older than 7 days is likely expired: delete or archive.
- Unread newsletters older than 14 days are rarely still relevant: archive \
or delete.
- Old conversations may still be useful for reference: prefer archive over \
delete.

## Response Format

Respond with a JSON object with a "decisions" array holding one entry per email:
- emailId: the ID of the email
- action: one of "delete", "keep", "archive", "mark_read"
- reason: brief explanation (mention age if relevant)
- confidence: number between 0 and 1

Example:
{{"decisions": [{{"emailId": "abc123", "action": "delete", \
"reason": "Promotional spam", "confidence": 0.95}}]}}

Be conservative with recent emails. When unsure, choose "keep".
"""

USER_PROMPT = """\
Please analyze the following {count} emails and provide filtering decisions:

{emails}

Respond with JSON only.
"""


def _age_label(age_in_days: int) -> str:
    if age_in_days == 0:
        return "today"
    if age_in_days == 1:
        return "1 day ago"
    return f"{age_in_days} days ago"


def _build_system_prompt(rules: Sequence[FilterRule]) -> str:
    return SYSTEM_PROMPT.format(rules=format_rules_for_prompt(rules))


def _build_user_prompt(emails: Sequence[EmailSummary]) -> str:
    """Build the user prompt listing every email in the batch."""
    blocks = []
    for i, email in enumerate(emails, 1):
        preview = email.snippet[:MAX_PREVIEW_CHARS]
        if len(email.snippet) > MAX_PREVIEW_CHARS:
            preview += "..."
        blocks.append(
            f"[Email {i}]\n"
            f"ID: {email.id}\n"
            f"From: {email.from_address}\n"
            f"Subject: {email.subject}\n"
            f"Date: {email.date_str} ({_age_label(email.age_in_days)})\n"
            f"Preview: {preview}\n"
            "---"
        )
    return USER_PROMPT.format(count=len(emails), emails="\n\n".join(blocks))


def default_decisions(
    emails: Sequence[EmailSummary], reason: str, confidence: float
) -> list[FilterDecision]:
    """Fail-safe "keep" decisions for every email."""
    return [
        FilterDecision(
            email_id=email.id,
            action=FilterAction.KEEP,
            reason=reason,
            confidence=confidence,
        )
        for email in emails
    ]


def align_decisions(
    emails: Sequence[EmailSummary], decisions: Sequence[FilterDecision]
) -> list[FilterDecision]:
    """Return exactly one decision per email, in email order.

    Emails the classifier skipped get a "keep" decision with confidence 0.5.
    Decisions for ids outside the batch are dropped.
    """
    by_id = {decision.email_id: decision for decision in decisions}
    expected = {email.id for email in emails}
    unknown = [email_id for email_id in by_id if email_id not in expected]
    if unknown:
        logger.warning("Ignoring decisions for unknown email ids: %s", unknown)

    aligned = []
    for email in emails:
        decision = by_id.get(email.id)
        if decision is None:
            logger.debug("No decision for email %s, keeping by default", email.id)
            decision = FilterDecision(
                email_id=email.id,
                action=FilterAction.KEEP,
                reason=MISSING_DECISION_REASON,
                confidence=0.5,
            )
        aligned.append(decision)
    return aligned


def parse_response(
    content: str, emails: Sequence[EmailSummary]
) -> list[FilterDecision]:
    """Parse the LLM's reply into aligned decisions.

    Any malformed payload degrades the whole batch to "keep" with
    confidence 0.
    """
    try:
        match = _JSON_OBJECT_RE.search(content)
        if not match:
            raise ValueError("No JSON object found in response")
        response = ClassifierResponse.model_validate(json.loads(match.group(0)))
    except (ValueError, ValidationError) as exc:
        logger.error("Failed to parse classifier response: %s", exc)
        logger.debug("Raw response: %s", content)
        return default_decisions(emails, PARSE_FAILURE_REASON, 0.0)

    return align_decisions(emails, response.decisions)


class EmailClassifier:
    """Classifies batches of emails with an Ollama model.

    Usage::

        async with OllamaClient(base_url) as ollama:
            classifier = EmailClassifier(ollama, "qwen2.5")
            decisions = await classifier.classify(summaries, rules)
    """

    def __init__(
        self,
        ollama: OllamaClient,
        model: str,
        *,
        temperature: float = 0.1,
        keep_alive: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ollama = ollama
        self._model = model
        self._temperature = temperature
        self._keep_alive = keep_alive
        self._logger = logger or logging.getLogger(__name__)

    @property
    def model(self) -> str:
        return self._model

    async def classify(
        self,
        emails: Sequence[EmailSummary],
        rules: Sequence[FilterRule],
    ) -> list[FilterDecision]:
        """Decide an action for every email in the batch.

        Raises:
            httpx.HTTPError: On backend failures (left to the caller to retry).
        """
        if not emails:
            return []

        self._logger.info("Analyzing %d email(s) with %s", len(emails), self._model)

        content, _raw = await self._ollama.chat(
            model=self._model,
            system=_build_system_prompt(rules),
            prompt=_build_user_prompt(emails),
            format=ClassifierResponse.model_json_schema(),
            temperature=self._temperature,
            keep_alive=self._keep_alive,
        )

        decisions = parse_response(content, emails)
        self._logger.info("Analysis complete: %d decision(s)", len(decisions))
        return decisions
