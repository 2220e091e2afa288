"""Pipeline handlers for the email filtering workflow.

Each handler encapsulates a complete pipeline and returns a typed result.
CLI commands call these handlers.

Flow:
  fetch unhandled messages -> classify in batches -> apply actions -> stats
Preview stops after classification.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from mailfilter.integrations.imap import ImapClient
from mailfilter.orchestrator.batching import BatchOrchestrator
from mailfilter.router.actions import execute_filter_action
from mailfilter.rules import RulesManager
from mailfilter.schemas.filtering import (
    BatchFilterResult,
    EmailMessage,
    FilterAction,
    FilterDecision,
    ProcessingStats,
)

logger = logging.getLogger(__name__)

# ProcessingStats counter incremented per successful action.
_STAT_FIELDS: dict[FilterAction, str] = {
    FilterAction.DELETE: "deleted",
    FilterAction.ARCHIVE: "archived",
    FilterAction.MARK_READ: "marked_read",
    FilterAction.KEEP: "kept",
}


async def _fetch_and_classify(
    *,
    mailbox: ImapClient,
    orchestrator: BatchOrchestrator,
    rules_manager: RulesManager,
    batch_size: int,
    processing_limit: int | None,
    unread_only: bool,
    emit: Callable[[str], None],
) -> tuple[list[EmailMessage], BatchFilterResult | None]:
    emails = await mailbox.fetch_messages(
        unread_only=unread_only, limit=processing_limit
    )
    if not emails:
        emit("No emails to process.")
        return emails, None

    emit(f"Found {len(emails)} email(s). Classifying...")
    result = await orchestrator.run(emails, rules_manager.get_rules(), batch_size)
    return emails, result


def _log_summary(stats: ProcessingStats) -> None:
    logger.info(
        "Filtering summary: processed=%d kept=%d deleted=%d archived=%d "
        "marked_read=%d errors=%d",
        stats.total_processed,
        stats.kept,
        stats.deleted,
        stats.archived,
        stats.marked_read,
        stats.errors,
    )
    for error in stats.batch_errors:
        logger.warning("Batch error: %s", error)


async def run_email_filtering(
    *,
    mailbox: ImapClient,
    orchestrator: BatchOrchestrator,
    rules_manager: RulesManager,
    batch_size: int,
    processing_limit: int | None = None,
    unread_only: bool = False,
    action_delay: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_progress: Callable[[str], None] | None = None,
) -> ProcessingStats:
    """Fetch, classify and act on unhandled emails.

    Flow:
    1. Fetch up to processing_limit unhandled emails.
    2. Classify them in batches via the orchestrator.
    3. Apply each decision in order and mark every message handled.
    4. Return counts.

    Args:
        mailbox: An open mailbox gateway.
        orchestrator: Batch orchestrator wrapping the classifier.
        rules_manager: Source of the active rules.
        batch_size: Emails per classifier call.
        processing_limit: Maximum emails to fetch (None = all).
        unread_only: Only fetch unread emails.
        action_delay: Seconds to pause after each non-keep action.
        sleep: Async sleep used for the action pause.
        on_progress: Optional callback for progress messages.

    Returns:
        ProcessingStats with per-action counts. ``errors`` includes both
        failed batches and failed actions.
    """

    def _emit(msg: str) -> None:
        if on_progress:
            on_progress(msg)

    logger.info("Starting email filtering workflow")
    stats = ProcessingStats()

    emails, result = await _fetch_and_classify(
        mailbox=mailbox,
        orchestrator=orchestrator,
        rules_manager=rules_manager,
        batch_size=batch_size,
        processing_limit=processing_limit,
        unread_only=unread_only,
        emit=_emit,
    )
    if result is None:
        return stats

    subjects = {email.uid: email.subject for email in emails}
    action_errors = 0

    for i, decision in enumerate(result.decisions, 1):
        _emit(
            f"[{i}/{len(result.decisions)}] {subjects.get(decision.email_id, '(unknown)')}"
            f" -> {decision.action.value}"
        )
        try:
            success = await execute_filter_action(decision, mailbox=mailbox)
        except Exception:
            logger.exception("Failed to execute action for email %s", decision.email_id)
            success = False

        if success:
            field = _STAT_FIELDS[decision.action]
            setattr(stats, field, getattr(stats, field) + 1)
        else:
            action_errors += 1
            _emit("  ERROR: action failed (see log for details)")

        # Every decision marks the message handled, failed actions included.
        if not await mailbox.mark_processed(decision.email_id):
            logger.warning("Could not mark email %s as processed", decision.email_id)

        if decision.action is not FilterAction.KEEP and action_delay > 0:
            await sleep(action_delay)

    stats.total_processed = result.processed_count
    stats.batch_errors = list(result.errors)
    stats.errors = len(result.errors) + action_errors

    _log_summary(stats)
    _emit(
        f"\nDone. Processed: {stats.total_processed}, Kept: {stats.kept}, "
        f"Deleted: {stats.deleted}, Archived: {stats.archived}, "
        f"Marked read: {stats.marked_read}, Errors: {stats.errors}"
    )
    return stats


async def preview_email_filtering(
    *,
    mailbox: ImapClient,
    orchestrator: BatchOrchestrator,
    rules_manager: RulesManager,
    batch_size: int,
    processing_limit: int | None = None,
    unread_only: bool = False,
    on_progress: Callable[[str], None] | None = None,
) -> list[FilterDecision]:
    """Classify unhandled emails without applying any action.

    Returns:
        The decisions that a real run would execute, in order.
    """

    def _emit(msg: str) -> None:
        if on_progress:
            on_progress(msg)

    logger.info("Running in preview mode (no actions will be executed)")

    emails, result = await _fetch_and_classify(
        mailbox=mailbox,
        orchestrator=orchestrator,
        rules_manager=rules_manager,
        batch_size=batch_size,
        processing_limit=processing_limit,
        unread_only=unread_only,
        emit=_emit,
    )
    if result is None:
        return []

    by_uid = {email.uid: email for email in emails}
    for decision in result.decisions:
        email = by_uid.get(decision.email_id)
        _emit(
            f"\nEmail: {email.subject if email else '(unknown)'}"
            f"\n  From: {email.sender if email else '(unknown)'}"
            f"\n  Action: {decision.action.value}"
            f"\n  Reason: {decision.reason}"
            f"\n  Confidence: {decision.confidence:.0%}"
        )
    for error in result.errors:
        _emit(f"  WARNING: {error}")

    return result.decisions
