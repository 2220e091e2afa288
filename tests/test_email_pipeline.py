"""Tests for mailfilter.orchestrator.filtering: the run and preview workflows."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from mailfilter.orchestrator.filtering import preview_email_filtering, run_email_filtering
from mailfilter.rules import RulesManager
from mailfilter.schemas.filtering import (
    BatchFilterResult,
    EmailMessage,
    FilterAction,
    FilterDecision,
)


# --- Helpers ---


def _make_email(uid: str, subject: str = "Subject") -> EmailMessage:
    return EmailMessage(
        uid=uid,
        from_address=f"sender{uid}@example.com",
        from_name="Sender",
        subject=subject,
        date=datetime(2025, 6, 1, tzinfo=timezone.utc),
        snippet="snippet",
    )


def _make_decision(uid: str, action: FilterAction, confidence: float = 0.9) -> FilterDecision:
    return FilterDecision(email_id=uid, action=action, reason=f"reason {uid}", confidence=confidence)


def _make_mailbox(emails: list[EmailMessage]) -> AsyncMock:
    mailbox = AsyncMock()
    mailbox.fetch_messages = AsyncMock(return_value=emails)
    mailbox.delete = AsyncMock(return_value=True)
    mailbox.archive = AsyncMock(return_value=True)
    mailbox.mark_read = AsyncMock(return_value=True)
    mailbox.mark_processed = AsyncMock(return_value=True)
    return mailbox


def _make_orchestrator(result: BatchFilterResult) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.run = AsyncMock(return_value=result)
    return orchestrator


async def _run(mailbox, orchestrator, **kwargs):
    sleep = AsyncMock()
    stats = await run_email_filtering(
        mailbox=mailbox,
        orchestrator=orchestrator,
        rules_manager=RulesManager(),
        batch_size=kwargs.pop("batch_size", 10),
        sleep=sleep,
        **kwargs,
    )
    return stats, sleep


# --- run_email_filtering ---


class TestRunNoEmails:
    async def test_zero_messages_returns_empty_stats(self):
        mailbox = _make_mailbox([])
        orchestrator = _make_orchestrator(BatchFilterResult())

        stats, sleep = await _run(mailbox, orchestrator)

        assert stats.total_processed == 0
        assert stats.errors == 0
        assert stats.kept == stats.deleted == stats.archived == stats.marked_read == 0
        orchestrator.run.assert_not_awaited()
        sleep.assert_not_awaited()


class TestRunFetch:
    async def test_fetch_arguments_forwarded(self):
        mailbox = _make_mailbox([])
        orchestrator = _make_orchestrator(BatchFilterResult())

        await _run(mailbox, orchestrator, processing_limit=25, unread_only=True)

        mailbox.fetch_messages.assert_awaited_once_with(unread_only=True, limit=25)

    async def test_orchestrator_gets_rules_and_batch_size(self):
        emails = [_make_email("1")]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(
            BatchFilterResult(decisions=[_make_decision("1", FilterAction.KEEP)], processed_count=1)
        )

        await _run(mailbox, orchestrator, batch_size=7)

        args = orchestrator.run.await_args.args
        assert args[0] == emails
        assert [r.id for r in args[1]] == [r.id for r in RulesManager().get_rules()]
        assert args[2] == 7


class TestRunActions:
    async def test_counts_each_action(self):
        emails = [_make_email(str(i)) for i in range(1, 6)]
        decisions = [
            _make_decision("1", FilterAction.DELETE),
            _make_decision("2", FilterAction.ARCHIVE),
            _make_decision("3", FilterAction.MARK_READ),
            _make_decision("4", FilterAction.KEEP),
            _make_decision("5", FilterAction.DELETE),
        ]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(
            BatchFilterResult(decisions=decisions, processed_count=5)
        )

        stats, _ = await _run(mailbox, orchestrator)

        assert stats.total_processed == 5
        assert stats.deleted == 2
        assert stats.archived == 1
        assert stats.marked_read == 1
        assert stats.kept == 1
        assert stats.errors == 0
        assert mailbox.delete.await_count == 2
        mailbox.archive.assert_awaited_once_with("2")
        mailbox.mark_read.assert_awaited_once_with("3")

    async def test_successful_actions_marked_processed(self):
        emails = [_make_email("1"), _make_email("2")]
        decisions = [
            _make_decision("1", FilterAction.KEEP),
            _make_decision("2", FilterAction.ARCHIVE),
        ]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(BatchFilterResult(decisions=decisions, processed_count=2))

        await _run(mailbox, orchestrator)

        assert [c.args[0] for c in mailbox.mark_processed.await_args_list] == ["1", "2"]

    async def test_failed_action_still_marked_and_counted(self):
        emails = [_make_email("1"), _make_email("2")]
        decisions = [
            _make_decision("1", FilterAction.DELETE),
            _make_decision("2", FilterAction.KEEP),
        ]
        mailbox = _make_mailbox(emails)
        mailbox.delete = AsyncMock(return_value=False)
        orchestrator = _make_orchestrator(BatchFilterResult(decisions=decisions, processed_count=2))

        stats, _ = await _run(mailbox, orchestrator)

        assert stats.deleted == 0
        assert stats.kept == 1
        assert stats.errors == 1
        assert [c.args[0] for c in mailbox.mark_processed.await_args_list] == ["1", "2"]

    async def test_raising_action_does_not_abort_run(self):
        emails = [_make_email("1"), _make_email("2")]
        decisions = [
            _make_decision("1", FilterAction.MARK_READ),
            _make_decision("2", FilterAction.ARCHIVE),
        ]
        mailbox = _make_mailbox(emails)
        mailbox.mark_read = AsyncMock(side_effect=RuntimeError("connection dropped"))
        orchestrator = _make_orchestrator(BatchFilterResult(decisions=decisions, processed_count=2))

        stats, _ = await _run(mailbox, orchestrator)

        assert stats.marked_read == 0
        assert stats.archived == 1
        assert stats.errors == 1
        assert [c.args[0] for c in mailbox.mark_processed.await_args_list] == ["1", "2"]

    async def test_mark_processed_failure_still_counts_action(self):
        emails = [_make_email("1")]
        mailbox = _make_mailbox(emails)
        mailbox.mark_processed = AsyncMock(return_value=False)
        orchestrator = _make_orchestrator(
            BatchFilterResult(decisions=[_make_decision("1", FilterAction.ARCHIVE)], processed_count=1)
        )

        stats, _ = await _run(mailbox, orchestrator)

        assert stats.archived == 1
        assert stats.errors == 0


class TestRunPacing:
    async def test_pause_only_after_non_keep_actions(self):
        emails = [_make_email(str(i)) for i in range(1, 4)]
        decisions = [
            _make_decision("1", FilterAction.KEEP),
            _make_decision("2", FilterAction.DELETE),
            _make_decision("3", FilterAction.KEEP),
        ]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(BatchFilterResult(decisions=decisions, processed_count=3))

        _, sleep = await _run(mailbox, orchestrator, action_delay=0.25)

        sleep.assert_awaited_once_with(0.25)

    async def test_zero_delay_never_sleeps(self):
        emails = [_make_email("1")]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(
            BatchFilterResult(decisions=[_make_decision("1", FilterAction.DELETE)], processed_count=1)
        )

        _, sleep = await _run(mailbox, orchestrator, action_delay=0)

        sleep.assert_not_awaited()


class TestRunBatchErrors:
    async def test_batch_errors_added_to_error_count(self):
        emails = [_make_email(str(i)) for i in range(1, 4)]
        result = BatchFilterResult(
            decisions=[_make_decision("1", FilterAction.DELETE)],
            processed_count=1,
            failed_count=2,
            errors=["Batch 2 failed after 1 attempt(s): Invalid API key"],
        )
        mailbox = _make_mailbox(emails)
        mailbox.delete = AsyncMock(return_value=False)
        orchestrator = _make_orchestrator(result)

        stats, _ = await _run(mailbox, orchestrator)

        assert stats.total_processed == 1
        assert stats.errors == 2
        assert stats.batch_errors == ["Batch 2 failed after 1 attempt(s): Invalid API key"]

    async def test_progress_reported(self):
        emails = [_make_email("1", subject="Weekly digest")]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(
            BatchFilterResult(decisions=[_make_decision("1", FilterAction.ARCHIVE)], processed_count=1)
        )
        messages = []

        await _run(mailbox, orchestrator, on_progress=messages.append)

        assert messages[0] == "Found 1 email(s). Classifying..."
        assert "[1/1] Weekly digest -> archive" in messages
        assert messages[-1].strip().startswith("Done. Processed: 1")


# --- preview_email_filtering ---


class TestPreview:
    async def test_no_actions_executed(self):
        emails = [_make_email("1", subject="Sale!"), _make_email("2")]
        decisions = [
            _make_decision("1", FilterAction.DELETE, 0.95),
            _make_decision("2", FilterAction.ARCHIVE),
        ]
        mailbox = _make_mailbox(emails)
        orchestrator = _make_orchestrator(BatchFilterResult(decisions=decisions, processed_count=2))
        messages = []

        result = await preview_email_filtering(
            mailbox=mailbox,
            orchestrator=orchestrator,
            rules_manager=RulesManager(),
            batch_size=10,
            on_progress=messages.append,
        )

        assert result == decisions
        mailbox.delete.assert_not_awaited()
        mailbox.archive.assert_not_awaited()
        mailbox.mark_read.assert_not_awaited()
        mailbox.mark_processed.assert_not_awaited()
        details = "\n".join(messages)
        assert "Email: Sale!" in details
        assert "From: Sender <sender1@example.com>" in details
        assert "Action: delete" in details
        assert "Confidence: 95%" in details

    async def test_no_emails(self):
        mailbox = _make_mailbox([])
        orchestrator = _make_orchestrator(BatchFilterResult())

        result = await preview_email_filtering(
            mailbox=mailbox,
            orchestrator=orchestrator,
            rules_manager=RulesManager(),
            batch_size=10,
        )

        assert result == []
        orchestrator.run.assert_not_awaited()
