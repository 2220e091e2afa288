"""Deterministic router from filter decisions to mailbox actions.

No LLM calls: pure Python logic.
"""

import logging
from typing import Protocol, assert_never

from mailfilter.schemas.filtering import FilterAction, FilterDecision

logger = logging.getLogger(__name__)


class MailboxActions(Protocol):
    async def delete(self, uid: str) -> bool: ...

    async def archive(self, uid: str) -> bool: ...

    async def mark_read(self, uid: str) -> bool: ...


async def execute_filter_action(
    decision: FilterDecision,
    *,
    mailbox: MailboxActions,
) -> bool:
    """Apply the decided action to one message.

    Args:
        decision: The classifier's decision.
        mailbox: An open mailbox gateway (e.g. ImapClient).

    Returns:
        True if the action succeeded (``keep`` always succeeds).
    """
    action = decision.action
    logger.debug(
        "Executing %s for email %s: %s",
        action.value,
        decision.email_id,
        decision.reason,
    )

    if action is FilterAction.DELETE:
        return await mailbox.delete(decision.email_id)
    elif action is FilterAction.ARCHIVE:
        return await mailbox.archive(decision.email_id)
    elif action is FilterAction.MARK_READ:
        return await mailbox.mark_read(decision.email_id)
    elif action is FilterAction.KEEP:
        return True  # no action needed
    else:
        assert_never(action)
