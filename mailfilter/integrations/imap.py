"""Async IMAP client wrapping imap-tools.

imap-tools is synchronous; all public methods use asyncio.to_thread()
for non-blocking operation.

Handled messages carry an IMAP keyword (``MailboxConfig.processed_flag``) so
later runs skip them.

Usage::

    async with ImapClient(mailbox_config) as imap:
        emails = await imap.fetch_messages(unread_only=True, limit=100)
        await imap.archive(emails[0].uid)
        await imap.mark_processed(emails[0].uid)
"""

import asyncio
import logging
from email.utils import parseaddr

from imap_tools import AND, MailBox, MailboxLoginError, MailMessage

from mailfilter.schemas.filtering import EmailMessage, MailboxConfig

logger = logging.getLogger(__name__)

# Messages fetched per IMAP round trip.
FETCH_CHUNK_SIZE = 100

# Snippet length derived from the plain-text body.
SNIPPET_CHARS = 200


def _make_snippet(text: str) -> str:
    return " ".join(text.split())[:SNIPPET_CHARS]


def _parse_message(msg: MailMessage, account_email: str) -> EmailMessage:
    """Convert an imap-tools MailMessage to an EmailMessage."""
    from_name, from_addr = parseaddr(msg.from_)
    body_text = msg.text or msg.html or ""
    return EmailMessage(
        uid=msg.uid,
        account_email=account_email,
        from_address=from_addr or msg.from_,
        from_name=from_name,
        subject=msg.subject or "(no subject)",
        date=msg.date,
        snippet=_make_snippet(msg.text or ""),
        body_text=body_text,
        flags=list(msg.flags),
    )


class ImapClient:
    """Async IMAP mailbox gateway.

    Action methods return True on success and log and return False on IMAP
    errors, so one bad message never aborts a run.
    """

    def __init__(self, config: MailboxConfig) -> None:
        self._config = config
        self._mailbox: MailBox | None = None

    async def __aenter__(self) -> "ImapClient":
        self._mailbox = await asyncio.to_thread(self._connect)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._mailbox:
            await asyncio.to_thread(self._disconnect)
            self._mailbox = None

    def _connect(self) -> MailBox:
        """Connect and login (sync, called via to_thread)."""
        if self._config.ssl:
            mb = MailBox(self._config.server, port=self._config.port)
        else:
            from imap_tools import MailBoxUnencrypted

            mb = MailBoxUnencrypted(self._config.server, port=self._config.port)

        try:
            mb.login(self._config.email, self._config.password)
        except MailboxLoginError:
            logger.error("IMAP login failed for %s", self._config.email)
            raise

        logger.info("Connected to %s as %s", self._config.server, self._config.email)
        return mb

    def _disconnect(self) -> None:
        """Logout and close (sync, called via to_thread)."""
        if self._mailbox:
            try:
                self._mailbox.logout()
            except Exception:
                logger.debug("Error during IMAP logout", exc_info=True)

    @property
    def mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise RuntimeError("ImapClient is not connected. Use 'async with' context.")
        return self._mailbox

    @property
    def inbox_folder(self) -> str:
        return self._config.folders.get("inbox", "INBOX")

    # --- Fetch ---

    def _criteria(self, unread_only: bool) -> AND:
        params: dict[str, object] = {"no_keyword": self._config.processed_flag}
        if unread_only:
            params["seen"] = False
        return AND(**params)

    async def fetch_messages(
        self, *, unread_only: bool = False, limit: int | None = None
    ) -> list[EmailMessage]:
        """Fetch inbox messages that have not been handled yet.

        Args:
            unread_only: Only fetch messages without the \\Seen flag.
            limit: Maximum number of messages (None or 0 = all).

        Returns:
            List of EmailMessage objects, newest first.
        """

        def _fetch() -> list[EmailMessage]:
            self.mailbox.folder.set(self.inbox_folder)
            msgs = self.mailbox.fetch(
                self._criteria(unread_only),
                mark_seen=False,
                reverse=True,
                limit=limit or None,
                bulk=FETCH_CHUNK_SIZE,
            )
            emails = []
            for msg in msgs:
                try:
                    emails.append(_parse_message(msg, self._config.email))
                except Exception:
                    logger.error("Failed to parse email %s", msg.uid, exc_info=True)
                if len(emails) % FETCH_CHUNK_SIZE == 0 and emails:
                    logger.info("Loaded %d email(s) so far...", len(emails))
            return emails

        display_limit = limit or "all"
        logger.info(
            "Fetching %s email(s) from %s (unread_only=%s)",
            display_limit,
            self.inbox_folder,
            unread_only,
        )
        emails = await asyncio.to_thread(_fetch)
        logger.info("Found %d email(s) to process", len(emails))
        return emails

    # --- Actions ---

    async def _run_action(self, description: str, uid: str, fn) -> bool:
        try:
            await asyncio.to_thread(fn)
        except Exception:
            logger.error("Failed to %s email %s", description, uid, exc_info=True)
            return False
        logger.debug("%s email %s", description.capitalize(), uid)
        return True

    async def delete(self, uid: str) -> bool:
        """Move to the trash folder when configured, otherwise expunge."""
        trash = self._config.folders.get("trash")
        if trash:
            return await self._run_action(
                "delete", uid, lambda: self.mailbox.move([uid], trash)
            )
        return await self._run_action("delete", uid, lambda: self.mailbox.delete([uid]))

    async def archive(self, uid: str) -> bool:
        """Remove from the inbox into the archive folder.

        Gmail doesn't support standard MOVE reliably; COPY then delete from
        the inbox, which only drops the INBOX label.
        """
        target = self._config.folders.get("archive", "Archive")

        def _do() -> None:
            if self._config.is_gmail:
                self.mailbox.copy([uid], target)
                self.mailbox.delete([uid])
            else:
                self.mailbox.move([uid], target)

        return await self._run_action("archive", uid, _do)

    async def mark_read(self, uid: str) -> bool:
        """Set the \\Seen flag."""
        return await self._run_action(
            "mark read", uid, lambda: self.mailbox.flag([uid], {"\\Seen"}, True)
        )

    async def mark_processed(self, uid: str) -> bool:
        """Add the handled keyword so the message is not fetched again."""
        flag = self._config.processed_flag
        return await self._run_action(
            "mark processed", uid, lambda: self.mailbox.flag([uid], {flag}, True)
        )

    # --- Folder management ---

    async def ensure_folders(self, folders: list[str]) -> None:
        """Create folders if they don't exist."""
        existing = await self.list_folders()
        existing_set = set(existing)

        for folder in folders:
            if folder not in existing_set:
                await asyncio.to_thread(self.mailbox.folder.create, folder)
                logger.info("Created IMAP folder: %s", folder)

    async def list_folders(self) -> list[str]:
        """List all IMAP folders."""

        def _list() -> list[str]:
            return [f.name for f in self.mailbox.folder.list()]

        return await asyncio.to_thread(_list)
