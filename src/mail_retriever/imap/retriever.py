# =============================================================================
# IMAP Retriever
# =============================================================================
# The caller-facing retrieval API for IMAP mailboxes: messages, header-only
# entries, and folders, either streamed in batches or aggregated.
#
# Every call runs inside one session lease and breaks its protocol work into
# units the retry controller may re-run after a failure:
#
#   open cursor   SELECT/EXAMINE + UID SEARCH, then choose and order UIDs
#   fetch batch   re-SELECT if the session is new, then one UID FETCH
#   mark batch    UID STORE +FLAGS (\Deleted) for the batch just consumed
#   commit        one EXPUNGE for the whole call
#
# A re-SELECT after a reconnect checks UIDVALIDITY against the value seen
# when the cursor was opened and raises UIDValidityError on a mismatch.
# Deletion marks issued under an earlier session are stored again before
# further marks and before the final EXPUNGE.
#
# If the consumer stops early or any unit fails for good, EXPUNGE is never
# sent, so nothing is deleted.
#
# Example:
#   >>> retriever = IMAPRetriever(settings)
#   >>> async for batch in retriever.find_in_batches(mailbox="INBOX", batch_size=50):
#   ...     for message in batch:
#   ...         print(message.subject)
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any

from mail_retriever.core.account import Settings
from mail_retriever.core.entry import Entry
from mail_retriever.core.folder import Folder
from mail_retriever.core.message import Message
from mail_retriever.core.options import ALL, FolderOptions, RetrievalOptions
from mail_retriever.imap.cursor import batched, format_uid_set, search_criteria, select_uids
from mail_retriever.imap.matcher import FolderMatcher
from mail_retriever.imap.transport import STATUS_FIELDS, FetchData, IMAPTransport
from mail_retriever.results import collapse, invoke, take
from mail_retriever.retry import SessionController, UIDValidityError

logger = logging.getLogger(__name__)

MESSAGE_FETCH_SPEC = (
    "(UID FLAGS RFC822.SIZE INTERNALDATE RFC822 BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"
)
ENTRY_FETCH_SPEC = "(UID FLAGS RFC822.SIZE INTERNALDATE BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"

# Default batch sizes
MESSAGE_BATCH_SIZE = 10
ENTRY_BATCH_SIZE = 5000

# UIDs per STORE command, to keep command lines short
STORE_CHUNK_SIZE = 100

# Used when the server reports a flat namespace (NIL delimiter)
DEFAULT_DELIMITER = "/"

# Streaming calls take everything by default, aggregating calls the first 10
BATCH_DEFAULTS = {"count": ALL}
FIND_DEFAULTS = {"count": 10}

TransportFactory = Callable[[Settings], Awaitable[Any]]


async def open_transport(settings: Settings) -> IMAPTransport:
    """Default session factory: a connected, authenticated IMAPTransport."""
    return await IMAPTransport(settings).connect()


@dataclass
class _Cursor:
    """The UIDs a call will fetch, valid for one mailbox validity epoch."""
    mailbox: str
    read_only: bool
    validity: int | None
    uids: list[int]


@dataclass
class _DeletionLog:
    """UIDs already marked \\Deleted, and the session that marked them."""
    uids: list[int]
    generation: int = 0


class IMAPRetriever:
    """
    Retrieves messages, entries and folders from an IMAP server.

    Usage:
        >>> retriever = IMAPRetriever(Settings(address="imap.example.com", ...))
        >>> latest = await retriever.find(what="last", count=5, order="desc")
        >>> folders = await retriever.find_folders()

    Attributes:
        settings: Connection settings.
        controller: The retry controller owning this retriever's session.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport_factory: TransportFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the retriever.

        Args:
            settings: Connection settings.
            transport_factory: Coroutine function returning a connected
                               transport for the settings. Defaults to an
                               aioimaplib-backed IMAPTransport.
            sleep: Backoff sleep (replaceable in tests).
        """
        self.settings = settings
        factory = transport_factory or open_transport
        self.controller: SessionController[Any] = SessionController(
            partial(factory, settings),
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            sleep=sleep,
        )

    # =========================================================================
    # Messages
    # =========================================================================

    async def find_in_batches(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[list[Message]]:
        """
        Stream matching messages in batches.

        With delete_after_find, every yielded message has mark_for_delete
        set; clear it before asking for the next batch to keep a message.
        Break out through contextlib.aclosing() so the session is released
        promptly.

        Args:
            options: RetrievalOptions or a mapping of options.
            **overrides: Individual options. count defaults to "all",
                         batch_size to 10.

        Yields:
            Lists of at most batch_size Message objects, in the requested
            order.

        Raises:
            ValueError: On invalid options.
            RetrievalError: When a unit of work fails for good.
        """
        opts = RetrievalOptions.build(options, defaults=BATCH_DEFAULTS, **overrides)
        batch_size = opts.batch_size or MESSAGE_BATCH_SIZE
        deleting = opts.delete_after_find
        logger.info(
            f"Finding messages in {opts.mailbox} ({opts.what.value} {opts.count}, "
            f"{opts.order.value}, batches of {batch_size}, delete={deleting})"
        )

        async with self.controller.lease():
            cursor = await self._open_cursor(opts, read_only=opts.read_only)
            deletions = _DeletionLog(uids=[])

            for uids in batched(cursor.uids, batch_size):
                data = await self.controller.run(
                    partial(self._fetch, cursor, uids, MESSAGE_FETCH_SPEC),
                    label=f"fetch {opts.mailbox}",
                )
                messages = [self._build_message(cursor, item) for item in data]
                for message in messages:
                    message.mark_for_delete = deleting

                yield messages

                if deleting:
                    doomed = [m.uid for m in messages if m.mark_for_delete]
                    await self._mark_deleted(cursor, deletions, doomed)

            if deleting and deletions.uids:
                await self.controller.run(
                    partial(self._expunge, cursor, deletions),
                    label=f"expunge {opts.mailbox}",
                )
                logger.info(f"Deleted {len(deletions.uids)} messages from {opts.mailbox}")

    async def find_each(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Message]:
        """Stream matching messages one at a time (count defaults to 10)."""
        opts = RetrievalOptions.build(options, defaults=FIND_DEFAULTS, **overrides)
        async with aclosing(self.find_in_batches(opts)) as batches:
            async for batch in batches:
                for message in batch:
                    yield message

    async def find(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        callback: Callable[[Message], Any] | None = None,
        **overrides: Any,
    ) -> Message | list[Message] | None:
        """
        Find messages.

        Args:
            options: RetrievalOptions or a mapping of options.
            callback: Called (or awaited) with each message as it arrives.
                      When given, nothing is aggregated and None is returned.
            **overrides: Individual options. count defaults to 10.

        Returns:
            The messages in the requested order; a single Message when
            count is 1 and exactly one message matched.

        Example:
            >>> newest = await retriever.find(what="last", count=1)
        """
        opts = RetrievalOptions.build(options, defaults=FIND_DEFAULTS, **overrides)

        if callback is not None:
            async with aclosing(self.find_each(opts)) as messages:
                async for message in messages:
                    await invoke(callback, message)
            return None

        results: list[Message] = []
        async with aclosing(self.find_in_batches(opts)) as batches:
            async for batch in batches:
                results.extend(batch)
        return collapse(results, opts.count)

    async def delete_all(self, mailbox: str = "INBOX") -> int:
        """
        Delete every message in a mailbox.

        Search, mark and expunge run as a single unit, so a retry after a
        reconnect starts over from the search.

        Returns:
            Number of messages deleted.
        """
        mailbox = mailbox or "INBOX"
        logger.info(f"Deleting all messages in {mailbox}")

        async def unit(transport: Any) -> int:
            await transport.select(mailbox, read_only=False)
            uids = await transport.uid_search("ALL")
            for chunk in batched(uids, STORE_CHUNK_SIZE):
                await transport.uid_store(format_uid_set(chunk), "+FLAGS", "(\\Deleted)")
            if uids:
                await transport.expunge()
            return len(uids)

        async with self.controller.lease():
            deleted = await self.controller.run(unit, label=f"delete all in {mailbox}")
        logger.info(f"Deleted {deleted} messages from {mailbox}")
        return deleted

    # =========================================================================
    # Entries
    # =========================================================================

    async def find_entries_in_batches(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[list[Entry]]:
        """
        Stream header-only entries in batches.

        The mailbox is always opened with EXAMINE. count defaults to "all",
        batch_size to 5000.

        Raises:
            ValueError: On invalid options, or if delete_after_find is set.
        """
        opts = RetrievalOptions.build(options, defaults=BATCH_DEFAULTS, **overrides)
        if opts.delete_after_find:
            raise ValueError("entries are read-only; delete_after_find is not supported")
        batch_size = opts.batch_size or ENTRY_BATCH_SIZE
        logger.info(
            f"Finding entries in {opts.mailbox} ({opts.what.value} {opts.count}, "
            f"{opts.order.value}, batches of {batch_size})"
        )

        async with self.controller.lease():
            cursor = await self._open_cursor(opts, read_only=True)
            for uids in batched(cursor.uids, batch_size):
                data = await self.controller.run(
                    partial(self._fetch, cursor, uids, ENTRY_FETCH_SPEC),
                    label=f"fetch entries {opts.mailbox}",
                )
                yield [self._build_entry(cursor, item) for item in data]

    async def find_each_entry(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Entry]:
        opts = RetrievalOptions.build(options, defaults=FIND_DEFAULTS, **overrides)
        async with aclosing(self.find_entries_in_batches(opts)) as batches:
            async for batch in batches:
                for entry in batch:
                    yield entry

    async def find_entries(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        callback: Callable[[Entry], Any] | None = None,
        **overrides: Any,
    ) -> Entry | list[Entry] | None:
        """Find entries; same contract as find()."""
        opts = RetrievalOptions.build(options, defaults=FIND_DEFAULTS, **overrides)

        if callback is not None:
            async with aclosing(self.find_each_entry(opts)) as entries:
                async for entry in entries:
                    await invoke(callback, entry)
            return None

        results: list[Entry] = []
        async with aclosing(self.find_entries_in_batches(opts)) as batches:
            async for batch in batches:
                results.extend(batch)
        return collapse(results, opts.count)

    # =========================================================================
    # Folders
    # =========================================================================

    async def find_each_folder(
        self,
        options: FolderOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Folder]:
        """
        Stream folders with their STATUS counters.

        The listing is filtered first; what/count/order then apply to the
        surviving folders, and only those get a STATUS query.

        Args:
            options: FolderOptions or a mapping of options.
            **overrides: Individual options, including flat filter rules
                         (include_names, exclude_flags, ...).

        Yields:
            Folder records.
        """
        opts = FolderOptions.build(options, **overrides)
        matcher = FolderMatcher(opts.filter)
        command = "LSUB" if opts.subscribed else "LIST"

        async with self.controller.lease():
            pattern = "*"
            if opts.mailbox:
                delimiter = await self.controller.run(
                    lambda transport: transport.hierarchy_delimiter(),
                    label="LIST delimiter",
                ) or DEFAULT_DELIMITER
                prefix = opts.mailbox.rstrip(delimiter)
                pattern = f"{prefix}{delimiter}*" if prefix else "*"
            logger.info(f"Finding folders matching {pattern!r} ({command})")

            listed = await self.controller.run(
                lambda transport: transport.list_mailboxes(
                    "", pattern, subscribed=opts.subscribed
                ),
                label=f"{command} {pattern}",
            )
            kept = [box for box in listed if matcher.matches(box.name, box.flags)]
            kept = take(kept, opts.what, opts.limit, opts.order)
            logger.debug(f"{len(kept)} of {len(listed)} folders kept")

            for box in kept:
                if "noselect" in box.flags:
                    status: dict[str, int] = {}
                else:
                    status = await self.controller.run(
                        lambda transport, name=box.name: transport.status(name, STATUS_FIELDS),
                        label=f"STATUS {box.name}",
                    )
                yield Folder(
                    name=box.name,
                    delimiter=box.delimiter,
                    flags=box.flags,
                    messages=status.get("MESSAGES"),
                    unseen=status.get("UNSEEN"),
                    validity=status.get("UIDVALIDITY"),
                    next_uid=status.get("UIDNEXT"),
                )

    async def find_folders(
        self,
        options: FolderOptions | Mapping[str, Any] | None = None,
        callback: Callable[[Folder], Any] | None = None,
        **overrides: Any,
    ) -> Folder | list[Folder] | None:
        """
        Find folders.

        Returns:
            The folders; a single Folder when count is 1 and exactly one
            folder survived. None when a callback was given.
        """
        opts = FolderOptions.build(options, **overrides)

        if callback is not None:
            async with aclosing(self.find_each_folder(opts)) as folders:
                async for folder in folders:
                    await invoke(callback, folder)
            return None

        results: list[Folder] = []
        async with aclosing(self.find_each_folder(opts)) as folders:
            async for folder in folders:
                results.append(folder)
        return collapse(results, opts.count)

    # =========================================================================
    # Raw Access
    # =========================================================================

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """
        Yield the live transport for raw commands.

        The session is opened with retry and closed when the block exits.
        Commands issued inside the block are not retried.
        """
        async with self.controller.lease():
            transport = await self.controller.open()
            yield transport

    # =========================================================================
    # Units of Work
    # =========================================================================

    async def _open_cursor(self, opts: RetrievalOptions, *, read_only: bool) -> _Cursor:
        criteria = search_criteria(opts)

        async def unit(transport: Any) -> _Cursor:
            validity = await transport.select(opts.mailbox, read_only=read_only)
            found = await transport.uid_search(criteria)
            uids = select_uids(found, opts.what, opts.count, opts.order)
            logger.debug(
                f"{opts.mailbox}: {len(found)} UIDs match {criteria!r}, {len(uids)} selected"
            )
            return _Cursor(opts.mailbox, read_only, validity, uids)

        return await self.controller.run(unit, label=f"search {opts.mailbox}")

    async def _reselect(self, transport: Any, cursor: _Cursor) -> None:
        """SELECT the cursor's mailbox again on a new session, checking validity."""
        if transport.selected == cursor.mailbox and transport.read_only == cursor.read_only:
            return
        validity = await transport.select(cursor.mailbox, read_only=cursor.read_only)
        if validity != cursor.validity:
            raise UIDValidityError(cursor.mailbox, cursor.validity, validity)

    async def _fetch(
        self,
        cursor: _Cursor,
        uids: list[int],
        spec: str,
        transport: Any,
    ) -> list[FetchData]:
        await self._reselect(transport, cursor)
        fetched = await transport.uid_fetch(format_uid_set(uids), spec)

        # Servers answer in any order; keep the cursor's order
        by_uid: dict[int, FetchData] = {}
        for item in fetched:
            known = by_uid.get(item.uid)
            by_uid[item.uid] = item if known is None else known.merged_with(item)
        missing = [uid for uid in uids if uid not in by_uid]
        if missing:
            logger.debug(f"{cursor.mailbox}: UIDs gone before fetch: {missing}")
        return [by_uid[uid] for uid in uids if uid in by_uid]

    async def _mark_deleted(
        self,
        cursor: _Cursor,
        deletions: _DeletionLog,
        uids: list[int],
    ) -> None:
        if not uids:
            return

        async def unit(transport: Any) -> None:
            await self._reselect(transport, cursor)
            await self._store_deleted(transport, self._pending_marks(deletions) + uids)
            deletions.generation = self.controller.generation

        await self.controller.run(unit, label=f"mark {cursor.mailbox}")
        deletions.uids.extend(uids)

    async def _expunge(self, cursor: _Cursor, deletions: _DeletionLog, transport: Any) -> None:
        await self._reselect(transport, cursor)
        stale = self._pending_marks(deletions)
        if stale:
            await self._store_deleted(transport, stale)
            deletions.generation = self.controller.generation
        await transport.expunge()

    def _pending_marks(self, deletions: _DeletionLog) -> list[int]:
        """Marks stored under an earlier session, which must be stored again."""
        if deletions.uids and deletions.generation != self.controller.generation:
            logger.debug(f"Re-asserting {len(deletions.uids)} deletion marks after reconnect")
            return list(deletions.uids)
        return []

    async def _store_deleted(self, transport: Any, uids: list[int]) -> None:
        for chunk in batched(uids, STORE_CHUNK_SIZE):
            await transport.uid_store(format_uid_set(chunk), "+FLAGS", "(\\Deleted)")

    # =========================================================================
    # Result Construction
    # =========================================================================

    def _build_message(self, cursor: _Cursor, data: FetchData) -> Message:
        return Message(
            raw=data.body or b"",
            folder=cursor.mailbox,
            validity=cursor.validity,
            uid=data.uid,
            flags=data.flags,
            size=data.size,
            date=data.date,
            message_id=data.message_id,
        )

    def _build_entry(self, cursor: _Cursor, data: FetchData) -> Entry:
        return Entry(
            folder=cursor.mailbox,
            validity=cursor.validity,
            uid=data.uid,
            size=data.size or 0,
            date=data.date,
            message_id=data.message_id,
            flags=data.flags,
        )
