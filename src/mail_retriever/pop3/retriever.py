# =============================================================================
# POP3 Retriever
# =============================================================================
# The retrieval API for POP3 mailboxes. POP3 has one mailbox, no folders,
# no flags and no header-only cursor, so:
#   - find_folders() always finds nothing
#   - find_entries*() produce no entries
#   - messages are addressed by message number, chosen first/last/ordered
#     the same way IMAP UIDs are
#
# Deleted messages are marked with DELE as batches are consumed and only
# removed by the QUIT that ends a fully successful call. Any other ending
# (early exit, failure) sends RSET before QUIT, so nothing is deleted.
#
# Message numbers are only stable within a session. After a reconnect the
# original numbers are translated through UIDL unique ids, and messages
# that vanished in between are skipped.
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from mail_retriever.core.account import Settings
from mail_retriever.core.entry import Entry
from mail_retriever.core.folder import Folder
from mail_retriever.core.message import Message
from mail_retriever.core.options import ALL, FolderOptions, RetrievalOptions
from mail_retriever.imap.cursor import batched, select_uids
from mail_retriever.pop3.transport import POP3Transport
from mail_retriever.results import collapse, invoke
from mail_retriever.retry import SessionController

logger = logging.getLogger(__name__)

# Default number of messages per batch
BATCH_SIZE = 100

BATCH_DEFAULTS = {"count": ALL}
FIND_DEFAULTS = {"count": 10}

TransportFactory = Callable[[Settings], Awaitable[Any]]


async def open_transport(settings: Settings) -> POP3Transport:
    """Default session factory: a connected, authenticated POP3Transport."""
    return await POP3Transport(settings).connect()


@dataclass
class _Listing:
    """
    The messages a call works on, keyed by their number in the first session.

    Attributes:
        numbers: Selected message numbers, in the order they are produced.
        ids: Unique id of every listed message.
        current: Number of each message in the session of `generation`.
        generation: Session the `current` mapping belongs to.
        deleted: Messages marked with DELE so far.
        deleted_generation: Session those marks were issued in.
    """
    numbers: list[int]
    ids: dict[int, str]
    current: dict[int, int]
    generation: int
    deleted: list[int] = field(default_factory=list)
    deleted_generation: int = 0


class POP3Retriever:
    """
    Retrieves messages from a POP3 server.

    Usage:
        >>> retriever = POP3Retriever(Settings.for_pop3(address="pop.example.com", ...))
        >>> newest = await retriever.find(what="last", count=3, order="desc")
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport_factory: TransportFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
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
        Stream messages in batches (count defaults to "all", batch_size to 100).

        With delete_after_find, clear a yielded message's mark_for_delete
        before asking for the next batch to keep it on the server.

        Raises:
            ValueError: On invalid options.
            RetrievalError: When a unit of work fails for good.
        """
        opts = RetrievalOptions.build(options, defaults=BATCH_DEFAULTS, **overrides)
        batch_size = opts.batch_size or BATCH_SIZE
        deleting = opts.delete_after_find
        logger.info(
            f"Finding POP3 messages ({opts.what.value} {opts.count}, {opts.order.value}, "
            f"batches of {batch_size}, delete={deleting})"
        )

        async with self.controller.lease():
            listing = await self.controller.run(
                partial(self._list, opts), label="list messages"
            )

            for numbers in batched(listing.numbers, batch_size):
                fetched = await self.controller.run(
                    partial(self._retrieve, listing, numbers), label="retrieve messages"
                )
                messages = [
                    Message(raw=raw, uid=number, mark_for_delete=deleting)
                    for number, raw in fetched
                ]

                yield messages

                if deleting:
                    doomed = [m.uid for m in messages if m.mark_for_delete]
                    if doomed:
                        await self.controller.run(
                            partial(self._mark_deleted, listing, doomed),
                            label="mark messages",
                        )
                        listing.deleted.extend(doomed)

            if deleting and listing.deleted:
                await self.controller.run(partial(self._commit, listing), label="commit")
                await self.controller.disconnect()
                logger.info(f"Deleted {len(listing.deleted)} messages")

    async def find_each(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Message]:
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
            callback: Called (or awaited) with each message. With
                      delete_after_find it may clear mark_for_delete to keep
                      the message. When given, None is returned.
            **overrides: Individual options. count defaults to 10.

        Returns:
            The messages in the requested order; a single Message when
            count is 1 and exactly one message was found.
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

    async def delete_all(self) -> int:
        """
        Delete every message on the server.

        Returns:
            Number of messages deleted.
        """
        logger.info("Deleting all POP3 messages")

        async def unit(transport: Any) -> int:
            listed = await transport.list_messages()
            for number, _ in listed:
                await transport.delete(number)
            if listed:
                await transport.commit()
            return len(listed)

        async with self.controller.lease():
            deleted = await self.controller.run(unit, label="delete all")
            await self.controller.disconnect()
        logger.info(f"Deleted {deleted} messages")
        return deleted

    # =========================================================================
    # Entries and Folders (not available over POP3)
    # =========================================================================

    async def find_entries_in_batches(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[list[Entry]]:
        RetrievalOptions.build(options, defaults=BATCH_DEFAULTS, **overrides)
        logger.debug("POP3 has no header-only listing; no entries")
        return
        yield

    async def find_each_entry(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Entry]:
        async with aclosing(self.find_entries_in_batches(options, **overrides)) as batches:
            async for batch in batches:
                for entry in batch:
                    yield entry

    async def find_entries(
        self,
        options: RetrievalOptions | Mapping[str, Any] | None = None,
        callback: Callable[[Entry], Any] | None = None,
        **overrides: Any,
    ) -> list[Entry] | None:
        RetrievalOptions.build(options, defaults=FIND_DEFAULTS, **overrides)
        return None if callback is not None else []

    async def find_each_folder(
        self,
        options: FolderOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> AsyncIterator[Folder]:
        FolderOptions.build(options, **overrides)
        return
        yield

    async def find_folders(
        self,
        options: FolderOptions | Mapping[str, Any] | None = None,
        callback: Callable[[Folder], Any] | None = None,
        **overrides: Any,
    ) -> list[Folder] | None:
        FolderOptions.build(options, **overrides)
        return None if callback is not None else []

    # =========================================================================
    # Raw Access
    # =========================================================================

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Yield the live transport. The session is rolled back on exit."""
        async with self.controller.lease():
            transport = await self.controller.open()
            yield transport

    # =========================================================================
    # Units of Work
    # =========================================================================

    async def _list(self, opts: RetrievalOptions, transport: Any) -> _Listing:
        listed = await transport.list_messages()
        ids = await transport.unique_ids()
        numbers = select_uids((n for n, _ in listed), opts.what, opts.count, opts.order)
        logger.debug(f"{len(listed)} messages on server, {len(numbers)} selected")
        return _Listing(
            numbers=numbers,
            ids=ids,
            current={number: number for number in ids},
            generation=self.controller.generation,
        )

    async def _current_numbers(self, listing: _Listing, transport: Any) -> dict[int, int]:
        """Translate original message numbers into this session's numbers."""
        if listing.generation != self.controller.generation:
            by_id = {uid: number for number, uid in (await transport.unique_ids()).items()}
            listing.current = {
                original: by_id[uid] for original, uid in listing.ids.items() if uid in by_id
            }
            listing.generation = self.controller.generation
        return listing.current

    async def _retrieve(
        self,
        listing: _Listing,
        numbers: list[int],
        transport: Any,
    ) -> list[tuple[int, bytes]]:
        current = await self._current_numbers(listing, transport)
        fetched = []
        for number in numbers:
            if number not in current:
                logger.debug(f"Message {number} vanished before retrieval")
                continue
            fetched.append((number, await transport.retrieve(current[number])))
        return fetched

    async def _reassert(self, listing: _Listing, transport: Any) -> None:
        """DELE again the marks lost with an earlier session."""
        if listing.deleted and listing.deleted_generation != self.controller.generation:
            current = await self._current_numbers(listing, transport)
            logger.debug(f"Re-asserting {len(listing.deleted)} deletion marks after reconnect")
            for number in listing.deleted:
                if number in current:
                    await transport.delete(current[number])
            listing.deleted_generation = self.controller.generation

    async def _mark_deleted(self, listing: _Listing, numbers: list[int], transport: Any) -> None:
        await self._reassert(listing, transport)
        current = await self._current_numbers(listing, transport)
        for number in numbers:
            if number in current:
                await transport.delete(current[number])
        listing.deleted_generation = self.controller.generation

    async def _commit(self, listing: _Listing, transport: Any) -> None:
        await self._reassert(listing, transport)
        await transport.commit()
