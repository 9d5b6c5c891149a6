# =============================================================================
# IMAP Retriever Tests
# =============================================================================
# Batched retrieval, ordering, deletion and recovery against FakeIMAPServer.
# =============================================================================

import ssl
from contextlib import aclosing

import pytest

from mail_retriever.core.entry import Entry
from mail_retriever.core.message import Message
from mail_retriever.errors import ErrorKind
from mail_retriever.imap.retriever import IMAPRetriever
from mail_retriever.imap.transport import IMAPCommandError, IMAPProtocolError
from mail_retriever.retry import Absent, FailureClass, RetrievalError, UIDValidityError

from conftest import make_raw


@pytest.fixture
def retriever(imap_server, settings, fake_sleep):
    return IMAPRetriever(settings, transport_factory=imap_server.connect, sleep=fake_sleep)


def uids_of(items):
    return [item.uid for item in items]


# =============================================================================
# Selection and Ordering
# =============================================================================

class TestFind:
    @pytest.mark.asyncio
    async def test_last_two_descending_in_single_item_batches(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [101, 102, 103, 104, 105], validity=7)
        options = {"what": "last", "count": 2, "batch_size": 1, "order": "desc"}

        batches = []
        async with aclosing(retriever.find_in_batches(options)) as stream:
            async for batch in stream:
                batches.append(uids_of(batch))
        assert batches == [[105], [104]]

        found = await retriever.find(options)
        assert uids_of(found) == [105, 104]
        assert all(m.folder == "INBOX" and m.validity == 7 for m in found)

    @pytest.mark.asyncio
    async def test_last_two_ascending(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [101, 102, 103, 104, 105])

        found = await retriever.find(what="last", count=2, order="asc")

        assert uids_of(found) == [104, 105]

    @pytest.mark.asyncio
    async def test_server_order_does_not_leak_into_results(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2, 3, 4, 5])

        found = await retriever.find(batch_size=5)

        assert uids_of(found) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_flag_updates_do_not_replace_message_data(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2, 3])
        imap_server.flag_updates = {2}

        found = await retriever.find(count="all")

        assert uids_of(found) == [1, 2, 3]
        assert found[1].raw == make_raw(2)
        assert found[1].message_id == "2@example.com"
        assert found[1].flags == {"seen"}
        assert found[0].flags == frozenset()

    @pytest.mark.asyncio
    async def test_count_one_returns_bare_message(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [7, 8, 9])

        found = await retriever.find(count=1)

        assert isinstance(found, Message)
        assert found.uid == 7
        assert found.subject == "Message 7"
        assert found.message_id == "7@example.com"

    @pytest.mark.asyncio
    async def test_count_one_on_empty_mailbox_returns_empty_list(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [])

        assert await retriever.find(count=1) == []

    @pytest.mark.asyncio
    async def test_find_defaults_to_ten(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", list(range(1, 16)))

        found = await retriever.find()

        assert uids_of(found) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_batches_default_to_everything(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", list(range(1, 26)))

        sizes = []
        async with aclosing(retriever.find_in_batches()) as stream:
            async for batch in stream:
                sizes.append(len(batch))

        assert sizes == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_uid_list_replaces_keys(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [101, 102, 103, 104])

        found = await retriever.find(uids=[102, 104], keys="UNSEEN")

        assert uids_of(found) == [102, 104]
        assert imap_server.commands("search")[0][2] == "UID 102,104"

    @pytest.mark.asyncio
    async def test_key_tokens_are_joined(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1])

        await retriever.find(keys=["FROM", "bob", "UNSEEN"])

        assert imap_server.commands("search")[0][2] == "FROM bob UNSEEN"

    @pytest.mark.asyncio
    async def test_callback_receives_each_message(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2, 3])
        seen = []

        async def collect(message):
            seen.append(message.uid)

        result = await retriever.find(callback=collect, batch_size=2)

        assert result is None
        assert seen == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_session_released_after_call(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1])

        await retriever.find()

        assert not retriever.controller.is_connected
        assert len(imap_server.commands("logout")) == 1

    @pytest.mark.asyncio
    async def test_read_only_uses_examine(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1])

        await retriever.find(read_only=True)

        assert imap_server.commands("examine")
        assert not imap_server.commands("select")


class TestOptionErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("options", [
        {"read_only": True, "delete_after_find": True},
        {"count": 0},
        {"what": "middle"},
        {"order": "sideways"},
        {"batch_size": 0},
        {"colour": "blue"},
    ])
    async def test_invalid_options_rejected_before_connecting(self, retriever, imap_server, options):
        with pytest.raises(ValueError):
            await retriever.find(options)

        assert imap_server.connects == 0


# =============================================================================
# Deletion
# =============================================================================

class TestDeleteAfterFind:
    @pytest.mark.asyncio
    async def test_marks_each_consumed_batch_and_expunges_once(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2, 3])

        found = await retriever.find(delete_after_find=True, batch_size=2)

        assert uids_of(found) == [1, 2, 3]
        assert box.messages == {}
        sequence = [
            (command, argument)
            for _, command, argument in imap_server.calls
            if command in ("fetch", "store", "expunge")
        ]
        assert sequence == [
            ("fetch", "1,2"),
            ("store", "1,2"),
            ("fetch", "3"),
            ("store", "3"),
            ("expunge", "INBOX"),
        ]

    @pytest.mark.asyncio
    async def test_early_exit_deletes_nothing(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2, 3])

        async with aclosing(retriever.find_in_batches(delete_after_find=True, batch_size=1)) as stream:
            async for batch in stream:
                assert all(m.mark_for_delete for m in batch)
                break

        assert sorted(box.messages) == [1, 2, 3]
        assert not imap_server.commands("store")
        assert not imap_server.commands("expunge")
        assert len(imap_server.commands("logout")) == 1

    @pytest.mark.asyncio
    async def test_consumer_can_keep_a_message(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2, 3])

        def keep_even(message):
            if message.uid % 2 == 0:
                message.mark_for_delete = False

        await retriever.find(delete_after_find=True, callback=keep_even)

        assert sorted(box.messages) == [2]

    @pytest.mark.asyncio
    async def test_failure_midway_deletes_nothing(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2])

        def fail_next_fetch(message):
            if message.uid == 1:
                imap_server.fail("fetch", IMAPCommandError("UID FETCH failed: NO"))

        with pytest.raises(RetrievalError) as excinfo:
            await retriever.find(delete_after_find=True, batch_size=1, callback=fail_next_fetch)

        assert excinfo.value.failure is FailureClass.SERVER
        assert sorted(box.messages) == [1, 2]
        assert not imap_server.commands("expunge")
        assert len(imap_server.commands("logout")) == 1

    @pytest.mark.asyncio
    async def test_marks_are_stored_again_after_reconnect(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2])

        def drop_connection(message):
            if message.uid == 1:
                imap_server.fail("fetch", ConnectionResetError("reset by peer"))

        await retriever.find(delete_after_find=True, batch_size=1, callback=drop_connection)

        assert box.messages == {}
        assert imap_server.commands("store") == [(1, "store", "1"), (2, "store", "1,2")]
        assert imap_server.commands("expunge") == [(2, "expunge", "INBOX")]

    @pytest.mark.asyncio
    async def test_delete_all(self, retriever, imap_server):
        box = imap_server.add_mailbox("Archive", [4, 5, 6])

        deleted = await retriever.delete_all("Archive")

        assert deleted == 3
        assert box.messages == {}
        assert imap_server.commands("select") == [(1, "select", "Archive")]
        assert len(imap_server.commands("expunge")) == 1


# =============================================================================
# Recovery
# =============================================================================

class TestRecovery:
    @pytest.mark.asyncio
    async def test_reconnects_and_reselects_after_connection_reset(
        self, retriever, imap_server, sleeps
    ):
        imap_server.add_mailbox("INBOX", [1, 2, 3])
        imap_server.fail("fetch", ConnectionResetError("reset by peer"))

        found = await retriever.find(batch_size=2)

        assert uids_of(found) == [1, 2, 3]
        assert imap_server.connects == 2
        assert retriever.controller.discards == 1
        assert sleeps == [0.5]
        second_session = [command for gen, command, _ in imap_server.calls if gen == 2]
        assert second_session == ["connect", "select", "fetch", "fetch", "logout"]

    @pytest.mark.asyncio
    async def test_bad_response_retries_on_the_same_session(self, retriever, imap_server, sleeps):
        box = imap_server.add_mailbox("INBOX", [101, 102, 103])

        def vanish():
            del box.messages[102]

        imap_server.fail("fetch", IMAPProtocolError("UID FETCH failed: BAD"), action=vanish)

        found = await retriever.find()

        assert uids_of(found) == [101, 103]
        assert imap_server.connects == 1
        assert retriever.controller.discards == 0
        assert sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self, retriever, imap_server, sleeps):
        imap_server.add_mailbox("INBOX", [1])
        imap_server.fail("fetch", BrokenPipeError("broken pipe"), times=10)

        with pytest.raises(RetrievalError) as excinfo:
            await retriever.find()

        error = excinfo.value
        assert error.failure is FailureClass.RECONNECT
        assert error.attempts == 3
        assert error.description.kind is ErrorKind.BROKEN_PIPE
        assert isinstance(error.__cause__, BrokenPipeError)
        assert sleeps == [0.5, 1.0]
        assert isinstance(retriever.controller.state, Absent)

    @pytest.mark.asyncio
    async def test_certificate_failure_is_not_retried(self, retriever, imap_server, sleeps):
        imap_server.add_mailbox("INBOX", [1])
        imap_server.fail(
            "connect",
            ssl.SSLCertVerificationError(
                1, "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed: self-signed certificate"
            ),
        )

        with pytest.raises(RetrievalError) as excinfo:
            await retriever.find()

        assert excinfo.value.failure is FailureClass.FATAL
        assert excinfo.value.attempts == 1
        assert imap_server.connects == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_other_tls_failures_reconnect(self, retriever, imap_server, sleeps):
        imap_server.add_mailbox("INBOX", [1])
        imap_server.fail("connect", ssl.SSLError("handshake failure"))

        found = await retriever.find()

        assert uids_of(found) == [1]
        assert imap_server.connects == 2
        assert sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_validity_change_between_units_is_fatal(self, retriever, imap_server):
        box = imap_server.add_mailbox("INBOX", [1, 2, 3], validity=7)

        def renumber():
            box.validity = 8

        imap_server.fail("fetch", ConnectionResetError("reset by peer"), action=renumber)

        with pytest.raises(UIDValidityError) as excinfo:
            await retriever.find(batch_size=2)

        assert excinfo.value.failure is FailureClass.FATAL
        assert (excinfo.value.expected, excinfo.value.actual) == (7, 8)
        assert not imap_server.commands("expunge")

    @pytest.mark.asyncio
    async def test_connection_block_opens_with_retry(self, retriever, imap_server, sleeps):
        imap_server.fail("connect", ConnectionRefusedError("refused"))

        async with retriever.connection() as transport:
            assert transport is imap_server.sessions[-1]
            assert retriever.controller.is_connected

        assert transport.logged_out
        assert sleeps == [0.5]


# =============================================================================
# Entries
# =============================================================================

class TestEntries:
    @pytest.mark.asyncio
    async def test_entries_are_read_only(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2, 3], validity=42)

        entries = await retriever.find_entries(count="all")

        assert uids_of(entries) == [1, 2, 3]
        assert all(isinstance(e, Entry) and e.validity == 42 for e in entries)
        assert entries[0].message_id == "1@example.com"
        assert imap_server.commands("examine")
        assert not imap_server.commands("select")

    @pytest.mark.asyncio
    async def test_entry_batches(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2, 3, 4, 5])

        batches = []
        async with aclosing(retriever.find_entries_in_batches(batch_size=2, order="desc")) as stream:
            async for batch in stream:
                batches.append(uids_of(batch))

        assert batches == [[5, 4], [3, 2], [1]]

    @pytest.mark.asyncio
    async def test_single_entry_collapses(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1, 2])

        entry = await retriever.find_entries(what="last", count=1)

        assert isinstance(entry, Entry)
        assert entry.uid == 2

    @pytest.mark.asyncio
    async def test_entries_refuse_deletion(self, retriever, imap_server):
        imap_server.add_mailbox("INBOX", [1])

        with pytest.raises(ValueError):
            await retriever.find_entries(delete_after_find=True)
