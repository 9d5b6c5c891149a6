# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mail-retriever test suite.
#
# No test touches the network. The retrievers take a `transport_factory`,
# and these fixtures hand them in-memory fake servers instead:
#   - FakeIMAPServer: mailboxes with UIDVALIDITY, UIDs, flags and
#     attributes; every session it opens is a FakeIMAPTransport
#   - FakePOP3Server: one maildrop with UIDL ids; deletion marks belong to
#     a session and only apply on commit (QUIT)
#
# Both servers keep a call log of (generation, command, argument) tuples
# and can be scripted to fail a command a number of times.
# =============================================================================

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from mail_retriever.core.account import Settings
from mail_retriever.imap.transport import FetchData, ListedMailbox


def make_raw(uid: int, subject: str | None = None) -> bytes:
    """Build a small RFC 2822 message."""
    subject = subject or f"Message {uid}"
    return (
        f"From: Sender <sender@example.com>\r\n"
        f"To: rcpt@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Message-ID: <{uid}@example.com>\r\n"
        f"\r\n"
        f"Body of {uid}\r\n"
    ).encode()


# =============================================================================
# Scripted Failures
# =============================================================================

@dataclass
class _Failure:
    error: BaseException
    times: int
    action: Callable[[], None] | None = None


class _Scripted:
    """Call log and failure script shared by both fake servers."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, str, Any]] = []
        self.connects = 0
        self._failures: dict[str, list[_Failure]] = {}

    def fail(
        self,
        command: str,
        error: BaseException,
        *,
        times: int = 1,
        action: Callable[[], None] | None = None,
    ) -> None:
        """Make the next `times` calls of `command` raise `error`.

        `action`, if given, runs just before each failure is raised.
        """
        self._failures.setdefault(command, []).append(_Failure(error, times, action))

    def record(self, generation: int, command: str, argument: Any = None) -> None:
        self.calls.append((generation, command, argument))
        pending = self._failures.get(command)
        if pending:
            failure = pending[0]
            failure.times -= 1
            if failure.times <= 0:
                pending.pop(0)
            if failure.action is not None:
                failure.action()
            raise failure.error

    def commands(self, command: str | None = None) -> list[tuple[int, str, Any]]:
        return [call for call in self.calls if command is None or call[1] == command]


# =============================================================================
# Fake IMAP
# =============================================================================

@dataclass
class FakeMailbox:
    validity: int
    messages: dict[int, bytes] = field(default_factory=dict)
    flags: dict[int, set[str]] = field(default_factory=dict)
    attributes: frozenset[str] = frozenset({"hasnochildren"})
    subscribed: bool = True


class FakeIMAPServer(_Scripted):
    """An in-memory IMAP server."""

    def __init__(self) -> None:
        super().__init__()
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.sessions: list["FakeIMAPTransport"] = []
        # UIDs that get an extra flag-only FETCH record after their data
        self.flag_updates: set[int] = set()
        self.delimiter: str | None = "/"

    def add_mailbox(
        self,
        name: str,
        uids: list[int] = (),
        *,
        validity: int = 7,
        attributes: frozenset[str] = frozenset({"hasnochildren"}),
        subscribed: bool = True,
    ) -> FakeMailbox:
        box = FakeMailbox(validity=validity, attributes=frozenset(attributes), subscribed=subscribed)
        for uid in uids:
            box.messages[uid] = make_raw(uid)
            box.flags[uid] = set()
        self.mailboxes[name] = box
        return box

    async def connect(self, settings: Settings) -> "FakeIMAPTransport":
        self.connects += 1
        self.record(self.connects, "connect", settings.address)
        transport = FakeIMAPTransport(self, self.connects)
        self.sessions.append(transport)
        return transport


class FakeIMAPTransport:
    """One session of a FakeIMAPServer, with the IMAPTransport interface."""

    def __init__(self, server: FakeIMAPServer, generation: int) -> None:
        self.server = server
        self.generation = generation
        self.selected: str | None = None
        self.read_only = False
        self.validity: int | None = None
        self.logged_out = False
        self.closed = False

    def _record(self, command: str, argument: Any = None) -> None:
        self.server.record(self.generation, command, argument)

    def _box(self) -> FakeMailbox:
        return self.server.mailboxes[self.selected]

    async def logout(self) -> None:
        self._record("logout")
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True
        self.selected = None

    async def hierarchy_delimiter(self):
        self._record("list", "")
        return self.server.delimiter

    async def list_mailboxes(self, reference="", pattern="*", *, subscribed=False):
        self._record("lsub" if subscribed else "list", pattern)
        prefix = pattern[:-1] if pattern.endswith("*") else pattern
        return [
            ListedMailbox(name=name, delimiter=self.server.delimiter, flags=box.attributes)
            for name, box in self.server.mailboxes.items()
            if name.startswith(prefix) and (box.subscribed or not subscribed)
        ]

    async def status(self, name, fields=()):
        self._record("status", name)
        box = self.server.mailboxes[name]
        return {
            "MESSAGES": len(box.messages),
            "UNSEEN": sum(1 for uid in box.messages if "seen" not in box.flags[uid]),
            "UIDVALIDITY": box.validity,
            "UIDNEXT": max(box.messages, default=0) + 1,
        }

    async def select(self, name, *, read_only=False):
        self._record("examine" if read_only else "select", name)
        self.selected = name
        self.read_only = read_only
        self.validity = self.server.mailboxes[name].validity
        return self.validity

    async def uid_search(self, criteria):
        self._record("search", criteria)
        uids = list(self._box().messages)
        if criteria.startswith("UID "):
            wanted = _parse_uid_set(criteria[4:], uids)
            uids = [uid for uid in uids if uid in wanted]
        # Servers do not promise any order
        return list(reversed(uids))

    async def uid_fetch(self, uids, spec):
        self._record("fetch", uids)
        box = self._box()
        found = []
        for uid in (int(u) for u in uids.split(",")):
            if uid not in box.messages:
                continue
            raw = box.messages[uid]
            found.append(FetchData(
                uid=uid,
                flags=frozenset(box.flags[uid]),
                size=len(raw),
                message_id=f"{uid}@example.com",
                body=raw if "RFC822 " in spec or "RFC822)" in spec else None,
            ))
        updates = [
            FetchData(uid=item.uid, flags=frozenset({"seen"}))
            for item in found
            if item.uid in self.server.flag_updates
        ]
        return list(reversed(found)) + updates

    async def uid_store(self, uids, operation, flags):
        self._record("store", uids)
        box = self._box()
        for uid in (int(u) for u in uids.split(",")):
            if uid in box.flags:
                box.flags[uid].add("deleted")

    async def expunge(self):
        self._record("expunge", self.selected)
        box = self._box()
        for uid in [uid for uid, flags in box.flags.items() if "deleted" in flags]:
            del box.messages[uid]
            del box.flags[uid]


def _parse_uid_set(text: str, existing: list[int]) -> set[int]:
    wanted: set[int] = set()
    top = max(existing, default=0)
    for part in text.split(","):
        if ":" in part:
            start, end = part.split(":")
            wanted.update(range(int(start), (top if end == "*" else int(end)) + 1))
        else:
            wanted.add(int(part))
    return wanted


# =============================================================================
# Fake POP3
# =============================================================================

class FakePOP3Server(_Scripted):
    """An in-memory POP3 maildrop of (unique id, raw message) pairs."""

    def __init__(self, count: int = 0) -> None:
        super().__init__()
        self.messages: list[tuple[str, bytes]] = [
            (f"uid-{n}", make_raw(n)) for n in range(1, count + 1)
        ]

    async def connect(self, settings: Settings) -> "FakePOP3Transport":
        self.connects += 1
        self.record(self.connects, "connect", settings.address)
        return FakePOP3Transport(self, self.connects)


class FakePOP3Transport:
    """One POP3 session. Numbers are fixed when the session starts."""

    def __init__(self, server: FakePOP3Server, generation: int) -> None:
        self.server = server
        self.generation = generation
        self.snapshot = list(server.messages)
        self.marked: set[int] = set()
        self.ended = False

    def _record(self, command: str, argument: Any = None) -> None:
        self.server.record(self.generation, command, argument)

    async def list_messages(self):
        self._record("list")
        return [(n, len(raw)) for n, (_, raw) in enumerate(self.snapshot, start=1)]

    async def unique_ids(self):
        self._record("uidl")
        return {n: uid for n, (uid, _) in enumerate(self.snapshot, start=1)}

    async def retrieve(self, number):
        self._record("retr", number)
        return self.snapshot[number - 1][1]

    async def delete(self, number):
        self._record("dele", number)
        self.marked.add(number)

    async def reset(self):
        self._record("rset")
        self.marked.clear()

    async def commit(self):
        self._record("quit")
        self.ended = True
        doomed = {self.snapshot[n - 1][0] for n in self.marked}
        self.server.messages = [m for m in self.server.messages if m[0] not in doomed]
        self.marked.clear()

    async def logout(self):
        if self.ended:
            return
        self._record("rset")
        self.marked.clear()
        self._record("quit")

    async def close(self):
        self.marked.clear()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """IMAP settings with an explicit password (no keyring lookups)."""
    return Settings(
        name="test",
        address="imap.example.com",
        port=993,
        user_name="test@example.com",
        password="secret",
        enable_ssl=True,
        max_retries=2,
        retry_delay=0.5,
    )


@pytest.fixture
def pop3_settings():
    return Settings.for_pop3(
        name="test",
        address="pop.example.com",
        user_name="test@example.com",
        password="secret",
        enable_ssl=True,
        max_retries=2,
        retry_delay=0.5,
    )


@pytest.fixture
def sleeps():
    """Backoff delays requested by the code under test."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(delay):
        sleeps.append(delay)
    return sleep


@pytest.fixture
def imap_server():
    return FakeIMAPServer()


@pytest.fixture
def pop3_server():
    return FakePOP3Server(count=5)
