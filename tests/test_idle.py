"""Tests for IDLE notification parsing and the IdleWorker."""

import pytest

from imapmenu.imap import IMAPClient
from imapmenu.imap.idle import IdleWorker, parse_notification

from fakes import FakeIMAPServer, MemorySecretStore, wait_until


class TestParseNotification:
    @pytest.mark.parametrize("line, event_type, number", [
        ("3 EXISTS", "new_mail", 3),
        ("* 3 EXISTS", "new_mail", 3),
        ("1 RECENT", "recent", 1),
        ("7 EXPUNGE", "expunge", 7),
        ("2 FETCH (FLAGS (\\Seen))", "flags", 2),
        ("5 exists", "new_mail", 5),
    ])
    def test_known(self, line, event_type, number):
        event = parse_notification("work", "INBOX", line)
        assert event.event_type == event_type
        assert event.number == number
        assert event.account_name == "work"
        assert event.folder_name == "INBOX"

    @pytest.mark.parametrize("line", ["OK Still here", "BYE", "", "EXISTS 3"])
    def test_unknown(self, line):
        assert parse_notification("work", "INBOX", line) is None


@pytest.fixture
async def worker(secrets):
    worker = IdleWorker(secrets=secrets, reconnect_delay=0.05)
    events = []

    async def collect(event):
        events.append(event)

    worker.on_event = collect
    worker.events = events
    yield worker
    await worker.stop()


class TestIdleWorker:
    async def test_delivers_new_mail(self, imap_server, imap_account, worker):
        await worker.start([imap_account])
        assert worker.is_running
        await wait_until(lambda: imap_server.idlers)

        await imap_server.push("3 EXISTS")
        await wait_until(lambda: worker.events)

        event = worker.events[0]
        assert (event.account_name, event.folder_name) == ("test", "INBOX")
        assert event.event_type == "new_mail"
        assert event.number == 3

    async def test_reenters_idle_after_event(self, imap_server, imap_account, worker):
        await worker.start([imap_account])
        await wait_until(lambda: imap_server.idlers)
        await imap_server.push("4 EXPUNGE")
        await wait_until(lambda: len(imap_server.commands_with("IDLE")) >= 2 and imap_server.idlers)

        await imap_server.push("5 EXISTS")
        await wait_until(lambda: len(worker.events) == 2)
        assert [e.event_type for e in worker.events] == ["expunge", "new_mail"]

    async def test_callback_errors_do_not_stop_worker(self, imap_server, imap_account, secrets):
        calls = []

        async def broken(event):
            calls.append(event)
            raise RuntimeError("boom")

        worker = IdleWorker(secrets=secrets)
        worker.on_event = broken
        await worker.start([imap_account])
        try:
            await wait_until(lambda: imap_server.idlers)
            await imap_server.push("1 EXISTS")
            await wait_until(lambda: len(imap_server.commands_with("IDLE")) >= 2 and imap_server.idlers)
            await imap_server.push("2 EXISTS")
            await wait_until(lambda: len(calls) == 2)
        finally:
            await worker.stop()

    async def test_refreshes_on_timeout(self, imap_server, imap_account, secrets):
        worker = IdleWorker(secrets=secrets, idle_timeout=0.1)
        await worker.start([imap_account])
        try:
            await wait_until(lambda: len(imap_server.commands_with("IDLE")) >= 3)
        finally:
            await worker.stop()

    async def test_reconnects_after_drop(self, imap_server, imap_account, worker):
        await worker.start([imap_account])
        await wait_until(lambda: imap_server.idlers)
        imap_server.idlers.clear()
        await imap_server.drop_all()

        await wait_until(lambda: imap_server.connections >= 2 and imap_server.idlers)
        await imap_server.push("9 EXISTS")
        await wait_until(lambda: worker.events)
        assert worker.events[0].number == 9

    async def test_auth_failure_ends_monitor(self, imap_server, imap_account):
        worker = IdleWorker(secrets=MemorySecretStore({imap_account.key: "wrong"}), reconnect_delay=0.05)
        await worker.start([imap_account])
        task = worker._tasks["test"]
        await wait_until(task.done)
        assert imap_server.connections == 1
        await worker.stop()
        assert not worker.is_running

    async def test_no_idle_support_ends_monitor(self, imap_account, secrets):
        server = FakeIMAPServer(capabilities=("IMAP4rev1",))
        await server.start()
        imap_account.imap_port = server.port
        worker = IdleWorker(secrets=secrets)
        try:
            await worker.start([imap_account])
            await wait_until(worker._tasks["test"].done)
            assert server.commands_with("IDLE") == []
            assert server.commands_with("LOGOUT") == ["LOGOUT"]
        finally:
            await worker.stop()
            await server.stop()

    async def test_disabled_accounts_skipped(self, imap_server, imap_account, worker):
        imap_account.enabled = False
        await worker.start([imap_account])
        assert worker._tasks == {}

    async def test_custom_factory(self, imap_server, imap_account, secrets):
        built = []

        def factory(account):
            built.append(account.name)
            return IMAPClient(account, secrets=secrets, timeout=5)

        worker = IdleWorker(client_factory=factory)
        await worker.start([imap_account])
        try:
            await wait_until(lambda: imap_server.idlers)
            assert built == ["test"]
        finally:
            await worker.stop()
