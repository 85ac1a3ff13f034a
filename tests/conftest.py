# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the IMAPMenu test suite.
#
# Network tests run against the in-process fake servers in tests/fakes.py;
# nothing here touches the real network or the system keyring.
# =============================================================================

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from imapmenu.core import Account, FolderConfig, Message, MessageFlags
from imapmenu.imap import ConnectionPool, IMAPClient
from imapmenu.storage import EmailCache

from fakes import FakeIMAPServer, FakeSMTPServer, MemorySecretStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_account():
    """Create a sample Account for testing (not connected to anything)."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_security="starttls",
    )


@pytest.fixture
def sample_message():
    """Create a sample Message for testing."""
    return Message(
        uid=12345,
        folder_key="test:INBOX",
        subject="Test Subject",
        from_='"Test Sender" <sender@example.com>',
        to="test@example.com, other@example.com",
        date=datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc),
        preview="This is a test email body.",
        message_id="<test123@example.com>",
        references=["<root@example.com>"],
        flags=MessageFlags.NONE,
    )


@pytest.fixture
def make_message():
    """Factory for messages with increasing dates."""
    def factory(uid: int, folder_key: str = "test:INBOX", read: bool = False, **fields) -> Message:
        fields.setdefault("date", datetime(2025, 1, 1, tzinfo=timezone.utc).replace(minute=uid % 60, hour=uid // 60 % 24))
        return Message(
            uid=uid,
            folder_key=folder_key,
            subject=fields.pop("subject", f"Message {uid}"),
            flags=MessageFlags.SEEN if read else MessageFlags.NONE,
            **fields,
        )
    return factory


# =============================================================================
# Fake servers
# =============================================================================

@pytest.fixture
async def imap_server():
    """A running fake IMAP server."""
    server = FakeIMAPServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def smtp_server():
    """A running fake SMTP server."""
    server = FakeSMTPServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def secrets():
    """Secret store holding the fake servers' password."""
    return MemorySecretStore({"test@example.com@127.0.0.1": "secret"})


@pytest.fixture
def imap_account(imap_server):
    """Account pointing at the fake IMAP server over plain TCP."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="127.0.0.1",
        imap_port=imap_server.port,
        imap_security="plain",
        smtp_host="127.0.0.1",
        smtp_port=1,
        smtp_security="plain",
    )


@pytest.fixture
def smtp_account(smtp_server):
    """Account pointing at the fake SMTP server over plain TCP."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="127.0.0.1",
        imap_port=1,
        imap_security="plain",
        smtp_host="127.0.0.1",
        smtp_port=smtp_server.port,
        smtp_security="plain",
    )


@pytest.fixture
async def client(imap_account, secrets):
    """A connected IMAPClient; disconnected after the test."""
    client = IMAPClient(imap_account, secrets=secrets, timeout=5)
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
async def pool(secrets):
    """A ConnectionPool with the fake secret store; closed after the test."""
    pool = ConnectionPool(secrets=secrets)
    yield pool
    await pool.stop()


@pytest.fixture
def cache():
    return EmailCache()


@pytest.fixture
def inbox():
    return FolderConfig(path="INBOX")
