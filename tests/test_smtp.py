"""Tests for the SMTP client against the fake SMTP server."""

import pytest

from imapmenu.mime import decode_encoded_words, split_address
from imapmenu.smtp import (
    EmailDraft,
    SendError,
    SMTPAuthenticationError,
    SMTPClient,
    SMTPConnectionError,
    SMTPNotConnected,
)

from fakes import FakeSMTPServer, MemorySecretStore


def headers_of(data: bytes) -> dict[str, str]:
    """Unfolded headers; decoding as ASCII checks nothing went out as 8-bit."""
    head = data.split(b"\r\n\r\n", 1)[0].decode("ascii")
    return dict(line.split(": ", 1) for line in head.replace("\r\n ", " ").split("\r\n"))


@pytest.fixture
async def smtp(smtp_account, secrets):
    client = SMTPClient(smtp_account, secrets=secrets, timeout=5)
    await client.connect()
    yield client
    await client.disconnect()


class TestEmailDraft:
    def test_comma_string_is_split(self):
        draft = EmailDraft(to="a@x.com, b@x.com")
        assert draft.to == ["a@x.com", "b@x.com"]

    def test_recipients_order(self):
        draft = EmailDraft(to=["A <a@x.com>"], cc="c@x.com", bcc=["b@x.com"])
        assert draft.recipients == ["a@x.com", "c@x.com", "b@x.com"]

    def test_quoted_comma_kept_together(self):
        draft = EmailDraft(to='"Doe, Jane" <jane@x.com>, bob@x.com')
        assert draft.recipients == ["jane@x.com", "bob@x.com"]


class TestConnect:
    async def test_connect_plain_auth(self, smtp_server, smtp):
        assert smtp.is_connected
        assert smtp.has_extension("8BITMIME")
        assert smtp.auth_mechanisms() == ["PLAIN", "LOGIN"]
        assert smtp_server.commands_with("AUTH PLAIN")

    async def test_falls_back_to_login(self, smtp_account, secrets):
        server = FakeSMTPServer(extensions=("AUTH LOGIN",))
        await server.start()
        smtp_account.smtp_port = server.port
        client = SMTPClient(smtp_account, secrets=secrets)
        try:
            await client.connect()
            assert client.is_connected
            assert not server.commands_with("AUTH PLAIN")
            assert server.commands_with("AUTH LOGIN")
        finally:
            await client.disconnect()
            await server.stop()

    async def test_wrong_password(self, smtp_server, smtp_account):
        client = SMTPClient(smtp_account, secrets=MemorySecretStore({smtp_account.key: "nope"}))
        with pytest.raises(SMTPAuthenticationError):
            await client.connect()
        assert not client.is_connected

    async def test_no_secret(self, smtp_account):
        client = SMTPClient(smtp_account, secrets=MemorySecretStore())
        with pytest.raises(SMTPAuthenticationError, match="set-password"):
            await client.connect()

    async def test_starttls_required_but_missing(self, smtp_server, smtp_account, secrets):
        smtp_account.smtp_security = "starttls"
        client = SMTPClient(smtp_account, secrets=secrets)
        with pytest.raises(SMTPConnectionError, match="STARTTLS"):
            await client.connect()

    async def test_quit_on_disconnect(self, smtp_server, smtp):
        await smtp.disconnect()
        assert smtp_server.commands[-1] == "QUIT"
        assert not smtp.is_connected


class TestSend:
    async def test_one_rcpt_per_address(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com, b@x.com", subject="Hi", body="Hello"))
        assert smtp_server.commands_with("RCPT TO") == ["RCPT TO:<a@x.com>", "RCPT TO:<b@x.com>"]
        assert len(smtp_server.commands_with("DATA")) == 1
        [mail] = smtp_server.mail
        assert mail.mail_from == "test@example.com"
        assert mail.rcpt_to == ["a@x.com", "b@x.com"]

    async def test_headers(self, smtp_server, smtp):
        message_id = await smtp.send(EmailDraft(
            to=["Bob <b@x.com>"],
            cc="c@x.com",
            subject="Status",
            body="All good",
            in_reply_to="<orig@x.com>",
            references=["<root@x.com>", "<orig@x.com>"],
        ))
        headers = headers_of(smtp_server.mail[0].data)
        assert headers["From"] == "Test User <test@example.com>"
        assert headers["To"] == "Bob <b@x.com>"
        assert headers["Cc"] == "c@x.com"
        assert headers["Subject"] == "Status"
        assert headers["Message-ID"] == message_id
        assert headers["In-Reply-To"] == "<orig@x.com>"
        assert headers["References"] == "<root@x.com> <orig@x.com>"
        assert headers["Content-Type"] == 'text/plain; charset="utf-8"'
        assert headers["Content-Transfer-Encoding"] == "8bit"
        assert headers["X-Mailer"] == "IMAPMenu"

    async def test_bcc_only_in_envelope(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com", bcc="hidden@x.com", body="x"))
        mail = smtp_server.mail[0]
        assert "hidden@x.com" in mail.rcpt_to
        assert b"hidden@x.com" not in mail.data
        assert "Bcc" not in headers_of(mail.data)

    async def test_dot_stuffing(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com", body="first\n.\n..two\nlast"))
        body = smtp_server.mail[0].data.split(b"\r\n\r\n", 1)[1]
        assert body == b"first\r\n.\r\n..two\r\nlast\r\n"

    async def test_non_ascii_subject_and_body(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com", subject="Grüße", body="Schöne Grüße"))
        data = smtp_server.mail[0].data
        subject = headers_of(data)["Subject"]
        assert subject.lower().startswith("=?utf-8?")
        assert decode_encoded_words(subject) == "Grüße"
        assert "Schöne Grüße".encode("utf-8") in data

    async def test_rejected_recipient(self, smtp_server, smtp):
        smtp_server.reject_recipients.add("ghost@x.com")
        with pytest.raises(SendError, match="ghost@x.com"):
            await smtp.send(EmailDraft(to="a@x.com, ghost@x.com", body="x"))
        assert not smtp_server.mail

    async def test_rejected_recipient_resets_transaction(self, smtp_server, smtp):
        smtp_server.reject_recipients.add("ghost@x.com")
        with pytest.raises(SendError):
            await smtp.send(EmailDraft(to="ghost@x.com", body="x"))
        assert smtp_server.commands_with("RSET") == ["RSET"]

        await smtp.send(EmailDraft(to="a@x.com", body="second try"))
        [mail] = smtp_server.mail
        assert mail.rcpt_to == ["a@x.com"]

    async def test_newlines_in_subject_cannot_add_headers(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com", subject="Hi\r\nBcc: evil@x.com", body="x"))
        mail = smtp_server.mail[0]
        headers = headers_of(mail.data)
        assert "Bcc" not in headers
        assert headers["Subject"] == "Hi Bcc: evil@x.com"
        assert mail.rcpt_to == ["a@x.com"]

    async def test_newlines_in_threading_headers(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to="a@x.com", body="x", in_reply_to="<a@x.com>\nX-Evil: 1"))
        headers = headers_of(smtp_server.mail[0].data)
        assert "X-Evil" not in headers
        assert headers["In-Reply-To"] == "<a@x.com> X-Evil: 1"

    async def test_non_ascii_display_names_are_encoded(self, smtp_server, smtp):
        await smtp.send(EmailDraft(to=["Jörg <j@x.com>"], cc='"Doe, Jane" <jane@x.com>', body="x"))
        headers = headers_of(smtp_server.mail[0].data)
        assert "=?utf-8?" in headers["To"].lower()
        assert split_address(headers["To"]) == ("Jörg", "j@x.com")
        assert headers["Cc"] == '"Doe, Jane" <jane@x.com>'

    async def test_long_references_are_folded(self, smtp_server, smtp):
        references = [f"<message-{n}@lists.example.com>" for n in range(8)]
        await smtp.send(EmailDraft(to="a@x.com", body="x", references=references))
        data = smtp_server.mail[0].data
        head = data.split(b"\r\n\r\n", 1)[0]
        assert all(len(line) <= 78 for line in head.split(b"\r\n"))
        assert headers_of(data)["References"] == " ".join(references)

    async def test_non_ascii_address_is_refused_before_sending(self, smtp_server, smtp):
        with pytest.raises(SendError, match="Cannot build message"):
            await smtp.send(EmailDraft(to="jörg@x.com", body="x"))
        assert not smtp_server.commands_with("MAIL")

    async def test_no_recipients(self, smtp):
        with pytest.raises(SendError, match="No recipients"):
            await smtp.send(EmailDraft(subject="x"))

    async def test_not_connected(self, smtp_account, secrets):
        with pytest.raises(SMTPNotConnected):
            await SMTPClient(smtp_account, secrets=secrets).send(EmailDraft(to="a@x.com"))


class TestDrafts:
    def test_reply(self, sample_account, sample_message):
        draft = SMTPClient(sample_account).create_reply(sample_message)
        assert draft.to == ["sender@example.com"]
        assert draft.subject == "Re: Test Subject"
        assert draft.in_reply_to == "<test123@example.com>"
        assert draft.references == ["<root@example.com>", "<test123@example.com>"]
        assert "Test Sender wrote:" in draft.body
        assert "> This is a test email body." in draft.body

    def test_reply_all_skips_self(self, sample_account, sample_message):
        draft = SMTPClient(sample_account).create_reply(sample_message, reply_all=True)
        assert draft.to == ["sender@example.com", "other@example.com"]

    def test_reply_keeps_existing_prefix(self, sample_account, sample_message):
        sample_message.subject = "RE: Already"
        draft = SMTPClient(sample_account).create_reply(sample_message, quoted_text="")
        assert draft.subject == "RE: Already"
        assert ">" not in draft.body

    def test_forward(self, sample_account, sample_message):
        draft = SMTPClient(sample_account).create_forward(sample_message)
        assert draft.to == []
        assert draft.subject == "Fwd: Test Subject"
        assert "---------- Forwarded message ----------" in draft.body
        assert "From: \"Test Sender\" <sender@example.com>" in draft.body
        assert draft.body.endswith("This is a test email body.")
