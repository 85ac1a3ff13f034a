"""Tests for RFC 2047 decoding, header parsing and address helpers."""

import pytest

from imapmenu.mime.headers import (
    decode_bytes,
    decode_encoded_words,
    extract_addresses,
    extract_boundary,
    extract_charset,
    parse_address_list,
    parse_header_block,
    split_address,
    unfold_headers,
)


class TestEncodedWords:
    def test_base64_utf8(self):
        assert decode_encoded_words("=?UTF-8?B?SGVsbG8gV8O2cmxk?=") == "Hello Wörld"

    def test_q_encoding_with_underscores(self):
        assert decode_encoded_words("=?ISO-8859-1?Q?Caf=E9_au_lait?=") == "Café au lait"

    def test_lowercase_encoding_letter(self):
        assert decode_encoded_words("=?utf-8?q?na=C3=AFve?=") == "naïve"

    def test_adjacent_words_join_without_space(self):
        value = "=?UTF-8?B?SGVsbG8=?= =?UTF-8?Q?_W=C3=B6rld?="
        assert decode_encoded_words(value) == "Hello Wörld"

    def test_mixed_with_plain_text(self):
        assert decode_encoded_words("Re: =?UTF-8?Q?Gr=C3=BC=C3=9Fe?= from Bob") == "Re: Grüße from Bob"

    def test_plain_value_unchanged(self):
        assert decode_encoded_words("Quarterly report") == "Quarterly report"
        assert decode_encoded_words("") == ""

    def test_missing_base64_padding(self):
        assert decode_encoded_words("=?UTF-8?B?SGk?=") == "Hi"

    def test_unknown_charset_falls_back(self):
        assert decode_encoded_words("=?x-unknown?Q?abc?=") == "abc"

    def test_language_suffix_ignored(self):
        assert decode_encoded_words("=?UTF-8*en?Q?Hello?=") == "Hello"

    def test_non_ascii_plain_text_beside_encoded_word(self):
        assert decode_encoded_words("Grüße =?UTF-8?Q?an_alle?=") == "Grüße an alle"

    def test_backslash_in_plain_text(self):
        assert decode_encoded_words("C:\\users =?UTF-8?Q?x?=") == "C:\\users x"

    def test_broken_base64_left_alone(self):
        assert decode_encoded_words("=?UTF-8?B?A?=") == "=?UTF-8?B?A?="

    def test_decodes_repeatedly(self):
        # Encodes "=?UTF-8?Q?Hi?=" itself
        inner = "=?UTF-8?B?PT9VVEYtOD9RP0hpPz0=?="
        assert decode_encoded_words(inner) == "Hi"


class TestDecodeBytes:
    def test_declared_charset(self):
        assert decode_bytes("Grüße".encode("latin-1"), "ISO-8859-1") == "Grüße"

    def test_lying_charset_falls_back_to_utf8(self):
        assert decode_bytes("Grüße".encode("utf-8"), "us-ascii") == "Grüße"

    def test_undecodable_utf8_falls_back_to_latin1(self):
        assert decode_bytes(b"caf\xe9") == "café"


class TestHeaderBlock:
    def test_unfold_continuation_lines(self):
        block = "Subject: a very\r\n long subject\r\nFrom: x@y.z\r\n"
        assert unfold_headers(block) == ["Subject: a very long subject", "From: x@y.z"]

    def test_parse_keys_are_lowercase_and_first_wins(self):
        block = "Subject: one\r\nSUBJECT: two\r\nContent-Type: text/plain\r\n"
        headers = parse_header_block(block)
        assert headers == {"subject": "one", "content-type": "text/plain"}

    def test_lines_without_colon_ignored(self):
        assert parse_header_block("garbage\nTo: a@b.c\n") == {"to": "a@b.c"}

    def test_boundary_and_charset(self):
        content_type = 'multipart/alternative; boundary="b1_xyz"; charset=UTF-8'
        assert extract_boundary(content_type) == "b1_xyz"
        assert extract_charset(content_type) == "UTF-8"
        assert extract_boundary("text/plain") == ""
        assert extract_charset("") is None


class TestAddresses:
    @pytest.mark.parametrize("value, expected", [
        ('"Jane Doe" <jane@example.com>', ("Jane Doe", "jane@example.com")),
        ("Bob <bob@example.com>", ("Bob", "bob@example.com")),
        ("<noreply@example.com>", ("", "noreply@example.com")),
        ("plain@example.com", ("", "plain@example.com")),
        ("=?UTF-8?Q?J=C3=BCrgen?= <j@example.com>", ("Jürgen", "j@example.com")),
    ])
    def test_split_address(self, value, expected):
        assert split_address(value) == expected

    def test_parse_list_respects_quotes(self):
        value = '"Doe, Jane" <jane@example.com>, bob@example.com'
        assert parse_address_list(value) == ['"Doe, Jane" <jane@example.com>', "bob@example.com"]

    def test_extract_addresses(self):
        value = '"Doe, Jane" <jane@example.com>, bob@example.com, , nonsense'
        assert extract_addresses(value) == ["jane@example.com", "bob@example.com"]

    def test_extract_from_list_with_comma_strings(self):
        assert extract_addresses(["a@x.com, b@x.com", "C <c@x.com>"]) == ["a@x.com", "b@x.com", "c@x.com"]

