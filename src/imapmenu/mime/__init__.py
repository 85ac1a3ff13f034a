# =============================================================================
# MIME Module
# =============================================================================
# Header and body decoding:
#   - headers: RFC 2047 encoded words, header unfolding, address splitting
#   - decoder: multipart walking, transfer decoding, HTML and preview output
# =============================================================================

from imapmenu.mime.decoder import MimeDecoder, split_message
from imapmenu.mime.headers import (
    decode_encoded_words,
    extract_addresses,
    parse_address_list,
    split_address,
)

__all__ = [
    "MimeDecoder",
    "split_message",
    "decode_encoded_words",
    "extract_addresses",
    "parse_address_list",
    "split_address",
]
