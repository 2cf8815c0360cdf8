"""
Provenance text codec for Quorum-DNS.

This module is responsible for turning the labels an owner attaches to an
endpoint into the text stored in its paired TXT record, and back again.

A TXT value may hold several quoted provenance strings written by different
owners, for example:

    "heritage=external-dns,owner=a1,version=1" "heritage=external-dns,owner=b2,version=1"

Each quoted segment is decoded on its own so one malformed segment never
prevents the others from being read.
"""

import base64
import logging
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from quorum_dns.errors import ProvenanceDecodeError

HERITAGE_KEY = "heritage"
HERITAGE_VALUE = "external-dns"
VERSION_KEY = "version"
FORMAT_VERSION = "1"

ENCRYPTED_PREFIX = "v1:AES256:"

logger = logging.getLogger("quorum-dns.registry.labels")


def create_fernet(key: str) -> Fernet:
    """
    Creates a Fernet instance for encryption/decryption.

    Args:
        key: Encryption key

    Returns:
        Fernet: Fernet instance
    """
    # Fixed salt keeps key derivation deterministic across replicas
    salt = b"quorum-dns"
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=100000)
    key_bytes = kdf.derive(key.encode())
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def split_segments(text: str) -> List[str]:
    """
    Split a TXT value into its quoted segments.

    Backslash-escaped quotes inside a segment are unescaped. Whitespace between
    segments is ignored. Text with no quotes at all is a single segment. A
    quoted segment that is never closed is dropped; the segments closed before
    it are kept.

    Args:
        text: Raw TXT value

    Returns:
        List[str]: Segment contents without the surrounding quotes
    """
    text = text.strip()
    if '"' not in text:
        return [text] if text else []

    segments = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch != '"':
            # Bare text between quoted segments
            end = text.find('"', i)
            if end == -1:
                end = len(text)
            segments.append(text[i:end].strip())
            i = end
            continue

        i += 1
        buf = []
        closed = False
        while i < len(text):
            ch = text[i]
            if ch == "\\" and i + 1 < len(text):
                buf.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                closed = True
                i += 1
                break
            buf.append(ch)
            i += 1
        if not closed:
            logger.warning(f"Dropping unterminated quoted segment in TXT value {text!r}")
            break
        segments.append("".join(buf))
    return [s for s in segments if s]


class ProvenanceCodec:
    """
    Encodes and decodes provenance labels, optionally encrypted.
    """

    def __init__(self, encrypt: bool = False, encryption_key: Optional[str] = None):
        """
        Initialize a ProvenanceCodec.

        Args:
            encrypt: Whether to encrypt serialized provenance
            encryption_key: Key used for encryption and decryption
        """
        self.encrypt = encrypt
        self.fernet = create_fernet(encryption_key) if encryption_key else None
        self.logger = logging.getLogger("quorum-dns.registry.labels")

        if encrypt and not self.fernet:
            self.logger.warning("TXT encryption requested without a key, writing plain text")

    def serialize(self, labels: Dict[str, str], with_quotes: bool = True) -> str:
        """
        Serialize labels into provenance text.

        Args:
            labels: Labels to serialize; heritage is always written first
            with_quotes: Whether to wrap the text in double quotes

        Returns:
            str: Provenance text
        """
        parts = [f"{HERITAGE_KEY}={HERITAGE_VALUE}"]
        for key in sorted(labels):
            if key == HERITAGE_KEY:
                continue
            parts.append(f"{key}={labels[key]}")
        text = ",".join(parts)

        if self.encrypt and self.fernet:
            text = ENCRYPTED_PREFIX + self.fernet.encrypt(text.encode()).decode()

        if with_quotes:
            return f'"{text}"'
        return text

    def decode_segment(self, segment: str) -> Dict[str, str]:
        """
        Decode a single provenance segment.

        Args:
            segment: Segment text without quotes

        Returns:
            Dict[str, str]: Labels without the heritage key

        Raises:
            ProvenanceDecodeError: If the segment cannot be decrypted or lacks heritage
        """
        if segment.startswith(ENCRYPTED_PREFIX):
            if not self.fernet:
                raise ProvenanceDecodeError("encrypted provenance found but no key is configured")
            try:
                segment = self.fernet.decrypt(segment[len(ENCRYPTED_PREFIX):].encode()).decode()
            except InvalidToken as e:
                raise ProvenanceDecodeError("failed to decrypt provenance") from e

        labels: Dict[str, str] = {}
        for token in segment.split(","):
            token = token.strip()
            if not token:
                continue
            if "=" not in token:
                raise ProvenanceDecodeError(f"malformed provenance token {token!r}")
            key, value = token.split("=", 1)
            labels[key.strip()] = value.strip()

        if labels.pop(HERITAGE_KEY, None) != HERITAGE_VALUE:
            raise ProvenanceDecodeError(f"invalid heritage in {segment!r}")
        return labels

    def decode(self, text: str) -> List[Dict[str, str]]:
        """
        Decode every valid provenance segment of a TXT value.

        Args:
            text: Raw TXT value

        Returns:
            List[Dict[str, str]]: One label map per valid segment, possibly empty
        """
        decoded = []
        for segment in split_segments(text):
            try:
                decoded.append(self.decode_segment(segment))
            except ProvenanceDecodeError as e:
                if segment.startswith((HERITAGE_KEY, ENCRYPTED_PREFIX)):
                    self.logger.warning(f"Skipping provenance segment: {e}")
                else:
                    # Plain TXT content such as SPF
                    self.logger.debug(f"Ignoring non-provenance TXT segment: {e}")
        return decoded
