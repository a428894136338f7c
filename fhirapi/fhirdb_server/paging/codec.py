"""
Continuation token codec.

Backend continuation cursors are opaque and may contain characters that are
unsafe in a URL query string. PageCodec wraps them in unpadded URL-safe
base64 so they can travel as the `_nextpage` parameter. This is encoding,
not encryption.

Invariants:
    - encode(None) is None and decode(None) is None
    - decode(encode(x)) == x for every byte string, including b""
"""

from __future__ import annotations

import base64
import binascii

from ..errors import InvalidContinuationTokenError


class PageCodec:
    """Reversible URL-safe transform for continuation cursors."""

    @staticmethod
    def encode(raw: str | bytes | None) -> str | None:
        """Encode a raw cursor (text is UTF-8 encoded first)."""
        if raw is None:
            return None
        data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    @staticmethod
    def decode(token: str | None) -> bytes | None:
        """Decode a token back to the raw cursor bytes.

        Raises:
            InvalidContinuationTokenError: If the token is not valid
        """
        if token is None:
            return None
        padding = "=" * (-len(token) % 4)
        try:
            return base64.b64decode(
                (token + padding).encode("ascii"), altchars=b"-_", validate=True
            )
        except (binascii.Error, UnicodeEncodeError, ValueError):
            raise InvalidContinuationTokenError(token) from None

    @classmethod
    def decode_text(cls, token: str | None) -> str | None:
        """Decode a token to a UTF-8 cursor string.

        Raises:
            InvalidContinuationTokenError: If the token is not valid
        """
        raw = cls.decode(token)
        if raw is None:
            return None
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidContinuationTokenError(token) from None
