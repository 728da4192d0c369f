"""Decoding of MIME encoded words, transfer-encoded bodies and links.

Everything here is best-effort: malformed input is logged and handed
back as-is instead of failing the check cycle.  Header parsing uses the
stdlib ``email.parser.HeaderParser`` which, like
``BytesHeaderParser``, never walks the body.
"""

from __future__ import annotations

import base64
import email
import email.parser
import re
from collections.abc import Iterable

import structlog

from .models import DecodedEmail, RawMessage

logger = structlog.get_logger()

_ENCODED_WORD_RE = re.compile(r"=\?([^?\s]+)\?([BbQq])\?([^?\s]*)\?=")
_SOFT_BREAK_RE = re.compile(rb"=(?:\r?\n|\Z)")
_HEX_ESCAPE_RE = re.compile(rb"=([0-9A-Fa-f]{2})")
_FOLD_RE = re.compile(r"\r?\n(?=[ \t])")
_LINK_RE = re.compile(r"https?://[^\s<>\"'\])]+", re.IGNORECASE)
# A base64 part embedded in a body whose own headers were not supplied.
_EMBEDDED_BASE64_RE = re.compile(
    r"Content-Transfer-Encoding:[ \t]*base64[ \t]*\r?\n(?:[^\r\n]+\r?\n)*?\r?\n([A-Za-z0-9+/=\s]+)",
    re.IGNORECASE,
)

_PASSTHROUGH_ENCODINGS = frozenset({"7bit", "8bit", "binary"})


# ----------------------------------------------------------------------
# Headers
# ----------------------------------------------------------------------


def decode_header_word(raw: str) -> str:
    """Decode RFC 2047 encoded words (``=?charset?B|Q?text?=``) in *raw*.

    Whitespace between two adjacent encoded words is dropped.  Words with
    an unknown charset or a malformed payload, and any text outside
    encoded words, are returned unchanged.
    """
    pieces: list[str] = []
    position = 0
    previous_decoded = False

    for match in _ENCODED_WORD_RE.finditer(raw):
        gap = raw[position : match.start()]
        decoded = _decode_encoded_word(*match.groups())
        if not (previous_decoded and decoded is not None and gap and gap.isspace()):
            pieces.append(gap)
        pieces.append(decoded if decoded is not None else match.group(0))
        previous_decoded = decoded is not None
        position = match.end()

    pieces.append(raw[position:])
    return "".join(pieces)


def _decode_encoded_word(charset: str, encoding: str, text: str) -> str | None:
    # RFC 2231 allows a language suffix: utf-8*en
    charset = charset.split("*", 1)[0]
    try:
        if encoding.upper() == "B":
            data = base64.b64decode(text, validate=True)
        else:
            data = _unescape_hex(text.replace("_", " ").encode("ascii"))
        return data.decode(charset)
    except (ValueError, LookupError):
        return None


# ----------------------------------------------------------------------
# Bodies
# ----------------------------------------------------------------------


def decode_body(raw: str, headers: str = "") -> str:
    """Decode a message body according to its ``Content-Transfer-Encoding``.

    *headers* is the message's header block.  For ``multipart/*``
    messages every ``text/*`` part is decoded by its own transfer
    encoding and the results are joined with newlines.  Otherwise
    ``base64`` bodies are base64-decoded, ``7bit``/``8bit``/``binary``
    bodies are returned untouched, and anything else gets
    quoted-printable decoding.  Never raises.
    """
    message = email.message_from_string(_join_message(headers, raw))

    if message.is_multipart():
        texts = [
            _decode_transfer(
                str(part.get_payload()),
                str(part.get("Content-Transfer-Encoding", "")),
                part.get_content_charset(),
            )
            for part in message.walk()
            if part.get_content_maintype() == "text" and not part.is_multipart()
        ]
        return "\n".join(texts)

    encoding = str(message.get("Content-Transfer-Encoding", ""))
    if not encoding.strip():
        embedded = _EMBEDDED_BASE64_RE.search(raw)
        if embedded:
            return _decode_base64(embedded.group(1), None, fallback=raw)

    return _decode_transfer(raw, encoding, message.get_content_charset())


def _join_message(headers: str, body: str) -> str:
    head = headers.rstrip("\r\n")
    if not head:
        return "\r\n" + body
    return f"{head}\r\n\r\n{body}"


def _decode_transfer(payload: str, encoding: str, charset: str | None) -> str:
    encoding = encoding.strip().lower()
    if encoding == "base64":
        return _decode_base64(payload, charset, fallback=payload)
    if encoding in _PASSTHROUGH_ENCODINGS:
        return payload
    return _decode_quoted_printable(payload, charset)


def _decode_base64(payload: str, charset: str | None, *, fallback: str) -> str:
    compact = re.sub(r"\s+", "", payload)
    try:
        data = base64.b64decode(compact, validate=True)
    except ValueError as exc:
        logger.warning("base64_decode_failed", error=str(exc), length=len(compact))
        return fallback
    return _to_text(data, charset)


def _decode_quoted_printable(payload: str, charset: str | None) -> str:
    data = _SOFT_BREAK_RE.sub(b"", payload.encode("utf-8"))
    return _to_text(_unescape_hex(data), charset)


def _unescape_hex(data: bytes) -> bytes:
    return _HEX_ESCAPE_RE.sub(lambda m: bytes([int(m.group(1), 16)]), data)


def _to_text(data: bytes, charset: str | None) -> str:
    try:
        return data.decode(charset or "utf-8")
    except (LookupError, UnicodeDecodeError) as exc:
        logger.warning("body_charset_decode_failed", charset=charset, error=str(exc))
        return data.decode("utf-8", errors="replace")


# ----------------------------------------------------------------------
# Links
# ----------------------------------------------------------------------


def extract_links(text: str) -> list[str]:
    """Return every http(s) URL in *text*, in order, duplicates included."""
    return _LINK_RE.findall(text)


def find_action_link(links: Iterable[str], marker: str) -> str | None:
    """Return the first link containing *marker*, or ``None``."""
    for link in links:
        if marker in link:
            return link
    return None


# ----------------------------------------------------------------------
# Whole message
# ----------------------------------------------------------------------


def decode_message(raw: RawMessage) -> DecodedEmail:
    """Decode a complete :class:`RawMessage` into a :class:`DecodedEmail`."""
    headers = raw.headers
    parsed = email.parser.HeaderParser().parsestr(headers)

    subject = decode_header_word(_unfold(parsed.get("Subject")))
    sender = decode_header_word(_unfold(parsed.get("From")))
    body = decode_body(raw.body, headers)

    return DecodedEmail(
        uid=raw.uid,
        subject=subject.strip(),
        sender=sender.strip(),
        body=body,
        links=tuple(extract_links(body)),
    )


def _unfold(value: object) -> str:
    if value is None:
        return ""
    return _FOLD_RE.sub("", str(value))
