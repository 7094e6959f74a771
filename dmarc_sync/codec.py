"""Turn downloaded attachments into DMARC XML payloads.

Provider APIs hand out URL-safe base64 without padding, and reports arrive
as plain XML, gzip or zip archives (a zip may hold several reports).
"""

from __future__ import annotations

import base64
import binascii
import gzip
import io
import logging
import zipfile
import zlib

from .exceptions import AttachmentDecodeError, UnsupportedFormatError
from .models import CanonicalAttachment

logger = logging.getLogger(__name__)


def decode_base64(data: str) -> bytes:
    """Decode standard or URL-safe base64, padded or not."""
    normalized = "".join(data.split()).replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AttachmentDecodeError(f"Invalid base64 payload: {exc}") from exc


def _to_text(raw: bytes) -> str:
    return raw.decode("utf-8-sig", errors="replace")


def decompress_attachment(attachment: CanonicalAttachment) -> list[str]:
    """Return every XML payload found in ``attachment``; never an empty list."""
    filename = attachment.filename or ""
    if attachment.data is None:
        raise AttachmentDecodeError(attachment.error or f"No content downloaded for {filename}")

    raw = decode_base64(attachment.data)
    lowered = filename.lower()

    if lowered.endswith(".xml"):
        payloads = [_to_text(raw)]
    elif lowered.endswith((".gz", ".gzip")):
        payloads = [_gunzip(raw, filename)]
    elif lowered.endswith(".zip"):
        payloads = _unzip(raw, filename)
    else:
        raise UnsupportedFormatError(f"Unsupported file format: {filename}")

    for payload in payloads:
        validate_xml_payload(payload, filename)
    return payloads


def _gunzip(raw: bytes, filename: str) -> str:
    try:
        return _to_text(gzip.decompress(raw))
    except (OSError, EOFError, zlib.error) as exc:
        raise AttachmentDecodeError(f"Failed to decompress gzip file {filename}: {exc}") from exc


def _unzip(raw: bytes, filename: str) -> list[str]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as exc:
        raise AttachmentDecodeError(f"Failed to open ZIP archive {filename}: {exc}") from exc

    payloads: list[str] = []
    found: list[str] = []
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            found.append(info.filename)
            if not info.filename.lower().endswith(".xml"):
                continue
            try:
                payloads.append(_to_text(archive.read(info)))
            except (zipfile.BadZipFile, OSError, RuntimeError, zlib.error) as exc:
                raise AttachmentDecodeError(
                    f"Failed to read {info.filename} from ZIP archive {filename}: {exc}"
                ) from exc

    if not payloads:
        raise AttachmentDecodeError(
            f"No XML files found in ZIP archive {filename}. "
            f"Found files: {', '.join(found) or 'none'}"
        )
    logger.debug("Extracted %s XML payload(s) from %s", len(payloads), filename)
    return payloads


def validate_xml_payload(xml: str, source: str = "") -> None:
    """Reject obviously non-XML payloads; warn on ones without DMARC markers."""
    stripped = xml.strip()
    if not stripped:
        raise AttachmentDecodeError(f"Empty XML content in {source}")
    if not stripped.startswith("<"):
        raise AttachmentDecodeError(f"Content of {source} does not look like XML")
    if "<feedback" not in stripped and "<report" not in stripped:
        logger.warning("XML payload from %s has no <feedback> or <report> element", source)
