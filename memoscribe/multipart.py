"""multipart/form-data encoding for audio uploads."""

from __future__ import annotations

import mimetypes
import uuid
from pathlib import Path
from typing import Mapping

# Audio types the platform table may not know or maps inconsistently.
AUDIO_CONTENT_TYPES = {
    ".m4a": "audio/m4a",
    ".mp3": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".wav": "audio/wav",
    ".aac": "audio/aac",
    ".caf": "audio/x-caf",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
    ".mp4": "audio/mp4",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CRLF = b"\r\n"


class SourceUnreadable(RuntimeError):
    """Raised when the file to upload cannot be read."""


def new_boundary() -> str:
    return f"Boundary-{uuid.uuid4().hex}"


def content_type(boundary: str) -> str:
    return f"multipart/form-data; boundary={boundary}"


def guess_content_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in AUDIO_CONTENT_TYPES:
        return AUDIO_CONTENT_TYPES[suffix]
    guessed, _encoding = mimetypes.guess_type(path.name)
    return guessed or DEFAULT_CONTENT_TYPE


def encode(
    file_location: Path,
    form_fields: Mapping[str, str],
    boundary: str,
    file_field: str = "file",
) -> bytes:
    """Build a request body with one part per form field followed by the file part.

    Raises:
        SourceUnreadable: if the file cannot be read. A body is never returned
            without its file part.
    """

    file_location = Path(file_location)
    try:
        payload = file_location.read_bytes()
    except OSError as exc:
        raise SourceUnreadable(f"Cannot read {file_location}: {exc}") from exc

    delimiter = f"--{boundary}".encode()
    body = bytearray()
    for name, value in form_fields.items():
        body += delimiter + CRLF
        body += f'Content-Disposition: form-data; name="{_quote(name)}"'.encode() + CRLF + CRLF
        body += str(value).encode("utf-8") + CRLF

    body += delimiter + CRLF
    body += (
        f'Content-Disposition: form-data; name="{_quote(file_field)}"; '
        f'filename="{_quote(file_location.name)}"'
    ).encode("utf-8") + CRLF
    body += f"Content-Type: {guess_content_type(file_location)}".encode() + CRLF + CRLF
    body += payload + CRLF
    body += delimiter + b"--" + CRLF
    return bytes(body)


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\r", " ").replace("\n", " ")
