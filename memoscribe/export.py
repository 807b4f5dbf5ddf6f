"""Write transcriptions out as plain-text files."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .models import CatalogEntry

logger = logging.getLogger(__name__)

FILENAME_SUFFIX = "_transcription.txt"
_UNSAFE_CHARS = re.compile(r'[/\\?%*|"<>:]')


class ExportError(RuntimeError):
    """Raised when a transcription cannot be exported."""


@dataclass(slots=True)
class ExportReport:
    written: List[Path] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)


def sanitize_title(title: str) -> str:
    return _UNSAFE_CHARS.sub("_", title)


def transcription_filename(title: str) -> str:
    return sanitize_title(title) + FILENAME_SUFFIX


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` as UTF-8 so readers never see a partial file."""

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def export_transcription(entry: CatalogEntry, directory: Path, filename: Optional[str] = None) -> Path:
    if not entry.transcription:
        raise ExportError(f"Recording {entry.id} has no transcription to export")
    directory = Path(directory).expanduser()
    try:
        directory.mkdir(parents=True, exist_ok=True)
        destination = directory / (filename or transcription_filename(entry.title))
        write_atomic(destination, entry.transcription)
    except OSError as exc:
        raise ExportError(f"Failed to export recording {entry.id}: {exc}") from exc
    logger.debug("Exported recording %s to %s", entry.id, destination)
    return destination


def export_catalog(entries: Iterable[CatalogEntry], directory: Path) -> ExportReport:
    """Export every transcribed entry; titles repeated ignoring case get the entry id appended."""

    report = ExportReport()
    used: Set[str] = set()
    for entry in entries:
        if not entry.transcription:
            report.skipped.append(entry.id)
            continue
        filename = transcription_filename(entry.title)
        # Names are compared the way a case-insensitive filesystem would.
        if filename.casefold() in used:
            filename = f"{sanitize_title(entry.title)}_{entry.id}{FILENAME_SUFFIX}"
        used.add(filename.casefold())
        report.written.append(export_transcription(entry, directory, filename))
    logger.info("Exported %d transcription(s) to %s", len(report.written), directory)
    return report
