"""Read-only access to the Voice Memos library and the in-memory catalog."""

from __future__ import annotations

import logging
import math
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePath
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .config import resolve_recordings_dir, resolve_store_path
from .models import CatalogEntry, Config, TranscriptionState

logger = logging.getLogger(__name__)

# Core Data stores dates as seconds since 2001-01-01 00:00:00 UTC.
REFERENCE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)

RECORDINGS_TABLE = "ZCLOUDRECORDING"
COL_ID = "Z_PK"
COL_DURATION = "ZDURATION"
COL_DATE = "ZDATE"
COL_LABEL = "ZCUSTOMLABEL"
COL_TITLE = "ZENCRYPTEDTITLE"
COL_PATH = "ZPATH"
RECORDINGS_QUERY = (
    f"SELECT {COL_ID}, {COL_DURATION}, {COL_DATE}, {COL_LABEL}, {COL_TITLE}, {COL_PATH} "
    f"FROM {RECORDINGS_TABLE}"
)

AUDIO_SUFFIXES = frozenset(
    {".m4a", ".mp3", ".wav", ".aac", ".caf", ".flac", ".ogg", ".mp4", ".webm", ".mpeg", ".mpga"}
)


class StoreUnavailable(RuntimeError):
    """Raised when the recordings store cannot be opened or queried."""


class RowDecodeSkipped(ValueError):
    """Raised for a single store row that cannot be turned into an entry."""


class CatalogError(RuntimeError):
    """Raised for invalid catalog lookups or updates."""


@dataclass(slots=True)
class LoadResult:
    entries: List[CatalogEntry]
    skipped: int = 0


def date_from_offset(offset: float) -> datetime:
    """Convert a stored Core Data timestamp to an aware UTC datetime."""

    return REFERENCE_EPOCH + timedelta(seconds=offset)


def derive_title(label: Optional[str], generated: Optional[str], path: Optional[str], recorded_at: datetime) -> str:
    """Pick the display title for a recording; the result is never empty."""

    for candidate in (label, generated):
        if candidate and candidate.strip():
            return candidate.strip()
    if path:
        name = PurePath(path).name
        stem = name.rsplit(".", 1)[0] if "." in name else name
        if stem.strip():
            return stem.strip()
    return f"Recording {recorded_at:%b %d, %Y %H:%M:%S}"


def load_store(store_path: Path, recordings_dir: Optional[Path] = None) -> LoadResult:
    """Load every decodable recording from the Voice Memos store, newest first."""

    store_path = Path(store_path).expanduser()
    try:
        present = store_path.is_file()
    except OSError as exc:
        raise StoreUnavailable(f"Cannot access recordings store at {store_path}: {exc}") from exc
    if not present:
        raise StoreUnavailable(f"Recordings store not found at {store_path}")

    base_dir = Path(recordings_dir).expanduser() if recordings_dir else store_path.parent
    uri = f"{store_path.resolve().as_uri()}?mode=ro"
    try:
        with closing(sqlite3.connect(uri, uri=True)) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(RECORDINGS_QUERY).fetchall()
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"Cannot read recordings store at {store_path}: {exc}") from exc

    entries: List[CatalogEntry] = []
    skipped = 0
    for row in rows:
        try:
            entries.append(_row_to_entry(row, base_dir))
        except RowDecodeSkipped as exc:
            skipped += 1
            logger.debug("Skipping recording row: %s", exc)

    if skipped:
        logger.warning("Skipped %d unreadable recording row(s) in %s", skipped, store_path)
    _sort_entries(entries)
    logger.info("Loaded %d recording(s) from %s", len(entries), store_path)
    return LoadResult(entries=entries, skipped=skipped)


def load_directory(directory: Path) -> LoadResult:
    """Catalog the audio files in a plain directory when no store is available."""

    directory = Path(directory).expanduser()
    try:
        candidates = sorted(
            path for path in directory.iterdir() if path.suffix.lower() in AUDIO_SUFFIXES and path.is_file()
        )
    except OSError as exc:
        raise StoreUnavailable(f"Cannot list recordings in {directory}: {exc}") from exc

    entries: List[CatalogEntry] = []
    skipped = 0
    for index, path in enumerate(candidates, start=1):
        try:
            modified = path.stat().st_mtime
        except OSError as exc:
            skipped += 1
            logger.debug("Skipping %s: %s", path, exc)
            continue
        recorded_at = datetime.fromtimestamp(modified, tz=timezone.utc)
        entries.append(
            CatalogEntry(
                id=index,
                file_location=path.resolve(),
                title=derive_title(None, None, path.name, recorded_at),
                recorded_at=recorded_at,
                duration_seconds=0.0,
            )
        )
    _sort_entries(entries)
    return LoadResult(entries=entries, skipped=skipped)


def _row_to_entry(row: sqlite3.Row, base_dir: Path) -> CatalogEntry:
    entry_id = row[COL_ID]
    if not isinstance(entry_id, int):
        raise RowDecodeSkipped(f"invalid primary key {entry_id!r}")

    duration = _as_float(row[COL_DURATION], entry_id, COL_DURATION)
    if duration < 0:
        raise RowDecodeSkipped(f"row {entry_id}: negative duration {duration}")

    offset = _as_float(row[COL_DATE], entry_id, COL_DATE)
    try:
        recorded_at = date_from_offset(offset)
    except OverflowError as exc:
        raise RowDecodeSkipped(f"row {entry_id}: date offset {offset} out of range") from exc

    relative_path = row[COL_PATH]
    if not isinstance(relative_path, str) or not relative_path.strip():
        raise RowDecodeSkipped(f"row {entry_id}: missing file path")

    return CatalogEntry(
        id=entry_id,
        file_location=base_dir / relative_path,
        title=derive_title(_as_text(row[COL_LABEL]), _as_text(row[COL_TITLE]), relative_path, recorded_at),
        recorded_at=recorded_at,
        duration_seconds=duration,
    )


def _as_float(value: object, entry_id: int, column: str) -> float:
    if value is None or isinstance(value, bytes):
        raise RowDecodeSkipped(f"row {entry_id}: missing {column}")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise RowDecodeSkipped(f"row {entry_id}: unreadable {column} {value!r}") from exc
    if not math.isfinite(number):
        raise RowDecodeSkipped(f"row {entry_id}: non-finite {column}")
    return number


def _as_text(value: object) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return ""


def _sort_entries(entries: List[CatalogEntry]) -> None:
    entries.sort(key=lambda entry: (entry.recorded_at, entry.id), reverse=True)


class Catalog:
    """The in-memory set of recordings.

    Readers always see a complete snapshot: a refresh builds the new
    collection first and swaps it in with a single assignment. Only
    :meth:`apply` writes transcription fields, and the job manager is its
    only caller.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()) -> None:
        self._snapshot: Tuple[Tuple[CatalogEntry, ...], Dict[int, CatalogEntry]] = _build_snapshot(entries)

    def __len__(self) -> int:
        return len(self._snapshot[0])

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._snapshot[0])

    def entries(self) -> Tuple[CatalogEntry, ...]:
        return self._snapshot[0]

    def get(self, entry_id: int) -> CatalogEntry:
        entry = self._snapshot[1].get(entry_id)
        if entry is None:
            raise CatalogError(f"Recording with id {entry_id} not found")
        return entry

    def replace(self, entries: Iterable[CatalogEntry]) -> None:
        """Swap in a new collection, keeping transcription state for surviving ids."""

        ordered, index = _build_snapshot(entries)
        previous = self._snapshot[1]
        for entry in ordered:
            old = previous.get(entry.id)
            if old is not None and old is not entry:
                entry.transcription = old.transcription
                entry.transcription_state = old.transcription_state
        self._snapshot = (ordered, index)

    def refresh(self, loader: Callable[[], LoadResult]) -> LoadResult:
        """Run ``loader`` and install its entries; on error the catalog is unchanged."""

        result = loader()
        self.replace(result.entries)
        return result

    def apply(self, entry_id: int, state: TranscriptionState, text: Optional[str] = None) -> CatalogEntry:
        entry = self.get(entry_id)
        if state is TranscriptionState.COMPLETE:
            if not text:
                raise CatalogError("A completed transcription must carry text")
            entry.transcription = text
        entry.transcription_state = state
        return entry


def _build_snapshot(
    entries: Iterable[CatalogEntry],
) -> Tuple[Tuple[CatalogEntry, ...], Dict[int, CatalogEntry]]:
    ordered = tuple(entries)
    index: Dict[int, CatalogEntry] = {}
    for entry in ordered:
        if entry.id in index:
            raise CatalogError(f"Duplicate recording id {entry.id}")
        index[entry.id] = entry
    return ordered, index


def loader_for(
    config: Config,
    store_path: Optional[Path] = None,
    directory: Optional[Path] = None,
) -> Callable[[], LoadResult]:
    """Return a loader for the configured store, or for ``directory`` when given."""

    if directory is not None:
        return lambda: load_directory(directory)
    resolved = resolve_store_path(config, store_path)
    recordings_dir = resolve_recordings_dir(config, resolved)
    return lambda: load_store(resolved, recordings_dir)
