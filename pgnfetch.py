#!/usr/bin/env python3
"""
Fetching new game batches from upstream PGN sources.

Staleness checks are cheap HEAD probes fanned out over a thread pool; a
failed probe only marks its file as changed. Downloads then run one file at
a time with a minimum delay between them. Progress (chunks, dedup index,
source tracking) is checkpointed every few files so an interrupted run only
loses the files since the last checkpoint.
"""

import hashlib
import io
import re
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import chess.pgn
import httpx
import structlog

from chunkstore import (
    DEDUP_INDEX_NAME,
    AdmissionStats,
    ArtifactCorruptError,
    ChunkStore,
    DedupIndex,
    admit_game,
    load_or_rebuild_dedup,
    read_json,
    write_json_atomic,
)
from gameindex import SOURCE_TRACKING_NAME

log = structlog.get_logger(__name__)

PGNMENTOR_SOURCE = "pgnmentor"
PLAYER_LINK_RE = re.compile(r'href=["\']players/([^"\']+\.zip)["\']', re.IGNORECASE)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# PART 1: SOURCE TRACKING
# ============================================================================

@dataclass
class FileMeta:
    """What we last saw of one upstream file."""

    filename: str
    url: str = ""
    last_modified: Optional[str] = None
    etag: Optional[str] = None
    game_count: int = 0
    fetched_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'filename': self.filename, 'url': self.url}
        if self.last_modified is not None:
            data['lastModified'] = self.last_modified
        if self.etag is not None:
            data['etag'] = self.etag
        data['gameCount'] = self.game_count
        if self.fetched_at is not None:
            data['fetchedAt'] = self.fetched_at
        return data

    @staticmethod
    def from_dict(filename: str, data: Dict[str, Any]) -> 'FileMeta':
        return FileMeta(
            filename=data.get('filename') or filename,
            url=data.get('url') or "",
            last_modified=data.get('lastModified'),
            etag=data.get('etag'),
            game_count=int(data.get('gameCount') or 0),
            fetched_at=data.get('fetchedAt'),
        )


@dataclass
class SourceState:
    last_checked: Optional[str] = None
    files: Dict[str, FileMeta] = field(default_factory=dict)


class SourceTracking:
    """Per-source fetch bookkeeping. Decides re-fetching only; the dedup index decides admission."""

    def __init__(self, sources: Optional[Dict[str, SourceState]] = None):
        self.sources: Dict[str, SourceState] = dict(sources or {})

    def source(self, name: str) -> SourceState:
        if name not in self.sources:
            self.sources[name] = SourceState()
        return self.sources[name]

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for name, state in self.sources.items():
            entry: Dict[str, Any] = {}
            if state.last_checked is not None:
                entry['lastPageVisit'] = state.last_checked
            entry['files'] = {fn: meta.to_dict() for fn, meta in state.files.items()}
            data[name] = entry
        return data

    @classmethod
    def load(cls, path) -> 'SourceTracking':
        source = Path(path)
        if not source.exists():
            return cls()
        data = read_json(source)
        if not isinstance(data, dict):
            raise ArtifactCorruptError(source, "expected an object keyed by source name")
        tracking = cls()
        for name, entry in data.items():
            if not isinstance(entry, dict) or not isinstance(entry.get('files', {}), dict):
                raise ArtifactCorruptError(source, f"bad entry for source {name!r}")
            state = tracking.source(name)
            state.last_checked = entry.get('lastPageVisit')
            for filename, meta in entry.get('files', {}).items():
                state.files[filename] = FileMeta.from_dict(filename, meta)
        return tracking

    def save(self, path):
        write_json_atomic(path, self.to_dict())


# ============================================================================
# PART 2: UPSTREAM SOURCE
# ============================================================================

@dataclass
class ProbeResult:
    filename: str
    ok: bool
    last_modified: Optional[str] = None
    etag: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Download:
    content: bytes
    last_modified: Optional[str] = None
    etag: Optional[str] = None


class PgnMentorSource:
    """Player archives listed on pgnmentor.com/files.html."""

    name = PGNMENTOR_SOURCE

    def __init__(self, client: httpx.Client, base_url: str = "https://www.pgnmentor.com"):
        self.client = client
        self.base_url = base_url.rstrip('/')

    def file_url(self, filename: str) -> str:
        return f"{self.base_url}/players/{filename}"

    def discover(self) -> List[str]:
        """Every players/*.zip linked from the files page."""
        response = self.client.get(f"{self.base_url}/files.html")
        response.raise_for_status()
        files = sorted(set(PLAYER_LINK_RE.findall(response.text)))
        log.info("upstream_files_discovered", source=self.name, files=len(files))
        return files

    def probe(self, filename: str) -> ProbeResult:
        """HEAD one file. Failures come back as ok=False, never raised."""
        try:
            response = self.client.head(self.file_url(filename))
        except httpx.HTTPError as exc:
            return ProbeResult(filename, ok=False, error=str(exc) or type(exc).__name__)
        if not response.is_success:
            return ProbeResult(filename, ok=False, error=f"HTTP {response.status_code}")
        return ProbeResult(
            filename,
            ok=True,
            last_modified=response.headers.get('last-modified'),
            etag=response.headers.get('etag'),
        )

    def download(self, filename: str) -> Download:
        response = self.client.get(self.file_url(filename))
        response.raise_for_status()
        return Download(
            content=response.content,
            last_modified=response.headers.get('last-modified'),
            etag=response.headers.get('etag'),
        )


def probe_all(source: PgnMentorSource, filenames: List[str],
              max_workers: int = 8) -> Dict[str, ProbeResult]:
    """Fan out HEAD probes; one failed probe never aborts the batch."""
    if not filenames:
        return {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        results = list(executor.map(source.probe, filenames))
    failed = sum(1 for r in results if not r.ok)
    if failed:
        log.warning("probes_failed", failed=failed, total=len(results))
    return {r.filename: r for r in results}


@dataclass
class FileClassification:
    new: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def to_fetch(self) -> List[str]:
        return self.new + self.modified


def classify(filenames: List[str], state: SourceState,
             probes: Dict[str, ProbeResult]) -> FileClassification:
    """Untracked files are new; tracked files are modified if their probe failed or changed."""
    result = FileClassification()
    for filename in filenames:
        known = state.files.get(filename)
        if known is None:
            result.new.append(filename)
            continue
        probe = probes.get(filename)
        if probe is None or not probe.ok:
            result.modified.append(filename)
        elif (probe.last_modified and probe.last_modified != known.last_modified) or \
                (probe.etag and probe.etag != known.etag):
            result.modified.append(filename)
        else:
            result.unchanged.append(filename)
    return result


# ============================================================================
# PART 3: PGN EXTRACTION AND ADMISSION
# ============================================================================

def decode_pgn(data: bytes) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        return data.decode('latin-1')


def extract_pgn(archive: bytes) -> str:
    """Text of the first .pgn member of a zip archive."""
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        for name in zf.namelist():
            if name.lower().endswith('.pgn'):
                return decode_pgn(zf.read(name))
    raise ValueError("no PGN file in archive")


def iter_games(pgn_text: str) -> Iterator[Tuple[chess.pgn.Game, str]]:
    """Yield each game of a PGN text with the slice of text it was read from."""
    handle = io.StringIO(pgn_text)
    while True:
        start = handle.tell()
        game = chess.pgn.read_game(handle)
        if game is None:
            break
        yield game, pgn_text[start:handle.tell()]


def admit_pgn_text(pgn_text: str, store: ChunkStore, dedup: DedupIndex,
                   source: str, source_file: str,
                   progress: Optional[Callable[[int], None]] = None) -> AdmissionStats:
    """Admit every game in a PGN text. Rejections and duplicates are counted, not raised."""
    stats = AdmissionStats()
    for game, text in iter_games(pgn_text):
        admit_game(game, store, dedup, source, source_file, stats, pgn_text=text)
        if progress is not None:
            progress(stats.total)
    return stats


# ============================================================================
# PART 4: FETCH PIPELINE
# ============================================================================

@dataclass
class FetchReport:
    discovered: int = 0
    new: int = 0
    modified: int = 0
    unchanged: int = 0
    probe_failures: int = 0
    processed_files: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    checkpoints: int = 0
    stats: AdmissionStats = field(default_factory=AdmissionStats)


class Checkpointer:
    """Persists the mutable run state: open chunks, dedup index, source tracking."""

    def __init__(self, index_dir, store: ChunkStore, dedup: DedupIndex, tracking: SourceTracking):
        self.index_dir = Path(index_dir)
        self.store = store
        self.dedup = dedup
        self.tracking = tracking
        self.count = 0

    def __call__(self):
        written = self.store.flush()
        self.dedup.save(self.index_dir / DEDUP_INDEX_NAME)
        self.tracking.save(self.index_dir / SOURCE_TRACKING_NAME)
        self.count += 1
        log.info("checkpoint_saved", chunks=written, dedup_entries=len(self.dedup))


class Throttle:
    """Enforces a minimum gap between successive fetches."""

    def __init__(self, min_interval: float, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.sleep = sleep
        self.clock = clock
        self._last: Optional[float] = None

    def wait(self):
        if self._last is not None:
            remaining = self.min_interval - (self.clock() - self._last)
            if remaining > 0:
                self.sleep(remaining)
        self._last = self.clock()


def fetch_new_batch(source: PgnMentorSource, index_dir, capacity: int,
                    download_dir=None, throttle: Optional[Throttle] = None,
                    checkpoint_every: int = 10, probe_workers: int = 8,
                    max_files: Optional[int] = None,
                    report: Optional[FetchReport] = None) -> FetchReport:
    """
    Discover upstream files, probe them, and admit games from new or changed ones.

    A download, extraction or parse failure abandons that one file and the
    run continues. Artifact corruption in the local store aborts the run.
    """
    index_dir = Path(index_dir)
    report = report if report is not None else FetchReport()
    throttle = throttle or Throttle(0.0)

    store = ChunkStore(index_dir, capacity)
    store.load_all()
    dedup = load_or_rebuild_dedup(index_dir, store.chunks)
    tracking = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME)
    state = tracking.source(source.name)
    checkpoint = Checkpointer(index_dir, store, dedup, tracking)

    visited = utc_now()
    filenames = source.discover()
    report.discovered = len(filenames)

    tracked = [f for f in filenames if f in state.files]
    probes = probe_all(source, tracked, probe_workers)
    report.probe_failures = sum(1 for p in probes.values() if not p.ok)

    classification = classify(filenames, state, probes)
    report.new = len(classification.new)
    report.modified = len(classification.modified)
    report.unchanged = len(classification.unchanged)

    to_fetch = classification.to_fetch
    if max_files is not None:
        to_fetch = to_fetch[:max_files]

    for filename in to_fetch:
        throttle.wait()
        try:
            fetched = source.download(filename)
            if download_dir is not None:
                Path(download_dir).mkdir(parents=True, exist_ok=True)
                (Path(download_dir) / filename).write_bytes(fetched.content)
            pgn_text = extract_pgn(fetched.content)
        except (httpx.HTTPError, zipfile.BadZipFile, ValueError, OSError) as exc:
            report.failures.append((filename, str(exc) or type(exc).__name__))
            log.warning("fetch_failed", file=filename, error=str(exc))
            continue

        file_stats = admit_pgn_text(pgn_text, store, dedup, source.name, filename)
        report.stats.merge(file_stats)
        state.files[filename] = FileMeta(
            filename=filename,
            url=source.file_url(filename),
            last_modified=fetched.last_modified,
            etag=fetched.etag,
            game_count=file_stats.total - file_stats.rejected,
            fetched_at=utc_now(),
        )
        report.processed_files.append(filename)
        log.info("file_admitted", file=filename, accepted=file_stats.accepted,
                 duplicates=file_stats.duplicates, rejected=file_stats.rejected)

        if checkpoint_every and len(report.processed_files) % checkpoint_every == 0:
            checkpoint()

    state.last_checked = visited
    checkpoint()
    report.checkpoints = checkpoint.count
    return report


# ============================================================================
# PART 5: LOCAL IMPORT
# ============================================================================

def file_sha256(path) -> Tuple[int, str]:
    """Return (size, sha256 hex) of a file."""
    h = hashlib.sha256()
    size = 0
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(8192), b''):
            size += len(block)
            h.update(block)
    return size, h.hexdigest()


@dataclass
class ImportReport:
    label: str
    filename: str
    stats: AdmissionStats = field(default_factory=AdmissionStats)
    already_imported: bool = False


def import_pgn_file(pgn_path, label: str, index_dir, capacity: int,
                    flush_every: int = 1000,
                    progress: Optional[Callable[[int], None]] = None,
                    report: Optional[ImportReport] = None) -> ImportReport:
    """
    Admit the games of a PGN file on disk under the source `label`.

    The file's sha256 is tracked as its content tag, so importing the same
    file twice is a no-op.
    """
    pgn_path = Path(pgn_path)
    index_dir = Path(index_dir)
    report = report if report is not None else ImportReport(label=label, filename=pgn_path.name)

    store = ChunkStore(index_dir, capacity)
    store.load_all()
    dedup = load_or_rebuild_dedup(index_dir, store.chunks)
    tracking = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME)
    state = tracking.source(label)
    checkpoint = Checkpointer(index_dir, store, dedup, tracking)

    _, sha256_hex = file_sha256(pgn_path)
    known = state.files.get(pgn_path.name)
    if known is not None and known.etag == sha256_hex:
        report.already_imported = True
        log.info("import_skipped", file=pgn_path.name, reason="unchanged")
        return report

    pgn_text = pgn_path.read_text(encoding='utf-8', errors='replace')
    for game, text in iter_games(pgn_text):
        admit_game(game, store, dedup, label, pgn_path.name, report.stats, pgn_text=text)
        if progress is not None:
            progress(report.stats.total)
        if flush_every and report.stats.total % flush_every == 0:
            checkpoint()

    state.files[pgn_path.name] = FileMeta(
        filename=pgn_path.name,
        url=pgn_path.resolve().as_uri(),
        etag=sha256_hex,
        game_count=report.stats.total - report.stats.rejected,
        fetched_at=utc_now(),
    )
    state.last_checked = utc_now()
    checkpoint()
    return report
