#!/usr/bin/env python3
"""
Chunked Master-Game Store

Admitted games live in append-only JSON chunks of fixed capacity. Every game
carries a content fingerprint computed once from its identity tags; the
fingerprint is the only cross-source identity key and drives deduplication.
Once a game has been written into chunk k it stays in chunk k, so adding a
batch only ever touches the open tail chunk (plus a fresh one on overflow).
"""

import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import chess
import chess.pgn
import structlog

log = structlog.get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CHUNK_CAPACITY = 4000
CHUNK_FORMAT_VERSION = "1.0"

CHUNK_FILE_RE = re.compile(r'^chunk-(\d+)\.json$')
DEDUP_INDEX_NAME = "deduplication-index.json"

VALID_RESULTS = ('1-0', '0-1', '1/2-1/2', '*')

# Identity tags, in hashing order
IDENTITY_FIELDS = ('white', 'black', 'result', 'date', 'round')
IDENTITY_TAGS = {
    'white': 'White',
    'black': 'Black',
    'result': 'Result',
    'date': 'Date',
    'round': 'Round',
}


# ============================================================================
# ERRORS
# ============================================================================

class MasterbaseError(Exception):
    """Base class for run-aborting errors."""


class ArtifactCorruptError(MasterbaseError):
    """A chunk, index or tracking artifact could not be parsed."""

    def __init__(self, path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"corrupt artifact {self.path.name}: {reason}")


class PreconditionError(MasterbaseError):
    """A stage was asked to run before its prerequisites held."""


class BackupError(PreconditionError):
    """The remote snapshot could not be completed."""


class RemoteStoreError(MasterbaseError):
    """The remote object store rejected a request."""


# ============================================================================
# PART 1: GAME RECORD
# ============================================================================

# attribute -> JSON key, in output order
PAYLOAD_KEYS = (
    ('idx', 'idx'),
    ('white', 'white'),
    ('black', 'black'),
    ('white_elo', 'whiteElo'),
    ('black_elo', 'blackElo'),
    ('result', 'result'),
    ('date', 'date'),
    ('event', 'event'),
    ('site', 'site'),
    ('round', 'round'),
    ('eco', 'eco'),
    ('opening', 'opening'),
    ('variation', 'variation'),
    ('sub_variation', 'subVariation'),
    ('moves', 'moves'),
    ('ply', 'ply'),
    ('source', 'source'),
    ('source_file', 'sourceFile'),
    ('hash', 'hash'),
)

ANNOTATION_KEYS = (
    ('opening_fen', 'ecoJsonFen'),
    ('opening_name', 'ecoJsonOpening'),
    ('opening_eco', 'ecoJsonEco'),
    ('moves_back', 'movesBack'),
)

# Optional payload fields are left out of the document when unset
OPTIONAL_ATTRS = {'round', 'eco', 'opening', 'variation', 'sub_variation'}

KNOWN_KEYS = {key for _, key in PAYLOAD_KEYS + ANNOTATION_KEYS}


@dataclass
class GameRecord:
    """One admitted game. `idx` and `hash` never change after admission."""

    idx: int
    hash: str
    white: str = "Unknown"
    black: str = "Unknown"
    white_elo: int = 0
    black_elo: int = 0
    result: str = "*"
    date: str = "????.??.??"
    event: str = "Unknown"
    site: str = "?"
    round: Optional[str] = None
    eco: Optional[str] = None
    opening: Optional[str] = None
    variation: Optional[str] = None
    sub_variation: Optional[str] = None
    moves: str = ""
    ply: int = 0
    source: str = ""
    source_file: str = ""

    # Annotation group (the only fields rewritten in place)
    opening_fen: Optional[str] = None
    opening_name: Optional[str] = None
    opening_eco: Optional[str] = None
    moves_back: Optional[int] = None

    # Keys found on disk that this version does not know about
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_annotated(self) -> bool:
        return bool(self.opening_fen)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the on-disk game document."""
        data: Dict[str, Any] = {}
        for attr, key in PAYLOAD_KEYS:
            value = getattr(self, attr)
            if value is None and attr in OPTIONAL_ATTRS:
                continue
            data[key] = value
        for attr, key in ANNOTATION_KEYS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> 'GameRecord':
        """Build a record from a game document; raises ValueError on bad shape."""
        if not isinstance(data, Mapping):
            raise ValueError("game entry is not an object")
        idx = data.get('idx')
        if not isinstance(idx, int) or isinstance(idx, bool):
            raise ValueError(f"game entry has no integer idx: {idx!r}")
        game_hash = data.get('hash')
        if not isinstance(game_hash, str) or not game_hash:
            raise ValueError(f"game {idx} has no hash")

        kwargs: Dict[str, Any] = {}
        for attr, key in PAYLOAD_KEYS + ANNOTATION_KEYS:
            if key in data:
                kwargs[attr] = data[key]
        extra = {k: v for k, v in data.items() if k not in KNOWN_KEYS}
        return GameRecord(extra=extra, **kwargs)


# ============================================================================
# PART 2: FINGERPRINT ENGINE
# ============================================================================

def _normalize(value: Optional[str]) -> str:
    return ' '.join(str(value).split()).lower()


def identity_from_headers(headers: Mapping[str, str]) -> Dict[str, Optional[str]]:
    """Pick the identity tags out of a PGN header mapping."""
    return {name: headers.get(tag) for name, tag in IDENTITY_TAGS.items()}


def missing_identity_fields(identity: Mapping[str, Optional[str]]) -> List[str]:
    """Return the names of required identity fields that are absent or degenerate."""
    missing = []
    for name in ('white', 'black'):
        value = identity.get(name)
        if value is None or _normalize(value) in ('', '?'):
            missing.append(name)
    if identity.get('result') not in VALID_RESULTS:
        missing.append('result')
    date = identity.get('date')
    if date is None or not _normalize(date):
        missing.append('date')
    return missing


def fingerprint(identity: Mapping[str, Optional[str]]) -> str:
    """
    Compute the content fingerprint of a game from its identity fields.

    The hash covers white, black, result, date and round, normalized for case
    and whitespace. Nothing else about the game (source, file, parse order)
    takes part. Raises ValueError if a required field is missing so callers
    reject the game instead of admitting it under a degenerate fingerprint.
    """
    missing = missing_identity_fields(identity)
    if missing:
        raise ValueError(f"missing identity fields: {', '.join(missing)}")

    parts = []
    for name in IDENTITY_FIELDS:
        value = identity.get(name)
        parts.append(_normalize(value) if value else '?')
    blob = "\n".join(parts).encode('utf-8')
    return hashlib.blake2b(blob, digest_size=8).hexdigest()


# ============================================================================
# PART 3: ATOMIC ARTIFACT IO
# ============================================================================

def render_json(data: Any) -> str:
    """Serialize an artifact exactly as it is written to disk."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def write_bytes_atomic(path, content: bytes):
    """Write via <path>.tmp then os.replace, so readers see old or new, never half."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    with open(tmp_path, 'wb') as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(str(tmp_path), str(target))


def write_json_atomic(path, data: Any):
    write_bytes_atomic(path, render_json(data).encode('utf-8'))


def write_json_if_changed(path, data: Any) -> bool:
    """Write an artifact only if its bytes would differ. Returns True if written."""
    target = Path(path)
    content = render_json(data).encode('utf-8')
    if target.exists() and target.read_bytes() == content:
        return False
    write_bytes_atomic(target, content)
    return True


def read_json(path) -> Any:
    """Load a JSON artifact; any parse failure is fatal for the run."""
    source = Path(path)
    try:
        with open(source, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ArtifactCorruptError(source, str(exc)) from exc


# ============================================================================
# PART 4: CHUNK STORE
# ============================================================================

def chunk_filename(chunk_id: int) -> str:
    return f"chunk-{chunk_id}.json"


def parse_chunk_id(filename: str) -> Optional[int]:
    match = CHUNK_FILE_RE.match(filename)
    return int(match.group(1)) if match else None


@dataclass
class Chunk:
    """An ordered run of records; the id comes from the file name."""

    chunk_id: int
    records: List[GameRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def ids(self) -> List[int]:
        return [r.idx for r in self.records]


def parse_chunk_document(data: Any, chunk_id: int, path=None) -> List[GameRecord]:
    """
    Normalize either chunk layout to a list of records.

    Minimal layout: a bare list of games, or {"games": [...]}.
    Full layout: {"version", "chunkId", "startIdx", "endIdx", "games"}.
    Range and id metadata are advisory; the file name decides the chunk id.
    """
    source = path or chunk_filename(chunk_id)
    if isinstance(data, list):
        games = data
    elif isinstance(data, dict) and isinstance(data.get('games'), list):
        games = data['games']
        stated_id = data.get('chunkId')
        if stated_id is not None and stated_id != chunk_id:
            log.warning("chunk_id_mismatch", file=str(source), stated=stated_id, actual=chunk_id)
    else:
        raise ArtifactCorruptError(source, "expected a game list or an object with 'games'")

    records = []
    for entry in games:
        try:
            records.append(GameRecord.from_dict(entry))
        except (TypeError, ValueError) as exc:
            raise ArtifactCorruptError(source, str(exc)) from exc
    return records


def chunk_document(chunk: Chunk) -> Dict[str, Any]:
    """Full-layout document for a chunk."""
    ids = chunk.ids()
    return {
        'version': CHUNK_FORMAT_VERSION,
        'chunkId': chunk.chunk_id,
        'startIdx': min(ids) if ids else 0,
        'endIdx': max(ids) + 1 if ids else 0,
        'games': [r.to_dict() for r in chunk.records],
    }


class ChunkStore:
    """
    Append-only collection of fixed-capacity chunk files in one directory.

    Only the most recent chunk is open, and only while it is under capacity.
    Appends never touch a closed chunk.
    """

    def __init__(self, directory, capacity: int = DEFAULT_CHUNK_CAPACITY):
        if capacity < 1:
            raise ValueError("chunk capacity must be positive")
        self.dir = Path(directory)
        self.capacity = capacity
        self.chunks: List[Chunk] = []
        self.dirty: Set[int] = set()
        self._max_idx = -1

    def chunk_path(self, chunk_id: int) -> Path:
        return self.dir / chunk_filename(chunk_id)

    def chunk_files(self) -> List[Tuple[int, Path]]:
        """Chunk files on disk, in numeric id order."""
        if not self.dir.exists():
            return []
        found = []
        for path in self.dir.iterdir():
            chunk_id = parse_chunk_id(path.name)
            if chunk_id is not None:
                found.append((chunk_id, path))
        return sorted(found)

    def load_all(self) -> List[Chunk]:
        """Read every chunk file, preserving membership and order."""
        self.chunks = []
        self.dirty = set()
        self._max_idx = -1
        for chunk_id, path in self.chunk_files():
            records = parse_chunk_document(read_json(path), chunk_id, path)
            self.chunks.append(Chunk(chunk_id, records))
            for record in records:
                self._max_idx = max(self._max_idx, record.idx)
        log.debug("chunks_loaded", directory=str(self.dir), chunks=len(self.chunks),
                  games=self.total_records())
        return self.chunks

    def total_records(self) -> int:
        return sum(len(c) for c in self.chunks)

    def all_records(self) -> Iterator[GameRecord]:
        for chunk in self.chunks:
            yield from chunk.records

    def get(self, chunk_id: int) -> Optional[Chunk]:
        for chunk in self.chunks:
            if chunk.chunk_id == chunk_id:
                return chunk
        return None

    @property
    def next_idx(self) -> int:
        return self._max_idx + 1

    @property
    def open_chunk(self) -> Optional[Chunk]:
        if self.chunks and len(self.chunks[-1]) < self.capacity:
            return self.chunks[-1]
        return None

    def append(self, record: GameRecord) -> Tuple[int, int]:
        """Place a record in the open chunk, rolling over when full. Returns (chunk_id, position)."""
        tail = self.open_chunk
        if tail is None:
            next_id = self.chunks[-1].chunk_id + 1 if self.chunks else 0
            tail = Chunk(next_id)
            self.chunks.append(tail)
            log.info("chunk_opened", chunk_id=next_id)
        tail.records.append(record)
        self.dirty.add(tail.chunk_id)
        self._max_idx = max(self._max_idx, record.idx)
        return tail.chunk_id, len(tail.records) - 1

    def write(self, chunk_id: int, records: Optional[List[GameRecord]] = None):
        """Persist one chunk atomically."""
        if records is None:
            chunk = self.get(chunk_id)
            if chunk is None:
                raise KeyError(f"no chunk {chunk_id}")
        else:
            chunk = Chunk(chunk_id, list(records))
        write_json_atomic(self.chunk_path(chunk_id), chunk_document(chunk))
        self.dirty.discard(chunk_id)

    def write_if_changed(self, chunk: Chunk) -> bool:
        written = write_json_if_changed(self.chunk_path(chunk.chunk_id), chunk_document(chunk))
        self.dirty.discard(chunk.chunk_id)
        return written

    def flush(self) -> List[int]:
        """Write every chunk touched since the last flush."""
        written = sorted(self.dirty)
        for chunk_id in written:
            self.write(chunk_id)
        return written

    def oversized(self) -> List[int]:
        """Chunk ids above capacity (should always be empty)."""
        return [c.chunk_id for c in self.chunks if len(c) > self.capacity]


# ============================================================================
# PART 5: DEDUPLICATION INDEX
# ============================================================================

class DedupIndex:
    """Total mapping fingerprint -> game idx over every admitted game."""

    def __init__(self, entries: Optional[Mapping[str, int]] = None):
        self.entries: Dict[str, int] = dict(entries or {})

    def __len__(self) -> int:
        return len(self.entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DedupIndex):
            return NotImplemented
        return self.entries == other.entries

    def contains(self, fp: str) -> bool:
        return fp in self.entries

    def record(self, fp: str) -> Optional[int]:
        return self.entries.get(fp)

    def insert(self, fp: str, idx: int):
        existing = self.entries.get(fp)
        if existing is not None and existing != idx:
            raise ValueError(f"fingerprint {fp} already maps to game {existing}")
        self.entries[fp] = idx

    def to_dict(self) -> Dict[str, int]:
        return dict(self.entries)

    @classmethod
    def rebuild(cls, chunks: Iterable[Chunk]) -> 'DedupIndex':
        """Scan chunks in order; the first game seen for a fingerprint wins."""
        index = cls()
        for chunk in chunks:
            for record in chunk.records:
                if record.hash not in index.entries:
                    index.entries[record.hash] = record.idx
        return index

    @classmethod
    def load(cls, path) -> Optional['DedupIndex']:
        source = Path(path)
        if not source.exists():
            return None
        data = read_json(source)
        if not isinstance(data, dict):
            raise ArtifactCorruptError(source, "expected an object of fingerprint -> idx")
        return cls(data)

    def save(self, path):
        write_json_atomic(path, self.entries)


def load_or_rebuild_dedup(index_dir, chunks: List[Chunk]) -> DedupIndex:
    """Use the persisted dedup index, or rebuild it from the chunks if absent."""
    dedup = DedupIndex.load(Path(index_dir) / DEDUP_INDEX_NAME)
    if dedup is None:
        dedup = DedupIndex.rebuild(chunks)
        log.info("dedup_index_rebuilt", entries=len(dedup))
    return dedup


# ============================================================================
# PART 6: ADMISSION
# ============================================================================

@dataclass
class AdmissionStats:
    total: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0

    def merge(self, other: 'AdmissionStats'):
        self.total += other.total
        self.accepted += other.accepted
        self.rejected += other.rejected
        self.duplicates += other.duplicates


def _parse_int(value: Optional[str]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def movetext(game: chess.pgn.Game) -> str:
    """Mainline movetext without headers, comments or variations."""
    exporter = chess.pgn.StringExporter(headers=False, variations=False, comments=False)
    return game.accept(exporter).strip()


def movetext_section(pgn_text: str) -> str:
    """The movetext lines of one game's PGN text, as written."""
    lines = []
    for line in pgn_text.splitlines():
        stripped = line.strip()
        if stripped.startswith('['):
            if lines:
                break
            continue
        if stripped:
            lines.append(stripped)
    return ' '.join(lines)


def record_from_game(game: chess.pgn.Game, idx: int, game_hash: str,
                     source: str, source_file: str,
                     pgn_text: Optional[str] = None) -> GameRecord:
    """
    Build a GameRecord from a parsed PGN game.

    python-chess stops the mainline at the first illegal move, so a game with
    parse errors keeps the movetext it was read from (or none, when the text
    is not available) instead of the truncated export.
    """
    headers = game.headers
    if not game.errors:
        moves = movetext(game)
    elif pgn_text is not None:
        moves = movetext_section(pgn_text)
    else:
        moves = ""
    return GameRecord(
        idx=idx,
        hash=game_hash,
        white=headers.get('White') or "Unknown",
        black=headers.get('Black') or "Unknown",
        white_elo=_parse_int(headers.get('WhiteElo')),
        black_elo=_parse_int(headers.get('BlackElo')),
        result=headers.get('Result') or "*",
        date=headers.get('Date') or "????.??.??",
        event=headers.get('Event') or "Unknown",
        site=headers.get('Site') or "?",
        round=headers.get('Round'),
        eco=headers.get('ECO'),
        opening=headers.get('Opening'),
        variation=headers.get('Variation'),
        sub_variation=headers.get('SubVariation'),
        moves=moves,
        ply=len(list(game.mainline_moves())),
        source=source,
        source_file=source_file,
    )


def admit_game(game: chess.pgn.Game, store: ChunkStore, dedup: DedupIndex,
               source: str, source_file: str, stats: AdmissionStats,
               pgn_text: Optional[str] = None) -> Optional[GameRecord]:
    """
    Validate, deduplicate and place one parsed game.

    Admission looks at the identity tags only; bad movetext is left for
    enrichment to report as unmatched. Malformed games and duplicates are
    counted on `stats`, never raised. The duplicate check happens before an
    idx is assigned.
    """
    stats.total += 1

    try:
        game_hash = fingerprint(identity_from_headers(game.headers))
    except ValueError:
        stats.rejected += 1
        return None

    if dedup.contains(game_hash):
        stats.duplicates += 1
        return None

    record = record_from_game(game, store.next_idx, game_hash, source, source_file, pgn_text)
    store.append(record)
    dedup.insert(game_hash, record.idx)
    stats.accepted += 1
    return record


# ============================================================================
# PART 7: FINGERPRINT RE-SLICE (ONE-TIME REPAIR)
# ============================================================================

@dataclass
class RechunkReport:
    loaded: int
    duplicates_removed: int
    unique: int
    chunks: int
    removed_files: List[str]


def rechunk_by_fingerprint(store: ChunkStore, confirmed: bool = False) -> RechunkReport:
    """
    Re-sort every game by fingerprint and re-slice into full chunks.

    This breaks chunk stability for every existing game and is never part of
    the incremental path. Callers must pass confirmed=True and then rebuild
    the secondary indexes (id -> chunk and dedup change with it).
    """
    if not confirmed:
        raise PreconditionError("rechunk rewrites every chunk; pass confirmed=True to proceed")

    store.load_all()
    if not store.chunks:
        raise PreconditionError(f"no chunk files found in {store.dir}")

    log.warning("rechunk_started", chunks=len(store.chunks), games=store.total_records())
    old_ids = [c.chunk_id for c in store.chunks]

    seen: Set[str] = set()
    unique: List[GameRecord] = []
    loaded = 0
    for record in store.all_records():
        loaded += 1
        if record.hash in seen:
            continue
        seen.add(record.hash)
        unique.append(record)
    unique.sort(key=lambda r: r.hash)

    new_chunks = []
    for chunk_id, start in enumerate(range(0, len(unique), store.capacity)):
        new_chunks.append(Chunk(chunk_id, unique[start:start + store.capacity]))

    # Every game must sit in a rewritten chunk before any surplus file goes
    store.chunks = new_chunks
    store.dirty = set()
    for chunk in new_chunks:
        store.write(chunk.chunk_id)

    removed = []
    for chunk_id in old_ids:
        if chunk_id >= len(new_chunks):
            path = store.chunk_path(chunk_id)
            path.unlink()
            removed.append(path.name)
            log.warning("stale_chunk_removed", file=path.name)

    report = RechunkReport(
        loaded=loaded,
        duplicates_removed=loaded - len(unique),
        unique=len(unique),
        chunks=len(new_chunks),
        removed_files=removed,
    )
    log.warning("rechunk_complete", unique=report.unique, chunks=report.chunks,
                duplicates_removed=report.duplicates_removed)
    return report


# ============================================================================
# PART 8: SINGLE-WRITER GUARD
# ============================================================================

class WorkspaceLock:
    """Exclusive lock file; a second writer fails fast instead of racing."""

    def __init__(self, path):
        self.path = Path(path)
        self._held = False

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise PreconditionError(
                f"another run holds {self.path}; remove it if no other run is active") from None
        with os.fdopen(fd, 'w') as f:
            f.write(f"{os.getpid()}\n")
        self._held = True

    def release(self):
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> 'WorkspaceLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
