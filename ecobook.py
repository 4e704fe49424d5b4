#!/usr/bin/env python3
"""
Opening catalog and opening enrichment.

The catalog is the ECO TSV set (columns: eco, name, pgn). Each line is
replayed once and keyed by the EPD of its final position. A game is matched
by replaying its mainline and walking back from the last position until a
catalogued position turns up; the number of plies walked back is recorded
as `moves_back`.
"""

import csv
import io
import os
import pickle
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import chess
import chess.pgn
import structlog

from chunkstore import GameRecord

log = structlog.get_logger(__name__)

CACHE_VERSION = 1


# ============================================================================
# PART 1: OPENING CATALOG
# ============================================================================

@dataclass(frozen=True)
class Opening:
    eco: str
    name: str
    fen: str


@dataclass(frozen=True)
class OpeningMatch:
    opening: Opening
    moves_back: int


def _line_board(pgn: str) -> Optional[chess.Board]:
    """Replay one catalog line; None if it does not parse cleanly."""
    game = chess.pgn.read_game(io.StringIO(pgn))
    if game is None or game.errors:
        return None
    board = game.board()
    for move in game.mainline_moves():
        board.push(move)
    return board


def _catalog_files(eco_path) -> List[Path]:
    path = Path(eco_path)
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix == '.tsv')
    if path.exists():
        return [path]
    return []


class OpeningBook:
    """Position-keyed opening catalog."""

    def __init__(self, openings: Optional[Dict[str, Opening]] = None):
        self.positions: Dict[str, Opening] = dict(openings or {})
        self.lookups = 0

    def __len__(self) -> int:
        return len(self.positions)

    def add(self, eco: str, name: str, board: chess.Board):
        """Catalog the position on `board`. Later lines for the same position win."""
        self.positions[board.epd()] = Opening(eco=eco, name=name, fen=board.fen())

    def lookup(self, board: chess.Board) -> Optional[OpeningMatch]:
        """Nearest catalogued position at or before the end of the game on `board`."""
        self.lookups += 1
        probe = board.copy()
        moves_back = 0
        while True:
            opening = self.positions.get(probe.epd())
            if opening is not None:
                return OpeningMatch(opening, moves_back)
            if not probe.move_stack:
                return None
            probe.pop()
            moves_back += 1

    @classmethod
    def from_tsv(cls, eco_path) -> 'OpeningBook':
        """Load a TSV file or a directory of TSV files (cached per file)."""
        book = cls()
        files = _catalog_files(eco_path)
        if not files:
            log.warning("eco_catalog_missing", path=str(eco_path))
            return book
        for path in files:
            for eco, name, fen in _load_catalog_file(path):
                board = chess.Board(fen)
                book.positions[board.epd()] = Opening(eco=eco, name=name, fen=fen)
        log.info("eco_catalog_loaded", files=len(files), positions=len(book))
        return book


def _load_catalog_file(path: Path) -> List[tuple]:
    """Parse one ECO TSV into (eco, name, fen) rows, using a pickle cache keyed by mtime/size."""
    cache_path = Path(str(path) + ".cache")
    src_mtime = os.path.getmtime(path)
    src_size = os.path.getsize(path)

    if cache_path.exists():
        try:
            with open(cache_path, 'rb') as cf:
                cache = pickle.load(cf)
            if (cache.get('version') == CACHE_VERSION and cache.get('src_mtime') == src_mtime
                    and cache.get('src_size') == src_size):
                return cache['rows']
        except (OSError, pickle.UnpicklingError, EOFError, AttributeError, KeyError):
            log.debug("eco_cache_ignored", cache=str(cache_path))

    rows = []
    skipped = 0
    with open(path, 'r', encoding='utf-8') as f:
        reader = csv.DictReader(f, delimiter='\t')
        for row in reader:
            board = _line_board(row.get('pgn') or '')
            if board is None:
                skipped += 1
                continue
            rows.append((row.get('eco') or '', row.get('name') or '', board.fen()))
    if skipped:
        log.warning("eco_lines_skipped", file=path.name, skipped=skipped)

    try:
        with open(cache_path, 'wb') as cf:
            pickle.dump({'version': CACHE_VERSION, 'src_mtime': src_mtime,
                         'src_size': src_size, 'rows': rows}, cf)
    except OSError:
        log.debug("eco_cache_not_written", cache=str(cache_path))
    return rows


# ============================================================================
# PART 2: MOVETEXT CLEANUP AND REPLAY
# ============================================================================

HEADER_LINE_RE = re.compile(r'^\[.*?\]\s*$', re.MULTILINE)
COMMENT_RE = re.compile(r'\{[^}]*\}|;[^\n]*')
VARIATION_RE = re.compile(r'\([^()]*\)')
NAG_RE = re.compile(r'\$\d+')
MOVE_NUMBER_RE = re.compile(r'\d+\.+')
RESULT_RE = re.compile(r'1-0|0-1|1/2-1/2|\*')
ANNOTATION_SUFFIX_RE = re.compile(r'[!?]+$')


def san_tokens(text: str) -> List[str]:
    """Extract plain SAN moves from movetext (legacy text may still carry headers)."""
    if '[' in text:
        text = HEADER_LINE_RE.sub('', text)
    text = COMMENT_RE.sub(' ', text)
    # Nested variations are removed innermost first
    previous = None
    while previous != text:
        previous = text
        text = VARIATION_RE.sub(' ', text)
    text = NAG_RE.sub(' ', text)
    text = RESULT_RE.sub(' ', text)
    text = MOVE_NUMBER_RE.sub(' ', text)
    tokens = []
    for token in text.split():
        token = ANNOTATION_SUFFIX_RE.sub('', token)
        if token:
            tokens.append(token)
    return tokens


def replay(tokens: Iterable[str]) -> chess.Board:
    """Replay SAN moves on a fresh board. Raises ValueError on the first bad move."""
    board = chess.Board()
    for san in tokens:
        board.push_san(san)
    return board


# ============================================================================
# PART 3: ENRICHMENT ENGINE
# ============================================================================

@dataclass
class EnrichmentSummary:
    matched: int = 0
    unmatched: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.matched + self.unmatched


def enrich_record(record: GameRecord, book: OpeningBook) -> Optional[bool]:
    """
    Annotate one record in place.

    Returns None if the record was already annotated (skipped), True if a
    match was written, False if it stays unannotated.
    """
    if record.is_annotated:
        return None

    tokens = san_tokens(record.moves or '')
    if not tokens:
        return False
    try:
        board = replay(tokens)
    except ValueError:
        return False

    match = book.lookup(board)
    if match is None:
        return False

    record.opening_fen = match.opening.fen
    record.opening_name = match.opening.name
    record.opening_eco = match.opening.eco
    record.moves_back = match.moves_back
    return True


def enrich_records(records: Iterable[GameRecord], book: OpeningBook,
                   progress: Optional[Callable[[int], None]] = None,
                   summary: Optional[EnrichmentSummary] = None) -> EnrichmentSummary:
    """Annotate every record lacking an opening; already annotated ones are skipped untouched."""
    summary = summary if summary is not None else EnrichmentSummary()
    for count, record in enumerate(records, 1):
        outcome = enrich_record(record, book)
        if outcome is None:
            summary.skipped += 1
        elif outcome:
            summary.matched += 1
        else:
            summary.unmatched += 1
        if progress is not None:
            progress(count)

    log.info("enrichment_complete", matched=summary.matched, unmatched=summary.unmatched,
             skipped=summary.skipped)
    return summary
