#!/usr/bin/env python3
"""
Secondary indexes over the chunked game store.

Every index here is a pure function of the chunk contents: records are read
in chunk order, then position order, and never modified. When games are
grouped under a derived key, the first game seen supplies the key's
representative payload.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from chunkstore import (
    DEDUP_INDEX_NAME,
    Chunk,
    ChunkStore,
    DedupIndex,
    GameRecord,
    PreconditionError,
    parse_chunk_id,
    read_json,
    write_json_if_changed,
)
from ecobook import EnrichmentSummary, OpeningBook, enrich_records

log = structlog.get_logger(__name__)

INDEX_VERSION = "1.0"

MASTER_INDEX_NAME = "master-index.json"
SOURCE_TRACKING_NAME = "source-tracking.json"

# Artifacts copied forward from a backup when missing locally
COPY_FORWARD_NAMES = (DEDUP_INDEX_NAME, SOURCE_TRACKING_NAME)


# ============================================================================
# PART 1: INDEX BUILDERS
# ============================================================================

def build_opening_by_fen(records: Iterable[GameRecord]) -> Dict[str, List[int]]:
    index: Dict[str, List[int]] = {}
    for game in records:
        if game.opening_fen:
            index.setdefault(game.opening_fen, []).append(game.idx)
    return index


def build_opening_by_name(records: Iterable[GameRecord]) -> Dict[str, Dict[str, Any]]:
    """Opening name -> {fen, eco, gameIds}; fen and eco come from the first game seen."""
    index: Dict[str, Dict[str, Any]] = {}
    for game in records:
        if game.opening_name and game.opening_fen and game.opening_eco:
            if game.opening_name not in index:
                index[game.opening_name] = {
                    'fen': game.opening_fen,
                    'eco': game.opening_eco,
                    'gameIds': [],
                }
            index[game.opening_name]['gameIds'].append(game.idx)
    return index


def build_opening_by_eco(records: Iterable[GameRecord]) -> Dict[str, List[int]]:
    """ECO code -> ids. The header ECO tag is used, falling back to the matched opening's code."""
    index: Dict[str, List[int]] = {}
    for game in records:
        code = game.eco or game.opening_eco
        if code:
            index.setdefault(code, []).append(game.idx)
    return index


def _player_key(name: Optional[str]) -> str:
    return (name or '').strip().lower()


def build_player_index(records: Iterable[GameRecord]) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}

    def entry(name: str) -> Dict[str, Any]:
        if name not in index:
            index[name] = {'asWhite': [], 'asBlack': [], 'totalGames': 0}
        return index[name]

    for game in records:
        white = _player_key(game.white)
        if white:
            slot = entry(white)
            slot['asWhite'].append(game.idx)
            slot['totalGames'] += 1
        black = _player_key(game.black)
        if black:
            slot = entry(black)
            slot['asBlack'].append(game.idx)
            slot['totalGames'] += 1
    return index


def build_event_index(records: Iterable[GameRecord]) -> Dict[str, List[int]]:
    index: Dict[str, List[int]] = {}
    for game in records:
        if game.event:
            index.setdefault(game.event.strip().lower(), []).append(game.idx)
    return index


def build_date_index(records: Iterable[GameRecord]) -> Dict[str, List[int]]:
    """Year -> ids; unknown years ("????") are left out."""
    index: Dict[str, List[int]] = {}
    for game in records:
        if game.date:
            year = game.date.split('.')[0]
            if year and year != '????':
                index.setdefault(year, []).append(game.idx)
    return index


def build_game_to_players(records: Iterable[GameRecord]) -> List[Optional[List[str]]]:
    """Dense array: position idx holds [white, black], null where no game has that idx."""
    games = list(records)
    if not games:
        return []
    dense: List[Optional[List[str]]] = [None] * (max(g.idx for g in games) + 1)
    for game in games:
        dense[game.idx] = [game.white or "Unknown", game.black or "Unknown"]
    return dense


def build_game_to_chunk(chunks: Iterable[Chunk]) -> Dict[str, int]:
    """Sparse idx -> chunk id map; consumers must not assume idx // capacity."""
    index: Dict[str, int] = {}
    for chunk in chunks:
        for game in chunk.records:
            index[str(game.idx)] = chunk.chunk_id
    return index


def build_master_index(chunks: List[Chunk], key_prefix: str) -> Dict[str, Any]:
    """Chunk directory rebuilt from the chunks actually present."""
    entries = []
    offset = 0
    for chunk in chunks:
        entries.append({
            'id': chunk.chunk_id,
            'blobKey': f"{key_prefix}chunk-{chunk.chunk_id}.json",
            'startIdx': offset,
            'endIdx': offset + len(chunk),
        })
        offset += len(chunk)
    return {
        'version': INDEX_VERSION,
        'totalGames': offset,
        'totalChunks': len(chunks),
        'chunks': entries,
    }


def build_all_indexes(chunks: List[Chunk], key_prefix: str,
                      source_tracking: Any) -> Dict[str, Any]:
    """Every index artifact, by file name, in write order."""
    records = [r for chunk in chunks for r in chunk.records]
    return {
        MASTER_INDEX_NAME: build_master_index(chunks, key_prefix),
        'opening-by-fen.json': build_opening_by_fen(records),
        'opening-by-name.json': build_opening_by_name(records),
        'opening-by-eco.json': build_opening_by_eco(records),
        'player-index.json': build_player_index(records),
        'event-index.json': build_event_index(records),
        'date-index.json': build_date_index(records),
        'game-to-players.json': build_game_to_players(records),
        'game-to-chunk.json': build_game_to_chunk(chunks),
        DEDUP_INDEX_NAME: DedupIndex.rebuild(chunks).to_dict(),
        SOURCE_TRACKING_NAME: source_tracking,
    }


# ============================================================================
# PART 2: REBUILD
# ============================================================================

@dataclass
class RebuildReport:
    total_games: int = 0
    chunks_written: List[int] = field(default_factory=list)
    chunks_unchanged: List[int] = field(default_factory=list)
    indexes_written: List[str] = field(default_factory=list)
    indexes_unchanged: List[str] = field(default_factory=list)
    copied_forward: List[str] = field(default_factory=list)
    dedup_repaired: bool = False
    enrichment: EnrichmentSummary = field(default_factory=EnrichmentSummary)


def copy_forward(snapshot_dir, index_dir) -> List[str]:
    """
    Seed the local index dir with chunk/dedup/tracking files from a snapshot that are missing locally.

    Once local chunks exist, the local tail is the chunk count: snapshot
    chunks past it are left behind, so a re-slice that shrank the store is
    not undone by the next publish.
    """
    source = Path(snapshot_dir)
    target = Path(index_dir)
    if not source.is_dir():
        return []
    target.mkdir(parents=True, exist_ok=True)
    local_ids = [parse_chunk_id(path.name) for path in target.iterdir()]
    local_ids = [chunk_id for chunk_id in local_ids if chunk_id is not None]
    tail = max(local_ids) if local_ids else None

    copied = []
    left_behind = []
    for path in sorted(source.iterdir()):
        if not path.is_file() or (target / path.name).exists():
            continue
        chunk_id = parse_chunk_id(path.name)
        if chunk_id is not None and tail is not None and chunk_id > tail:
            left_behind.append(path.name)
        elif chunk_id is not None or path.name in COPY_FORWARD_NAMES:
            shutil.copy2(path, target / path.name)
            copied.append(path.name)
    if copied:
        log.info("artifacts_copied_forward", count=len(copied), source=str(source))
    if left_behind:
        log.warning("chunks_past_local_tail_not_restored", files=left_behind, tail=tail)
    return copied


def rebuild(index_dir, book: OpeningBook, capacity: int, key_prefix: str,
            snapshot_dir=None,
            progress: Optional[Callable[[int], None]] = None,
            report: Optional[RebuildReport] = None) -> RebuildReport:
    """
    Enrich every chunk in place and regenerate all secondary indexes.

    A chunk file is rewritten only when its content changes, so the output
    is byte-identical to a full rebuild while untouched chunks keep their
    files (and their already-published remote copies).
    """
    report = report if report is not None else RebuildReport()
    index_dir = Path(index_dir)
    if snapshot_dir is not None:
        report.copied_forward = copy_forward(snapshot_dir, index_dir)

    store = ChunkStore(index_dir, capacity)
    store.load_all()
    if not store.chunks:
        raise PreconditionError(f"no chunk files in {index_dir}; import or fetch games first")
    report.total_games = store.total_records()

    enrich_records(store.all_records(), book, progress, summary=report.enrichment)

    for chunk in store.chunks:
        if store.write_if_changed(chunk):
            report.chunks_written.append(chunk.chunk_id)
            log.info("chunk_written", chunk_id=chunk.chunk_id, games=len(chunk))
        else:
            report.chunks_unchanged.append(chunk.chunk_id)

    persisted = DedupIndex.load(index_dir / DEDUP_INDEX_NAME)
    rebuilt = DedupIndex.rebuild(store.chunks)
    if persisted is not None and persisted != rebuilt:
        report.dedup_repaired = True
        log.warning("dedup_index_disagrees", persisted=len(persisted), rebuilt=len(rebuilt))

    tracking_path = index_dir / SOURCE_TRACKING_NAME
    source_tracking = read_json(tracking_path) if tracking_path.exists() else {}

    for name, data in build_all_indexes(store.chunks, key_prefix, source_tracking).items():
        if write_json_if_changed(index_dir / name, data):
            report.indexes_written.append(name)
        else:
            report.indexes_unchanged.append(name)

    log.info("rebuild_complete", games=report.total_games,
             chunks_written=len(report.chunks_written),
             indexes_written=len(report.indexes_written))
    return report
