"""Tests for ecobook.py: catalog loading, movetext cleanup and enrichment."""

import chess
import pytest

from chunkstore import GameRecord
from ecobook import OpeningBook, enrich_record, enrich_records, replay, san_tokens


def record(idx, moves, **fields):
    return GameRecord(idx=idx, hash=f"h{idx}", moves=moves, **fields)


# ============================================================================
# Catalog
# ============================================================================

class TestCatalog:

    def test_loads_positions(self, book):
        assert len(book) == 5

    def test_directory_of_files(self, tmp_path):
        catalog = tmp_path / "eco"
        catalog.mkdir()
        (catalog / "a.tsv").write_text("eco\tname\tpgn\nA00\tPolish Opening\t1. b4\n", encoding="utf-8")
        (catalog / "b.tsv").write_text("eco\tname\tpgn\nA40\tQueen's Pawn\t1. d4\n", encoding="utf-8")
        (catalog / "notes.txt").write_text("not a catalog", encoding="utf-8")
        assert len(OpeningBook.from_tsv(catalog)) == 2

    def test_missing_catalog_is_empty(self, tmp_path):
        assert len(OpeningBook.from_tsv(tmp_path / "nowhere")) == 0

    def test_bad_lines_are_skipped(self, tmp_path):
        path = tmp_path / "eco.tsv"
        path.write_text("eco\tname\tpgn\nA00\tBroken\t1. e5\nA00\tPolish Opening\t1. b4\n", encoding="utf-8")
        assert len(OpeningBook.from_tsv(path)) == 1

    def test_cache_is_reused(self, eco_tsv):
        OpeningBook.from_tsv(eco_tsv)
        cache = eco_tsv.with_name(eco_tsv.name + ".cache")
        assert cache.exists()
        assert len(OpeningBook.from_tsv(eco_tsv)) == 5

    def test_lookup_walks_back(self, book):
        board = replay("e4 e5 Nf3 Nc6 Bb5 a6 Ba4 Nf6".split())
        match = book.lookup(board)
        assert match.opening.name == "Ruy Lopez"
        assert match.opening.eco == "C60"
        assert match.moves_back == 3

    def test_lookup_exact(self, book):
        match = book.lookup(replay(["d4", "d5"]))
        assert (match.opening.eco, match.moves_back) == ("D00", 0)

    def test_lookup_miss(self, book):
        assert book.lookup(replay(["c4"])) is None


# ============================================================================
# Movetext cleanup
# ============================================================================

class TestSanTokens:

    def test_strips_numbers_and_result(self):
        assert san_tokens("1. e4 e5 2. Nf3 1-0") == ["e4", "e5", "Nf3"]

    def test_strips_comments_variations_and_nags(self):
        text = "1. e4 {best by test} e5 (1... c5 2. Nf3 (2. c3)) 2. Nf3!? $1 Nc6 ; note\n3. Bb5 *"
        assert san_tokens(text) == ["e4", "e5", "Nf3", "Nc6", "Bb5"]

    def test_black_move_numbers(self):
        assert san_tokens("12... Qxd5 13. O-O") == ["Qxd5", "O-O"]

    def test_legacy_headers(self):
        assert san_tokens('[Event "x"]\n[White "y"]\n\n1. d4 d5 1/2-1/2') == ["d4", "d5"]

    def test_replay_rejects_illegal(self):
        with pytest.raises(ValueError):
            replay(["e4", "e4"])

    def test_replay_uses_fresh_board(self):
        replay(["e4"])
        assert replay([]).fen() == chess.STARTING_FEN


# ============================================================================
# Enrichment
# ============================================================================

class TestEnrichment:

    def test_annotates_in_place(self, book):
        game = record(0, "1. e4 e5 2. Nf3 Nc6 3. Bb5 a6 4. Ba4 Nf6 1-0", white="A")
        assert enrich_record(game, book) is True
        assert game.opening_name == "Ruy Lopez"
        assert game.opening_eco == "C60"
        assert game.moves_back == 3
        assert game.opening_fen == chess.Board(game.opening_fen).fen()
        assert game.white == "A"

    def test_unparsable_moves_stay_unannotated(self, book):
        games = [record(0, "1. e4 e5 2. Ke3"), record(1, ""), record(2, "1. e4 e5 1-0")]
        summary = enrich_records(games, book)
        assert (summary.matched, summary.unmatched, summary.skipped) == (1, 2, 0)
        assert not games[0].is_annotated
        assert not games[1].is_annotated

    def test_second_run_is_idempotent_and_does_no_lookups(self, book):
        games = [record(0, "1. e4 e5 2. Nf3"), record(1, "1. d4 d5 2. c4")]
        enrich_records(games, book)
        first = [g.to_dict() for g in games]
        lookups = book.lookups

        summary = enrich_records(games, book)

        assert book.lookups == lookups
        assert summary.skipped == 2
        assert summary.processed == 0
        assert [g.to_dict() for g in games] == first

    def test_existing_annotation_is_left_alone(self, book):
        game = record(0, "1. d4 d5", opening_fen="custom", opening_name="Mine",
                      opening_eco="Z99", moves_back=0)
        assert enrich_record(game, book) is None
        assert game.opening_name == "Mine"

    def test_progress_callback(self, book):
        seen = []
        enrich_records([record(0, "1. e4"), record(1, "1. d4")], book, progress=seen.append)
        assert seen == [1, 2]
