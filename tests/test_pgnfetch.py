"""Tests for pgnfetch.py: source tracking, probes, throttled fetch and local import."""

import io
import json
import zipfile

import httpx
import pytest

from chunkstore import DEDUP_INDEX_NAME, ArtifactCorruptError, ChunkStore, DedupIndex
from gameindex import SOURCE_TRACKING_NAME
from pgnfetch import (
    FileMeta,
    PgnMentorSource,
    ProbeResult,
    SourceState,
    SourceTracking,
    Throttle,
    classify,
    extract_pgn,
    fetch_new_batch,
    import_pgn_file,
    probe_all,
)

BASE = "https://upstream.example.test"
JAN = "Mon, 01 Jan 2024 00:00:00 GMT"
FEB = "Thu, 01 Feb 2024 00:00:00 GMT"


def archive(pgn_text, member="games.pgn", encoding="utf-8"):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr(member, pgn_text.encode(encoding))
    return buffer.getvalue()


class UpstreamStub:
    """In-process stand-in for the upstream site."""

    def __init__(self, files):
        self.files = dict(files)
        self.last_modified = {name: JAN for name in files}
        self.fail_head = set()
        self.fail_get = set()
        self.requests = []

    def __call__(self, request):
        self.requests.append((request.method, request.url.path))
        if request.url.path == "/files.html":
            links = "".join(f'<a href="players/{name}">{name}</a> ' for name in self.files)
            links += '<a href="openings/Sicilian.zip">not a player file</a>'
            return httpx.Response(200, text=f"<html><body>{links}</body></html>")
        name = request.url.path.rsplit("/", 1)[-1]
        if name not in self.files:
            return httpx.Response(404)
        if request.method == "HEAD":
            if name in self.fail_head:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, headers={"Last-Modified": self.last_modified[name]})
        if name in self.fail_get:
            return httpx.Response(503)
        return httpx.Response(200, content=self.files[name],
                              headers={"Last-Modified": self.last_modified[name]})

    def source(self):
        client = httpx.Client(transport=httpx.MockTransport(self), timeout=5.0)
        return PgnMentorSource(client, BASE)

    def downloads(self):
        return [path for method, path in self.requests if method == "GET" and path != "/files.html"]


@pytest.fixture
def upstream(make_pgn):
    return UpstreamStub({
        "Carlsen.zip": archive(make_pgn(date="2019.01.20") + make_pgn(date="2019.01.21")),
        "Caruana.zip": archive(make_pgn(white="Caruana, Fabiano", black="Carlsen, Magnus",
                                        date="2019.01.21") + make_pgn(date="2019.01.20")),
    })


def run_fetch(upstream, index_dir, **kwargs):
    kwargs.setdefault("throttle", Throttle(0.0))
    return fetch_new_batch(upstream.source(), index_dir, 10, **kwargs)


# ============================================================================
# Source tracking
# ============================================================================

class TestSourceTracking:

    def test_round_trip(self, index_dir):
        tracking = SourceTracking()
        state = tracking.source("pgnmentor")
        state.last_checked = "2024-01-01T00:00:00+00:00"
        state.files["Carlsen.zip"] = FileMeta("Carlsen.zip", url="u", last_modified=JAN,
                                              game_count=3, fetched_at="t")
        path = index_dir / SOURCE_TRACKING_NAME
        tracking.save(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["pgnmentor"]["lastPageVisit"] == "2024-01-01T00:00:00+00:00"
        assert data["pgnmentor"]["files"]["Carlsen.zip"]["lastModified"] == JAN
        assert data["pgnmentor"]["files"]["Carlsen.zip"]["gameCount"] == 3
        assert SourceTracking.load(path).to_dict() == data

    def test_missing_file_is_empty(self, index_dir):
        assert SourceTracking.load(index_dir / SOURCE_TRACKING_NAME).sources == {}

    def test_wrong_shape_is_corrupt(self, index_dir):
        path = index_dir / SOURCE_TRACKING_NAME
        path.write_text('{"pgnmentor": []}', encoding="utf-8")
        with pytest.raises(ArtifactCorruptError):
            SourceTracking.load(path)


# ============================================================================
# Discovery and probes
# ============================================================================

class TestProbes:

    def test_discover_player_archives(self, upstream):
        assert upstream.source().discover() == ["Carlsen.zip", "Caruana.zip"]

    def test_failed_probe_is_isolated(self, upstream):
        upstream.fail_head.add("Carlsen.zip")
        results = probe_all(upstream.source(), ["Carlsen.zip", "Caruana.zip", "Nobody.zip"],
                            max_workers=3)

        assert not results["Carlsen.zip"].ok
        assert "refused" in results["Carlsen.zip"].error
        assert results["Caruana.zip"].ok
        assert results["Caruana.zip"].last_modified == JAN
        assert results["Nobody.zip"].error == "HTTP 404"

    def test_classify(self):
        state = SourceState(files={
            "same.zip": FileMeta("same.zip", last_modified=JAN),
            "newer.zip": FileMeta("newer.zip", last_modified=JAN),
            "flaky.zip": FileMeta("flaky.zip", last_modified=JAN),
        })
        probes = {
            "same.zip": ProbeResult("same.zip", ok=True, last_modified=JAN),
            "newer.zip": ProbeResult("newer.zip", ok=True, last_modified=FEB),
            "flaky.zip": ProbeResult("flaky.zip", ok=False, error="timeout"),
        }
        result = classify(["fresh.zip", "same.zip", "newer.zip", "flaky.zip"], state, probes)

        assert result.new == ["fresh.zip"]
        assert result.modified == ["newer.zip", "flaky.zip"]
        assert result.unchanged == ["same.zip"]


# ============================================================================
# Extraction
# ============================================================================

class TestExtractPgn:

    def test_reads_pgn_member(self, make_pgn):
        text = make_pgn()
        assert extract_pgn(archive(text)) == text

    def test_latin1_fallback(self, make_pgn):
        text = make_pgn(white="Müller, Karsten")
        assert "Müller, Karsten" in extract_pgn(archive(text, encoding="latin-1"))

    def test_no_pgn_member(self):
        with pytest.raises(ValueError):
            extract_pgn(archive("readme", member="README.txt"))


# ============================================================================
# Fetch pipeline
# ============================================================================

class TestFetchNewBatch:

    def test_first_run_admits_and_tracks(self, upstream, index_dir):
        report = run_fetch(upstream, index_dir)

        assert (report.discovered, report.new, report.modified) == (2, 2, 0)
        assert report.processed_files == ["Carlsen.zip", "Caruana.zip"]
        assert (report.stats.total, report.stats.accepted, report.stats.duplicates) == (4, 3, 1)

        store = ChunkStore(index_dir, 10)
        store.load_all()
        assert store.total_records() == 3
        assert len(DedupIndex.load(index_dir / DEDUP_INDEX_NAME)) == 3
        state = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME).source("pgnmentor")
        assert state.files["Carlsen.zip"].last_modified == JAN
        assert state.files["Caruana.zip"].game_count == 2
        assert state.last_checked is not None

    def test_second_run_skips_unchanged(self, upstream, index_dir):
        run_fetch(upstream, index_dir)
        upstream.requests.clear()

        report = run_fetch(upstream, index_dir)

        assert (report.new, report.modified, report.unchanged) == (0, 0, 2)
        assert upstream.downloads() == []
        assert ("HEAD", "/players/Carlsen.zip") in upstream.requests
        assert report.stats.total == 0

    def test_changed_file_is_refetched(self, upstream, index_dir):
        run_fetch(upstream, index_dir)
        upstream.last_modified["Caruana.zip"] = FEB
        upstream.requests.clear()

        report = run_fetch(upstream, index_dir)

        assert report.modified == 1
        assert upstream.downloads() == ["/players/Caruana.zip"]
        assert report.stats.duplicates == 2
        state = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME).source("pgnmentor")
        assert state.files["Caruana.zip"].last_modified == FEB

    def test_failed_probe_means_refetch(self, upstream, index_dir):
        run_fetch(upstream, index_dir)
        upstream.fail_head.add("Carlsen.zip")
        upstream.requests.clear()

        report = run_fetch(upstream, index_dir)

        assert report.probe_failures == 1
        assert upstream.downloads() == ["/players/Carlsen.zip"]
        assert report.failures == []

    def test_failed_download_is_recorded_and_run_continues(self, upstream, index_dir):
        upstream.fail_get.add("Carlsen.zip")

        report = run_fetch(upstream, index_dir)

        assert [name for name, _ in report.failures] == ["Carlsen.zip"]
        assert report.processed_files == ["Caruana.zip"]
        state = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME).source("pgnmentor")
        assert "Carlsen.zip" not in state.files

    def test_corrupt_archive_is_a_file_failure(self, upstream, index_dir):
        upstream.files["Carlsen.zip"] = b"not a zip"
        report = run_fetch(upstream, index_dir)
        assert [name for name, _ in report.failures] == ["Carlsen.zip"]

    def test_checkpoints_every_k_files(self, upstream, index_dir, make_pgn):
        upstream.files["Anand.zip"] = archive(make_pgn(white="Anand, Viswanathan"))
        upstream.last_modified["Anand.zip"] = JAN

        report = run_fetch(upstream, index_dir, checkpoint_every=2)

        assert len(report.processed_files) == 3
        assert report.checkpoints == 2

    def test_max_files(self, upstream, index_dir, tmp_path):
        report = run_fetch(upstream, index_dir, max_files=1, download_dir=tmp_path / "downloads")

        assert report.processed_files == ["Carlsen.zip"]
        assert (tmp_path / "downloads" / "Carlsen.zip").exists()
        assert not (tmp_path / "downloads" / "Caruana.zip").exists()

    def test_throttle_between_downloads(self, upstream, index_dir):
        waits = []
        throttle = Throttle(2.0, sleep=waits.append, clock=lambda: 100.0)
        run_fetch(upstream, index_dir, throttle=throttle)
        assert waits == [2.0]


class TestThrottle:

    def test_waits_only_for_remaining_gap(self):
        now = [0.0]
        sleeps = []
        throttle = Throttle(2.0, sleep=sleeps.append, clock=lambda: now[0])

        throttle.wait()
        now[0] = 0.5
        throttle.wait()
        now[0] = 10.0
        throttle.wait()

        assert sleeps == [1.5]


# ============================================================================
# Local import
# ============================================================================

class TestImportPgnFile:

    def test_import_and_reimport(self, tmp_path, index_dir, sample_pgn):
        pgn_path = tmp_path / "twic.pgn"
        pgn_path.write_text(sample_pgn, encoding="utf-8")
        counts = []

        report = import_pgn_file(pgn_path, "twic", index_dir, 10, progress=counts.append)

        assert (report.stats.accepted, report.stats.duplicates, report.stats.rejected) == (2, 1, 1)
        assert counts == [1, 2, 3, 4]
        state = SourceTracking.load(index_dir / SOURCE_TRACKING_NAME).source("twic")
        assert state.files["twic.pgn"].game_count == 3
        assert len(state.files["twic.pgn"].etag) == 64

        again = import_pgn_file(pgn_path, "twic", index_dir, 10)
        assert again.already_imported
        assert again.stats.total == 0

    def test_changed_file_dedups_against_store(self, tmp_path, index_dir, sample_pgn, make_pgn):
        pgn_path = tmp_path / "twic.pgn"
        pgn_path.write_text(sample_pgn, encoding="utf-8")
        import_pgn_file(pgn_path, "twic", index_dir, 10)
        pgn_path.write_text(sample_pgn + make_pgn(date="2022.02.02"), encoding="utf-8")

        report = import_pgn_file(pgn_path, "twic", index_dir, 10)

        assert report.stats.accepted == 1
        store = ChunkStore(index_dir, 10)
        store.load_all()
        assert [r.idx for r in store.all_records()] == [0, 1, 2]

    def test_game_with_illegal_move_keeps_its_movetext(self, tmp_path, index_dir, make_pgn):
        pgn_path = tmp_path / "broken.pgn"
        pgn_path.write_text(make_pgn(moves="1. e4 e5 2. Ke3 Nc6") + make_pgn(date="2020.05.05"),
                            encoding="utf-8")

        report = import_pgn_file(pgn_path, "twic", index_dir, 10)

        assert (report.stats.accepted, report.stats.rejected) == (2, 0)
        store = ChunkStore(index_dir, 10)
        store.load_all()
        first, second = store.all_records()
        assert first.moves == "1. e4 e5 2. Ke3 Nc6 1-0"
        assert second.moves.startswith("1. e4 e5 2. Nf3 Nc6 3. Bb5 a6")
