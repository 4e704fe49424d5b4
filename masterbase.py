#!/usr/bin/env python3
"""
masterbase CLI - Command-line interface for the master-game index

A git-like interface for growing a chunked, deduplicated master-game
database and publishing its artifacts to a remote blob store.
"""

import sys
import os
import argparse
from pathlib import Path
from typing import Optional
import time

import httpx

import blobsync
import chunkstore
import gameindex
import pgnfetch
from ecobook import OpeningBook
from mbconfig import Settings, configure_logging, get_settings


VERSION = "0.1.0"

MARKER_DIR = '.masterbase'


# ============================================================================
# WORKSPACE DETECTION
# ============================================================================

def find_workspace(start_path: Optional[str] = None) -> Optional[Path]:
    """
    Find the masterbase workspace starting from start_path.

    Walks up from start_path looking for a .masterbase/ directory holding a
    config marker. Returns the workspace directory, or None if not found.
    """
    if start_path is None:
        start_path = os.getcwd()

    current = Path(start_path).resolve()
    for parent in [current] + list(current.parents):
        marker = parent / MARKER_DIR
        if marker.is_dir() and (marker / 'config').exists():
            return parent
    return None


def ensure_workspace(start_path: Optional[str] = None) -> Path:
    """Find workspace or exit with error."""
    workspace = find_workspace(start_path)
    if workspace is None:
        location = start_path if start_path else "current directory"
        print(f"fatal: not a masterbase workspace: {location}", file=sys.stderr)
        sys.exit(3)
    return workspace


def workspace_settings(args) -> Settings:
    """Environment settings with the root pinned to the detected workspace."""
    settings = get_settings()
    start = args.C if args.C else str(settings.root_dir)
    workspace = ensure_workspace(start)
    return settings.model_copy(update={'root_dir': workspace})


def workspace_lock(settings: Settings) -> chunkstore.WorkspaceLock:
    return chunkstore.WorkspaceLock(settings.root_dir / MARKER_DIR / 'lock')


def open_object_store(settings: Settings):
    """Directory-backed store when remote_dir is set, otherwise the blob API."""
    if settings.remote_dir is not None:
        return blobsync.DirectoryObjectStore(settings.remote_dir)
    return blobsync.NetlifyBlobStore(
        site_id=settings.site_id,
        token=settings.auth_token,
        store_name=settings.blob_store_name,
        api_url=settings.blob_api_url,
        timeout=settings.request_timeout_seconds,
    )


def load_book(settings: Settings) -> OpeningBook:
    return OpeningBook.from_tsv(settings.resolve_eco_path())


# ============================================================================
# PROGRESS REPORTING
# ============================================================================

class ProgressReporter:
    """Progress reporter for long-running operations."""

    def __init__(self, quiet: bool = False, label: str = "Processed"):
        self.quiet = quiet
        self.label = label
        self.last_update = 0
        self.start_time = time.time()

    def update(self, current: int, total: Optional[int] = None, force: bool = False):
        """Update progress display."""
        if self.quiet:
            return

        now = time.time()
        if not force and now - self.last_update < 0.5:
            return

        self.last_update = now

        if total is not None:
            pct = (current / total * 100) if total > 0 else 0
            bar_width = 30
            filled = int(bar_width * current / total) if total > 0 else 0
            bar = '=' * filled + '>' + ' ' * (bar_width - filled - 1)

            elapsed = now - self.start_time
            rate = current / elapsed if elapsed > 0 else 0

            print(f"\r{self.label}: {current:,} / {total:,} [{bar}] {pct:.0f}% ({rate:.1f}/s)",
                  end='', file=sys.stderr)
        else:
            print(f"\r{self.label}: {current:,}", end='', file=sys.stderr)

    def finish(self):
        """Complete progress display."""
        if not self.quiet:
            print(file=sys.stderr)

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time


def format_size(bytes_val: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if abs(bytes_val) < 1024:
            return f"{bytes_val:.1f} {unit}"
        bytes_val /= 1024
    return f"{bytes_val:.1f} TB"


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds / 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds / 3600)
        mins = int((seconds % 3600) / 60)
        return f"{hours}h {mins}m"


def print_admission(stats: chunkstore.AdmissionStats):
    print(f"Games read: {stats.total:,}", file=sys.stderr)
    print(f"  Accepted:   {stats.accepted:,}", file=sys.stderr)
    print(f"  Duplicates: {stats.duplicates:,}", file=sys.stderr)
    print(f"  Rejected:   {stats.rejected:,}", file=sys.stderr)


def print_plan(sync_plan: blobsync.SyncPlan):
    print(f"New:       {len(sync_plan.new)}")
    for artifact in sync_plan.new:
        print(f"  + {artifact.key} ({format_size(artifact.local_size)})")
    print(f"Modified:  {len(sync_plan.modified)}")
    for artifact in sync_plan.modified:
        sign = '+' if artifact.size_delta >= 0 else '-'
        print(f"  ~ {artifact.key} ({format_size(artifact.local_size)}, "
              f"{sign}{format_size(abs(artifact.size_delta))})")
    print(f"Unchanged: {len(sync_plan.unchanged)}")
    if sync_plan.remote_only:
        print(f"Remote only (left in place): {len(sync_plan.remote_only)}")
        for key in sync_plan.remote_only[:10]:
            print(f"  ? {key}")
        if len(sync_plan.remote_only) > 10:
            print(f"  ... and {len(sync_plan.remote_only) - 10} more")
    upload_bytes = sum(a.local_size for a in sync_plan.uploads)
    print(f"Upload size: {format_size(upload_bytes)}")
    if sync_plan.new_games is not None:
        print(f"Games: {sync_plan.local_total_games:,} local, "
              f"{sync_plan.remote_total_games:,} remote ({sync_plan.new_games:+,} new)")
    elif sync_plan.local_total_games is not None:
        print(f"Games: {sync_plan.local_total_games:,} local, none published yet")


def prompt_confirm(sync_plan: blobsync.SyncPlan) -> bool:
    """Show the plan and ask; anything but y/yes declines."""
    print_plan(sync_plan)
    try:
        answer = input(f"Upload {len(sync_plan.uploads)} file(s)? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def assume_yes(sync_plan: blobsync.SyncPlan) -> bool:
    print_plan(sync_plan)
    return True


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_init(args):
    """Initialize a new masterbase workspace."""
    target_dir = Path(args.directory if args.directory else '.').resolve()

    target_dir.mkdir(parents=True, exist_ok=True)

    marker = target_dir / MARKER_DIR
    if marker.exists():
        print(f"fatal: already a masterbase workspace: {target_dir}", file=sys.stderr)
        return 1

    marker.mkdir()
    (marker / 'config').write_text("# masterbase workspace\n")
    for name in ('indexes', 'backups', 'downloads'):
        (target_dir / name).mkdir(exist_ok=True)

    print(f"Initialized empty masterbase workspace in {target_dir}")
    return 0


def cmd_import(args):
    """Import a PGN file from disk."""
    settings = workspace_settings(args)

    pgn_path = Path(args.pgn_file)
    if not pgn_path.exists():
        print(f"fatal: file not found: {pgn_path}", file=sys.stderr)
        return 1

    progress = ProgressReporter(quiet=args.quiet, label="Games")
    report = pgnfetch.ImportReport(label=args.label, filename=pgn_path.name)

    if not args.quiet:
        print(f"Importing: {pgn_path.name}", file=sys.stderr)

    try:
        with workspace_lock(settings):
            pgnfetch.import_pgn_file(
                pgn_path, args.label, settings.index_dir, settings.chunk_capacity,
                progress=progress.update, report=report)
    finally:
        progress.finish()
        if report.already_imported:
            print(f"Already imported: {pgn_path.name} (unchanged)", file=sys.stderr)
        elif not args.quiet:
            print(f"Label: {args.label}", file=sys.stderr)
            print_admission(report.stats)
            print(f"Completed in {format_duration(progress.elapsed)}", file=sys.stderr)

    return 0


def cmd_fetch(args):
    """Fetch new and changed upstream files."""
    settings = workspace_settings(args)
    max_files = args.max_files if args.max_files is not None else settings.max_files

    report = pgnfetch.FetchReport()
    progress = ProgressReporter(quiet=args.quiet)
    client = httpx.Client(
        timeout=settings.request_timeout_seconds,
        headers={'User-Agent': settings.user_agent},
        follow_redirects=True,
    )
    try:
        with workspace_lock(settings), client:
            source = pgnfetch.PgnMentorSource(client, settings.source_base_url)
            pgnfetch.fetch_new_batch(
                source, settings.index_dir, settings.chunk_capacity,
                download_dir=None if args.no_keep_downloads else settings.downloads_dir,
                throttle=pgnfetch.Throttle(settings.throttle_seconds),
                checkpoint_every=settings.checkpoint_every,
                probe_workers=settings.probe_workers,
                max_files=max_files,
                report=report,
            )
    finally:
        print(f"Upstream files: {report.discovered} "
              f"({report.new} new, {report.modified} changed, {report.unchanged} unchanged)",
              file=sys.stderr)
        if report.probe_failures:
            print(f"Probe failures (refetched): {report.probe_failures}", file=sys.stderr)
        print(f"Files processed: {len(report.processed_files)}", file=sys.stderr)
        print_admission(report.stats)
        if report.failures:
            print(f"Failed files: {len(report.failures)}", file=sys.stderr)
            for filename, message in report.failures[:10]:
                print(f"  - {filename}: {message}", file=sys.stderr)
        print(f"Completed in {format_duration(progress.elapsed)}", file=sys.stderr)

    return 0


def print_rebuild(report: gameindex.RebuildReport):
    enrichment = report.enrichment
    if report.copied_forward:
        print(f"Copied from backup: {len(report.copied_forward)}", file=sys.stderr)
    print(f"Games: {report.total_games:,}", file=sys.stderr)
    print(f"Openings: {enrichment.matched:,} matched, {enrichment.unmatched:,} unmatched, "
          f"{enrichment.skipped:,} already annotated", file=sys.stderr)
    print(f"Chunks: {len(report.chunks_written)} written, "
          f"{len(report.chunks_unchanged)} unchanged", file=sys.stderr)
    print(f"Indexes: {len(report.indexes_written)} written, "
          f"{len(report.indexes_unchanged)} unchanged", file=sys.stderr)
    if report.dedup_repaired:
        print("Deduplication index was out of step and has been rebuilt", file=sys.stderr)


def cmd_build(args):
    """Enrich games and rebuild all indexes locally."""
    settings = workspace_settings(args)

    snapshot_dir = None
    if args.from_backup:
        latest = blobsync.latest_snapshot(settings.backups_dir)
        if latest is None:
            print("fatal: no backup to copy from", file=sys.stderr)
            return 1
        snapshot_dir = latest / settings.key_prefix

    progress = ProgressReporter(quiet=args.quiet, label="Enriched")
    report = gameindex.RebuildReport()
    with workspace_lock(settings):
        book = load_book(settings)
        try:
            gameindex.rebuild(
                settings.index_dir, book, settings.chunk_capacity, settings.key_prefix,
                snapshot_dir=snapshot_dir, progress=progress.update, report=report)
        finally:
            progress.finish()
            print_rebuild(report)

    print(f"Completed in {format_duration(progress.elapsed)}", file=sys.stderr)
    return 0


def cmd_backup(args):
    """Snapshot every remote artifact into backups/."""
    settings = workspace_settings(args)
    store = open_object_store(settings)

    snapshot = blobsync.backup(store, settings.key_prefix, settings.backups_dir)
    print(f"Backup: {snapshot.path}")
    print(f"Files: {len(snapshot.keys)} ({format_size(snapshot.total_bytes)})")
    return 0


def cmd_plan(args):
    """Show what a publish would upload, without uploading."""
    settings = workspace_settings(args)
    store = open_object_store(settings)

    sync_plan = blobsync.plan(store, settings.index_dir, settings.key_prefix)
    print_plan(sync_plan)
    return 0


def cmd_publish(args):
    """Backup, rebuild, plan and (after confirmation) upload."""
    settings = workspace_settings(args)
    store = open_object_store(settings)
    session = blobsync.SyncSession(store, settings.index_dir, settings.backups_dir,
                                   settings.key_prefix)
    progress = ProgressReporter(quiet=args.quiet, label="Enriched")

    try:
        with workspace_lock(settings):
            snapshot = session.run_backup()
            print(f"Backup: {snapshot.path} ({len(snapshot.keys)} files)", file=sys.stderr)

            book = load_book(settings)
            try:
                report = session.run_rebuild(book, settings.chunk_capacity,
                                             copy_forward=not args.no_copy_forward,
                                             progress=progress.update)
            finally:
                progress.finish()
            print_rebuild(report)

            session.run_plan()
            if args.dry_run:
                print_plan(session.sync_plan)
                return 0

            result = session.run_apply(assume_yes if args.yes else prompt_confirm)
            if result.skipped:
                print("Nothing to upload.")
            elif result.cancelled:
                print("Upload cancelled.")
            else:
                print(f"Uploaded {len(result.uploaded)} file(s), {format_size(result.total_bytes)}")
    finally:
        print(f"Stage reached: {session.stage.name.lower()}", file=sys.stderr)

    return 0


def cmd_rechunk(args):
    """Re-slice every chunk by fingerprint (destructive one-time repair)."""
    settings = workspace_settings(args)

    with workspace_lock(settings):
        store = chunkstore.ChunkStore(settings.index_dir, settings.chunk_capacity)
        report = chunkstore.rechunk_by_fingerprint(store, confirmed=args.confirm)
        print(f"Games loaded: {report.loaded:,}", file=sys.stderr)
        print(f"Duplicates removed: {report.duplicates_removed:,}", file=sys.stderr)
        print(f"Chunks: {report.chunks}", file=sys.stderr)
        for name in report.removed_files:
            print(f"  removed {name}", file=sys.stderr)

        rebuilt = gameindex.rebuild(settings.index_dir, load_book(settings),
                                    settings.chunk_capacity, settings.key_prefix)
        print_rebuild(rebuilt)
    return 0


def cmd_status(args):
    """Summarize the local workspace."""
    settings = workspace_settings(args)
    index_dir = settings.index_dir

    store = chunkstore.ChunkStore(index_dir, settings.chunk_capacity)
    chunk_files = store.chunk_files()
    artifacts = blobsync.local_artifacts(index_dir)
    index_files = [p for p in artifacts if not chunkstore.CHUNK_FILE_RE.match(p.name)]

    backups = []
    if settings.backups_dir.is_dir():
        backups = sorted(p for p in settings.backups_dir.iterdir() if p.is_dir())

    def present(name):
        return "yes" if (index_dir / name).exists() else "no"

    print(f"Workspace: {settings.root_dir}")
    print(f"Chunk files: {len(chunk_files)}")
    print(f"Index files: {len(index_files)}")
    print(f"Deduplication index: {present(chunkstore.DEDUP_INDEX_NAME)}")
    print(f"Source tracking: {present(gameindex.SOURCE_TRACKING_NAME)}")
    print(f"Backups: {len(backups)}")
    if backups:
        print(f"Latest backup: {backups[-1].name}")
    return 0


def cmd_list(args):
    """List entities in the workspace."""
    if args.entity != 'sources':
        print(f"fatal: unknown entity: {args.entity}", file=sys.stderr)
        print("Available: sources", file=sys.stderr)
        return 2

    settings = workspace_settings(args)
    tracking = pgnfetch.SourceTracking.load(settings.index_dir / gameindex.SOURCE_TRACKING_NAME)

    print(f"{'SOURCE':<16} {'FILES':<8} {'GAMES':<10} {'LAST CHECKED':<20}")

    total_files = 0
    total_games = 0
    for name, state in sorted(tracking.sources.items()):
        games = sum(meta.game_count for meta in state.files.values())
        checked = (state.last_checked or '-')[:19]
        print(f"{name[:16]:<16} {len(state.files):<8,} {games:<10,} {checked:<20}")
        total_files += len(state.files)
        total_games += games

    print()
    print(f"Total: {len(tracking.sources)} sources, {total_files:,} files, {total_games:,} games")
    return 0


def cmd_stats(args):
    """Display storage statistics."""
    settings = workspace_settings(args)

    store = chunkstore.ChunkStore(settings.index_dir, settings.chunk_capacity)
    store.load_all()

    num_games = store.total_records()
    annotated = sum(1 for r in store.all_records() if r.is_annotated)
    chunk_bytes = sum(path.stat().st_size for _, path in store.chunk_files())
    artifacts = blobsync.local_artifacts(settings.index_dir)
    index_sizes = [(p.name, p.stat().st_size) for p in artifacts
                   if not chunkstore.CHUNK_FILE_RE.match(p.name)]

    print("Masterbase Statistics")
    print()
    print("Storage:")
    print(f"  Chunks:        {format_size(chunk_bytes):>10} ({len(store.chunks):,} files)")
    for name, size in index_sizes:
        print(f"  {name:<28} {format_size(size):>10}")
    print(f"  {'─' * 40}")
    total_size = chunk_bytes + sum(size for _, size in index_sizes)
    print(f"  Total:         {format_size(total_size):>10}")
    print()
    print(f"Games: {num_games:,}")
    if num_games > 0:
        print(f"With opening: {annotated:,} ({annotated / num_games * 100:.0f}%)")
        open_chunk = store.open_chunk
        if open_chunk is not None:
            print(f"Open chunk: {open_chunk.chunk_id} "
                  f"({len(open_chunk):,} / {store.capacity:,})")
    return 0


def cmd_verify(args):
    """Verify store integrity."""
    settings = workspace_settings(args)
    index_dir = settings.index_dir

    errors = []

    def report(msg):
        if not args.quiet:
            print(msg)

    report("Verifying store integrity...")

    store = chunkstore.ChunkStore(index_dir, settings.chunk_capacity)
    store.load_all()
    report(f"✓ Loaded {len(store.chunks):,} chunks ({store.total_records():,} games)")

    oversized = store.oversized()
    if oversized:
        report(f"✗ {len(oversized)} chunks over capacity {store.capacity}: {oversized[:5]}")
        errors.extend(oversized)
    else:
        report("✓ Chunk capacity respected")

    seen = {}
    duplicate_ids = []
    for chunk in store.chunks:
        for record in chunk.records:
            if record.idx in seen:
                duplicate_ids.append(record.idx)
            seen[record.idx] = chunk.chunk_id
    if duplicate_ids:
        report(f"✗ {len(duplicate_ids)} game ids appear more than once")
        errors.extend(duplicate_ids)
    else:
        report("✓ Game ids are unique")

    persisted = chunkstore.DedupIndex.load(index_dir / chunkstore.DEDUP_INDEX_NAME)
    rebuilt = chunkstore.DedupIndex.rebuild(store.chunks)
    if persisted is None:
        report("- No deduplication index on disk")
    elif persisted != rebuilt:
        report(f"✗ Deduplication index disagrees with chunks "
               f"({len(persisted):,} persisted, {len(rebuilt):,} rebuilt)")
        errors.append(chunkstore.DEDUP_INDEX_NAME)
    else:
        report(f"✓ Deduplication index covers {len(rebuilt):,} fingerprints")

    game_to_chunk_path = index_dir / 'game-to-chunk.json'
    if game_to_chunk_path.exists():
        expected = {str(idx): chunk_id for idx, chunk_id in seen.items()}
        if chunkstore.read_json(game_to_chunk_path) != expected:
            report("✗ game-to-chunk index is stale; run `masterbase build`")
            errors.append('game-to-chunk.json')
        else:
            report("✓ game-to-chunk index matches chunks")

    if errors:
        print()
        print(f"Errors found: {len(errors)}")
        return 5
    else:
        print()
        print("Store is valid.")
        return 0


# ============================================================================
# MAIN
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='masterbase',
        description='Chunked, deduplicated master-game index with blob publishing',
    )

    parser.add_argument('--version', action='version', version=f'masterbase {VERSION}')
    parser.add_argument('-C', metavar='<path>', help='Run as if started in <path>')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # init
    parser_init = subparsers.add_parser('init', help='Initialize a new workspace')
    parser_init.add_argument('directory', nargs='?', help='Directory to initialize (default: current)')

    # import
    parser_import = subparsers.add_parser('import', help='Import a PGN file')
    parser_import.add_argument('pgn_file', help='PGN file to import')
    parser_import.add_argument('--label', required=True, help='Source label')
    parser_import.add_argument('--quiet', action='store_true', help='Suppress progress output')

    # fetch
    parser_fetch = subparsers.add_parser('fetch', help='Fetch new games from upstream')
    parser_fetch.add_argument('--max-files', type=int, help='Process at most this many files')
    parser_fetch.add_argument('--no-keep-downloads', action='store_true',
                              help='Do not keep raw archives in downloads/')
    parser_fetch.add_argument('--quiet', action='store_true', help='Suppress progress output')

    # build
    parser_build = subparsers.add_parser('build', help='Enrich games and rebuild indexes')
    parser_build.add_argument('--from-backup', action='store_true',
                              help='Copy missing chunks from the latest backup first')
    parser_build.add_argument('--quiet', action='store_true', help='Suppress progress output')

    # backup
    subparsers.add_parser('backup', help='Snapshot remote artifacts')

    # plan
    subparsers.add_parser('plan', help='Show what would be uploaded')

    # publish
    parser_publish = subparsers.add_parser('publish', help='Backup, rebuild, plan and upload')
    parser_publish.add_argument('--yes', action='store_true', help='Upload without asking')
    parser_publish.add_argument('--dry-run', action='store_true', help='Stop after the plan')
    parser_publish.add_argument('--no-copy-forward', action='store_true',
                                help='Do not seed missing local files from the backup')
    parser_publish.add_argument('--quiet', action='store_true', help='Suppress progress output')

    # rechunk
    parser_rechunk = subparsers.add_parser('rechunk', help='Re-slice chunks by fingerprint')
    parser_rechunk.add_argument('--confirm', action='store_true',
                                help='Required: rewrites every chunk and moves every game')

    # status
    subparsers.add_parser('status', help='Summarize the workspace')

    # list
    parser_list = subparsers.add_parser('list', help='List entities')
    parser_list.add_argument('entity', choices=['sources'], help='Entity type to list')

    # stats
    subparsers.add_parser('stats', help='Display storage statistics')

    # verify
    parser_verify = subparsers.add_parser('verify', help='Verify store integrity')
    parser_verify.add_argument('--quiet', action='store_true', help='Only output errors')

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    # Dispatch to command handlers
    commands = {
        'init': cmd_init,
        'import': cmd_import,
        'fetch': cmd_fetch,
        'build': cmd_build,
        'backup': cmd_backup,
        'plan': cmd_plan,
        'publish': cmd_publish,
        'rechunk': cmd_rechunk,
        'status': cmd_status,
        'list': cmd_list,
        'stats': cmd_stats,
        'verify': cmd_verify,
    }

    try:
        return commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"fatal: {e}", file=sys.stderr)
        if os.getenv('DEBUG'):
            raise
        return 1


if __name__ == '__main__':
    sys.exit(main())
