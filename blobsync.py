#!/usr/bin/env python3
"""
Publishing local artifacts to a remote object store.

A publish runs four stages in a fixed order within one SyncSession:

    backup  -> pull every remote artifact into a fresh timestamped snapshot
    rebuild -> enrich and regenerate indexes locally (copying forward from the snapshot)
    plan    -> compare local and remote content: new / modified / unchanged
    apply   -> after explicit confirmation, upload only new and modified artifacts

Remote keys are key_prefix + file name and never change once published.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

import httpx
import structlog

from chunkstore import (
    BackupError,
    PreconditionError,
    RemoteStoreError,
    write_bytes_atomic,
)
from ecobook import OpeningBook
from gameindex import MASTER_INDEX_NAME, RebuildReport, rebuild

log = structlog.get_logger(__name__)

SNAPSHOT_TIME_FORMAT = "%Y-%m-%dT%H-%M-%S"


# ============================================================================
# PART 1: OBJECT STORES
# ============================================================================

class ObjectStore(Protocol):
    def list(self, prefix: str) -> List[str]:
        ...

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, content: bytes) -> None:
        ...


class DirectoryObjectStore:
    """Object store backed by a local directory; keys map to relative paths."""

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"key escapes store root: {key}")
        return path

    def list(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob('*'):
            if path.is_file() and not path.name.endswith('.tmp'):
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def set(self, key: str, content: bytes) -> None:
        write_bytes_atomic(self._path(key), content)


class NetlifyBlobStore:
    """Netlify Blobs over its REST API, with a bounded timeout on every call."""

    def __init__(self, site_id: str, token: str, store_name: str,
                 api_url: str = "https://api.netlify.com", timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        if not site_id or not token:
            raise PreconditionError("remote blob store needs both a site id and an auth token")
        self.store_name = store_name
        self.client = httpx.Client(
            base_url=f"{api_url.rstrip('/')}/api/v1/blobs/{site_id}/{store_name}",
            headers={'Authorization': f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self.client.close()

    def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        cursor = None
        while True:
            params = {'prefix': prefix}
            if cursor:
                params['cursor'] = cursor
            try:
                response = self.client.get('', params=params)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise RemoteStoreError(f"listing {prefix!r} failed: {exc}") from exc
            payload = response.json()
            keys.extend(blob['key'] for blob in payload.get('blobs', []))
            cursor = payload.get('next_cursor')
            if not cursor:
                return sorted(keys)

    def get(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get(f"/{key}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"reading {key} failed: {exc}") from exc
        return response.content

    def set(self, key: str, content: bytes) -> None:
        try:
            response = self.client.put(f"/{key}", content=content)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"writing {key} failed: {exc}") from exc


# ============================================================================
# PART 2: BACKUP
# ============================================================================

@dataclass
class Snapshot:
    path: Path
    keys: List[str] = field(default_factory=list)
    total_bytes: int = 0

    def prefix_dir(self, key_prefix: str) -> Path:
        return self.path / key_prefix


def _snapshot_dir(backups_dir: Path, now: datetime) -> Path:
    """A new, never-reused snapshot directory."""
    base = now.strftime(SNAPSHOT_TIME_FORMAT)
    candidate = backups_dir / base
    suffix = 1
    while candidate.exists():
        candidate = backups_dir / f"{base}-{suffix}"
        suffix += 1
    return candidate


def backup(store: ObjectStore, key_prefix: str, backups_dir,
           now: Optional[datetime] = None) -> Snapshot:
    """Pull every remote artifact under the prefix into a new snapshot. Any failure is fatal."""
    backups_dir = Path(backups_dir)
    snapshot = Snapshot(path=_snapshot_dir(backups_dir, now or datetime.now(timezone.utc)))

    try:
        keys = store.list(key_prefix)
    except RemoteStoreError as exc:
        raise BackupError(f"could not list remote artifacts: {exc}") from exc

    snapshot.path.mkdir(parents=True)
    if not keys:
        log.warning("backup_remote_empty", prefix=key_prefix)

    for key in keys:
        try:
            content = store.get(key)
        except RemoteStoreError as exc:
            raise BackupError(f"could not download {key}: {exc}") from exc
        if content is None:
            raise BackupError(f"remote artifact {key} vanished during backup")
        write_bytes_atomic(snapshot.path / key, content)
        snapshot.keys.append(key)
        snapshot.total_bytes += len(content)

    log.info("backup_complete", path=str(snapshot.path), files=len(snapshot.keys),
             bytes=snapshot.total_bytes)
    return snapshot


def latest_snapshot(backups_dir) -> Optional[Path]:
    backups_dir = Path(backups_dir)
    if not backups_dir.is_dir():
        return None
    snapshots = sorted(p for p in backups_dir.iterdir() if p.is_dir())
    return snapshots[-1] if snapshots else None


# ============================================================================
# PART 3: PLAN
# ============================================================================

@dataclass
class PlannedArtifact:
    filename: str
    key: str
    content: bytes
    remote_size: Optional[int] = None

    @property
    def local_size(self) -> int:
        return len(self.content)

    @property
    def size_delta(self) -> int:
        return self.local_size - (self.remote_size or 0)


@dataclass
class SyncPlan:
    new: List[PlannedArtifact] = field(default_factory=list)
    modified: List[PlannedArtifact] = field(default_factory=list)
    unchanged: List[PlannedArtifact] = field(default_factory=list)
    remote_only: List[str] = field(default_factory=list)
    local_total_games: Optional[int] = None
    remote_total_games: Optional[int] = None

    @property
    def uploads(self) -> List[PlannedArtifact]:
        return self.new + self.modified

    @property
    def is_empty(self) -> bool:
        return not self.uploads

    @property
    def new_games(self) -> Optional[int]:
        if self.local_total_games is None or self.remote_total_games is None:
            return None
        return self.local_total_games - self.remote_total_games


def _total_games(content: Optional[bytes]) -> Optional[int]:
    """totalGames from a master index; informational only, so bad content yields None."""
    if not content:
        return None
    try:
        value = json.loads(content.decode('utf-8')).get('totalGames')
    except (ValueError, AttributeError):
        return None
    return value if isinstance(value, int) else None


def local_artifacts(index_dir) -> List[Path]:
    index_dir = Path(index_dir)
    if not index_dir.is_dir():
        return []
    return sorted(p for p in index_dir.iterdir() if p.is_file() and p.suffix == '.json')


def plan(store: ObjectStore, index_dir, key_prefix: str) -> SyncPlan:
    """Content-level diff between the local index dir and the remote prefix."""
    result = SyncPlan()
    remote_keys = set(store.list(key_prefix))
    local_keys = set()
    remote_master = None

    for path in local_artifacts(index_dir):
        key = f"{key_prefix}{path.name}"
        local_keys.add(key)
        content = path.read_bytes()
        artifact = PlannedArtifact(filename=path.name, key=key, content=content)

        remote = store.get(key) if key in remote_keys else None
        if path.name == MASTER_INDEX_NAME:
            result.local_total_games = _total_games(content)
            remote_master = remote

        if remote is None:
            result.new.append(artifact)
        else:
            artifact.remote_size = len(remote)
            if remote == content:
                result.unchanged.append(artifact)
            else:
                result.modified.append(artifact)

    result.remote_only = sorted(remote_keys - local_keys)
    result.remote_total_games = _total_games(remote_master)
    log.info("plan_complete", new=len(result.new), modified=len(result.modified),
             unchanged=len(result.unchanged), remote_only=len(result.remote_only))
    return result


# ============================================================================
# PART 4: APPLY
# ============================================================================

@dataclass
class ApplyResult:
    uploaded: List[str] = field(default_factory=list)
    total_bytes: int = 0
    skipped: bool = False
    cancelled: bool = False


def apply(store: ObjectStore, sync_plan: SyncPlan,
          confirm: Callable[[SyncPlan], bool]) -> ApplyResult:
    """
    Upload the new and modified artifacts captured by the plan.

    An empty plan is a no-op and never asks for confirmation. Otherwise
    nothing is uploaded unless `confirm` returns True.
    """
    result = ApplyResult()
    if sync_plan.is_empty:
        log.info("nothing_to_upload")
        result.skipped = True
        return result

    if not confirm(sync_plan):
        log.info("upload_cancelled")
        result.cancelled = True
        return result

    for artifact in sync_plan.uploads:
        store.set(artifact.key, artifact.content)
        result.uploaded.append(artifact.filename)
        result.total_bytes += artifact.local_size
        log.info("artifact_uploaded", key=artifact.key, bytes=artifact.local_size)
    return result


# ============================================================================
# PART 5: SESSION STATE MACHINE
# ============================================================================

class Stage(Enum):
    STARTED = 0
    BACKED_UP = 1
    REBUILT = 2
    PLANNED = 3
    APPLIED = 4


class SyncSession:
    """Runs backup -> rebuild -> plan -> apply strictly in order, each at most once."""

    def __init__(self, store: ObjectStore, index_dir, backups_dir, key_prefix: str):
        self.store = store
        self.index_dir = Path(index_dir)
        self.backups_dir = Path(backups_dir)
        self.key_prefix = key_prefix
        self.stage = Stage.STARTED
        self.snapshot: Optional[Snapshot] = None
        self.rebuild_report: Optional[RebuildReport] = None
        self.sync_plan: Optional[SyncPlan] = None
        self.result: Optional[ApplyResult] = None

    def _require(self, expected: Stage, action: str):
        if self.stage is not expected:
            raise PreconditionError(
                f"cannot {action}: session is at {self.stage.name.lower()}, "
                f"expected {expected.name.lower()}")

    def run_backup(self, now: Optional[datetime] = None) -> Snapshot:
        self._require(Stage.STARTED, "back up")
        self.snapshot = backup(self.store, self.key_prefix, self.backups_dir, now)
        self.stage = Stage.BACKED_UP
        return self.snapshot

    def run_rebuild(self, book: OpeningBook, capacity: int, copy_forward: bool = True,
                    progress: Optional[Callable[[int], None]] = None) -> RebuildReport:
        self._require(Stage.BACKED_UP, "rebuild")
        snapshot_dir = self.snapshot.prefix_dir(self.key_prefix) if copy_forward else None
        self.rebuild_report = rebuild(self.index_dir, book, capacity, self.key_prefix,
                                      snapshot_dir=snapshot_dir, progress=progress)
        self.stage = Stage.REBUILT
        return self.rebuild_report

    def run_plan(self) -> SyncPlan:
        self._require(Stage.REBUILT, "plan")
        self.sync_plan = plan(self.store, self.index_dir, self.key_prefix)
        self.stage = Stage.PLANNED
        return self.sync_plan

    def run_apply(self, confirm: Callable[[SyncPlan], bool]) -> ApplyResult:
        self._require(Stage.PLANNED, "apply")
        self.result = apply(self.store, self.sync_plan, confirm)
        self.stage = Stage.APPLIED
        return self.result

    def summary(self) -> Dict[str, object]:
        data: Dict[str, object] = {'stage': self.stage.name.lower()}
        if self.snapshot is not None:
            data['backup'] = str(self.snapshot.path)
            data['backed_up_files'] = len(self.snapshot.keys)
        if self.sync_plan is not None:
            data['new'] = len(self.sync_plan.new)
            data['modified'] = len(self.sync_plan.modified)
            data['unchanged'] = len(self.sync_plan.unchanged)
        if self.result is not None:
            data['uploaded'] = len(self.result.uploaded)
        return data
