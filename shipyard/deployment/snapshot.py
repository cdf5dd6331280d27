"""SnapshotStore — versioned backups of the live deployment and their restoration."""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from shipyard.deployment.config_manager import PipelineSettings
from shipyard.errors import BackupError, NoBackupAvailable, RestoreError
from shipyard.jsonfile import read_json, write_json
from shipyard.locking import LockTimeoutError, StateLock
from shipyard.models import Backup

logger = logging.getLogger(__name__)

_FILES_DIR = "files"
_RECORD_NAME = "backup.json"


def hash_file(path: str | Path) -> str:
    """Return the SHA-256 hex digest of the file at *path*."""
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        while True:
            chunk = f.read(65536)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_tree(root: str | Path, rel_paths: list[str]) -> str:
    """Return a SHA-256 digest covering every file under *rel_paths* in *root*.

    Files are sorted by relative path so the hash is deterministic. Missing
    entries contribute nothing.
    """
    base = Path(root)
    files: list[Path] = []
    for rel in rel_paths:
        p = base / rel
        if p.is_file():
            files.append(p)
        elif p.is_dir():
            files.extend(f for f in p.rglob("*") if f.is_file())

    h = hashlib.sha256()
    for f in sorted(files, key=lambda f: f.relative_to(base).as_posix()):
        rel = f.relative_to(base).as_posix()
        h.update(f"{rel}:{hash_file(f)}".encode("utf-8"))
    return h.hexdigest()


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _copy(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dst, symlinks=True)
    else:
        shutil.copy2(src, dst)


class SnapshotBackend(abc.ABC):
    """How snapshot contents are stored and brought back."""

    @abc.abstractmethod
    def capture(
        self, live_root: Path, rel_paths: list[str], dest: Path,
    ) -> tuple[list[str], list[str]]:
        """Copy *rel_paths* from *live_root* into *dest*.

        Returns ``(manifest, absent)``: the captured paths and the tracked
        paths that did not exist.
        """

    @abc.abstractmethod
    def restore(
        self, snapshot_dir: Path, live_root: Path, manifest: list[str], absent: list[str],
    ) -> None:
        """Make *live_root* match the snapshot for every tracked path."""

    @abc.abstractmethod
    def digest(self, snapshot_dir: Path, manifest: list[str]) -> str:
        """Return the content digest of the captured file set."""

    def delete(self, snapshot_dir: Path) -> None:
        """Remove a snapshot directory entirely."""
        if snapshot_dir.exists():
            shutil.rmtree(snapshot_dir)


class CopySnapshotBackend(SnapshotBackend):
    """Plain recursive file copies under ``<snapshot>/files``."""

    def capture(
        self, live_root: Path, rel_paths: list[str], dest: Path,
    ) -> tuple[list[str], list[str]]:
        files_dir = dest / _FILES_DIR
        files_dir.mkdir(parents=True, exist_ok=True)
        manifest: list[str] = []
        absent: list[str] = []
        for rel in rel_paths:
            src = live_root / rel
            if src.exists():
                _copy(src, files_dir / rel)
                manifest.append(rel)
            else:
                absent.append(rel)
        return manifest, absent

    def restore(
        self, snapshot_dir: Path, live_root: Path, manifest: list[str], absent: list[str],
    ) -> None:
        files_dir = snapshot_dir / _FILES_DIR
        for rel in manifest:
            src = files_dir / rel
            if not src.exists():
                raise FileNotFoundError(f"Snapshot is missing {rel}")
            dst = live_root / rel
            _remove(dst)
            _copy(src, dst)
        for rel in absent:
            _remove(live_root / rel)

    def digest(self, snapshot_dir: Path, manifest: list[str]) -> str:
        return hash_tree(snapshot_dir / _FILES_DIR, manifest)


class SnapshotStore:
    """Create, list, prune, and restore per-environment backups.

    The catalog (``backups.json``) is the only list of selectable backups;
    a backup directory only enters it after its copy completed. Catalog
    updates hold a lock file so separate processes never drop each
    other's entries.

    Parameters
    ----------
    settings:
        Resolved pipeline settings (state directory, tracked paths,
        environment live directories).
    backend:
        Storage strategy; defaults to :class:`CopySnapshotBackend`.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        backend: SnapshotBackend | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend or CopySnapshotBackend()
        self._backups_dir = settings.state_path / "backups"
        self._catalog_path = settings.state_path / "backups.json"
        self._file_lock = StateLock(settings.state_path / "backups.lock")
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, pipeline_run_id: str, environment: str) -> Backup:
        """Snapshot the live files of *environment* before they are mutated."""
        live = self.settings.live_path(environment)
        backup = Backup(
            pipeline_run_id=pipeline_run_id,
            environment=environment,
            applied_version=_read_version(live),
        )
        final_dir = self._backup_dir(backup)
        partial_dir = final_dir.with_name(f"{backup.id}.partial")

        try:
            manifest, absent = self.backend.capture(
                live, self.settings.tracked_paths, partial_dir,
            )
            backup = backup.model_copy(update={
                "manifest": manifest,
                "absent": absent,
                "digest": self.backend.digest(partial_dir, manifest),
            })
            (partial_dir / _RECORD_NAME).write_text(
                backup.model_dump_json(indent=2), encoding="utf-8",
            )
            partial_dir.rename(final_dir)
        except (OSError, shutil.Error) as exc:
            self._discard(partial_dir)
            raise BackupError(f"Backup of {environment} failed: {exc}") from exc

        try:
            with self._catalog() as catalog:
                catalog.append(backup)
                self._save_catalog(catalog)
        except (OSError, LockTimeoutError) as exc:
            self._discard(final_dir)
            raise BackupError(f"Could not record backup {backup.id}: {exc}") from exc

        logger.info(
            "Created backup %s for %s (%d paths)",
            backup.id, environment, len(backup.manifest),
        )
        return backup

    def list_backups(self, environment: str | None = None) -> list[Backup]:
        """Return catalogued backups, oldest first."""
        with self._lock:
            catalog = self._load_catalog()
        if environment is not None:
            catalog = [b for b in catalog if b.environment == environment]
        return sorted(catalog, key=lambda b: b.created_at)

    def latest(self, environment: str) -> Backup | None:
        """Return the newest restorable backup for *environment*, if any."""
        candidates = [
            b for b in self.list_backups(environment)
            if (self._backup_dir(b) / _RECORD_NAME).is_file()
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda b: b.created_at)

    def restore_latest(self, environment: str) -> Backup:
        """Restore the newest backup of *environment* and return it."""
        backup = self.latest(environment)
        if backup is None:
            raise NoBackupAvailable(environment)
        self.restore(backup)
        return backup

    def restore(self, backup: Backup) -> None:
        """Bring the live files back to *backup*. Safe to repeat."""
        snapshot_dir = self._backup_dir(backup)
        if not snapshot_dir.is_dir():
            raise RestoreError(f"Backup directory missing for {backup.id}")

        live = self.settings.live_path(backup.environment)
        live.mkdir(parents=True, exist_ok=True)
        try:
            self.backend.restore(snapshot_dir, live, backup.manifest, backup.absent)
        except (OSError, shutil.Error) as exc:
            raise RestoreError(f"Restore of {backup.id} failed: {exc}") from exc

        logger.info("Restored %s from backup %s", backup.environment, backup.id)

    def live_digest(self, environment: str, backup: Backup) -> str:
        """Digest of the live files covered by *backup*'s manifest."""
        return hash_tree(self.settings.live_path(environment), backup.manifest)

    def verify(self, backup: Backup) -> bool:
        """Return True if the live files match *backup* exactly."""
        live = self.settings.live_path(backup.environment)
        if any((live / rel).exists() for rel in backup.absent):
            return False
        return self.live_digest(backup.environment, backup) == backup.digest

    def prune(self, environment: str, keep: int | None = None) -> list[Backup]:
        """Delete backups of *environment* beyond the *keep* most recent.

        Returns the removed backups. A catalog entry is only dropped once
        its directory is gone.
        """
        keep = self.settings.max_backups if keep is None else keep
        if keep < 0:
            raise ValueError("keep must be >= 0")

        removed: list[Backup] = []
        with self._catalog() as catalog:
            ordered = sorted(
                (b for b in catalog if b.environment == environment),
                key=lambda b: b.created_at,
                reverse=True,
            )
            for backup in ordered[keep:]:
                try:
                    self.backend.delete(self._backup_dir(backup))
                except OSError as exc:
                    logger.warning("Could not delete backup %s: %s", backup.id, exc)
                    continue
                catalog = [b for b in catalog if b.id != backup.id]
                removed.append(backup)
            if removed:
                self._save_catalog(catalog)

        if removed:
            logger.info("Pruned %d old backups for %s", len(removed), environment)
        return removed

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _backup_dir(self, backup: Backup) -> Path:
        return self._backups_dir / backup.environment / backup.id

    def _discard(self, path: Path) -> None:
        try:
            self.backend.delete(path)
        except OSError:
            logger.error("Could not remove partial backup %s", path, exc_info=True)

    def _load_catalog(self) -> list[Backup]:
        data = read_json(self._catalog_path, default=[])
        return [Backup.model_validate(item) for item in data]

    def _save_catalog(self, catalog: list[Backup]) -> None:
        write_json(self._catalog_path, [b.model_dump(mode="json") for b in catalog])

    @contextmanager
    def _catalog(self) -> Iterator[list[Backup]]:
        """Hold the thread and file locks and yield the freshly loaded catalog."""
        with self._lock, self._file_lock:
            yield self._load_catalog()


def _read_version(live: Path) -> str:
    """Best-effort version of what is currently live."""
    version_file = live / "VERSION"
    if version_file.is_file():
        return version_file.read_text(encoding="utf-8").strip()
    package_json = live / "package.json"
    if package_json.is_file():
        try:
            return str(json.loads(package_json.read_text(encoding="utf-8")).get("version", ""))
        except (json.JSONDecodeError, OSError):
            return ""
    return ""
