"""ReleaseInstaller — verifies and unpacks release artifacts."""

from __future__ import annotations

import hashlib
import json
import logging
import tarfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from shipyard.deployment.packager import MANIFEST_NAME

logger = logging.getLogger(__name__)


class InstallResult(BaseModel):
    """Result of unpacking an artifact."""

    success: bool = False
    version: str = ""
    installed_path: str = ""
    paths: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ReleaseInstaller:
    """Check artifact integrity and extract it into a staging directory."""

    def read_manifest(self, archive_path: str | Path) -> dict[str, Any] | None:
        """Return the embedded manifest, or None if the archive is unusable."""
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                mf = tar.extractfile(MANIFEST_NAME)
                if mf is None:
                    return None
                return json.loads(mf.read())
        except (KeyError, json.JSONDecodeError, tarfile.TarError, OSError):
            return None

    def verify_package(self, archive_path: str | Path) -> bool:
        """Validate the archive manifest hashes.

        Returns True if all file hashes match the manifest.
        """
        archive = Path(archive_path)
        if not archive.is_file():
            return False

        manifest = self.read_manifest(archive)
        if manifest is None:
            return False

        files_map: dict[str, str] = manifest.get("files", {})
        try:
            with tarfile.open(archive, "r:gz") as tar:
                for fname, expected_hash in files_map.items():
                    try:
                        member = tar.getmember(fname)
                    except KeyError:
                        logger.warning("Missing file in artifact: %s", fname)
                        return False

                    ef = tar.extractfile(member)
                    if ef is None:
                        return False

                    h = hashlib.sha256()
                    while True:
                        chunk = ef.read(65536)
                        if not chunk:
                            break
                        h.update(chunk)

                    if h.hexdigest() != expected_hash:
                        logger.warning("Hash mismatch for %s", fname)
                        return False
        except (tarfile.TarError, OSError) as exc:
            logger.error("Failed to verify artifact: %s", exc)
            return False

        return True

    def install(self, archive_path: str | Path, target_path: str | Path) -> InstallResult:
        """Verify and extract *archive_path* into *target_path*."""
        archive = Path(archive_path)
        target = Path(target_path)
        warnings: list[str] = []

        if not self.verify_package(archive):
            return InstallResult(success=False, warnings=["Artifact verification failed"])

        manifest = self.read_manifest(archive) or {}
        target.mkdir(parents=True, exist_ok=True)

        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = []
                for m in tar.getmembers():
                    if m.name == MANIFEST_NAME:
                        continue
                    if m.name.startswith("/") or ".." in Path(m.name).parts:
                        warnings.append(f"Skipped suspicious path: {m.name}")
                        continue
                    if not (m.isfile() or m.isdir()):
                        warnings.append(f"Skipped non-regular member: {m.name}")
                        continue
                    members.append(m)
                tar.extractall(target, members=members)
        except (tarfile.TarError, OSError) as exc:
            return InstallResult(success=False, warnings=[f"Extraction failed: {exc}"])

        return InstallResult(
            success=True,
            version=str(manifest.get("version", "")),
            installed_path=str(target),
            paths=list(manifest.get("paths", [])),
            warnings=warnings,
        )
