"""ReleasePackager — bundles the deployable paths of a release into an artifact."""

from __future__ import annotations

import io
import json
import logging
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shipyard.deployment.snapshot import hash_file

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package_manifest.json"

_EXCLUDE_DIRS = {".git", "__pycache__", ".pytest_cache", "node_modules", ".shipyard"}
_EXCLUDE_FILES = {".env"}
_EXCLUDE_EXTENSIONS = {".pyc", ".pyo"}


class ReleasePackager:
    """Bundle a release workspace into a ``.tar.gz`` with a hash manifest."""

    def package(
        self,
        source_path: str | Path,
        deploy_paths: list[str],
        output_path: str | Path,
        *,
        version: str = "",
    ) -> Path:
        """Create the artifact and return its path.

        Parameters
        ----------
        source_path:
            Root of the release workspace.
        deploy_paths:
            Relative files or directories to include.
        output_path:
            Where to write the archive.
        version:
            Release identifier recorded in the manifest.
        """
        root = Path(source_path).resolve()
        out = Path(output_path).resolve()
        out.parent.mkdir(parents=True, exist_ok=True)

        if not out.name.endswith(".tar.gz"):
            out = out.with_suffix(".tar.gz")

        manifest: dict[str, Any] = {
            "package_timestamp": datetime.now(timezone.utc).isoformat(),
            "source_root": str(root),
            "version": version,
            "paths": [],
            "files": {},
        }

        with tarfile.open(out, "w:gz") as tar:
            for rel_path in deploy_paths:
                top = root / rel_path
                if not top.exists():
                    logger.debug("Deploy path %s not present, skipping", rel_path)
                    continue
                manifest["paths"].append(rel_path)
                candidates = [top] if top.is_file() else sorted(top.rglob("*"))
                for fpath in candidates:
                    if not fpath.is_file():
                        continue
                    rel = fpath.relative_to(root)
                    if any(d in _EXCLUDE_DIRS for d in rel.parts):
                        continue
                    if fpath.name in _EXCLUDE_FILES or fpath.suffix in _EXCLUDE_EXTENSIONS:
                        continue

                    arcname = rel.as_posix()
                    tar.add(fpath, arcname=arcname)
                    manifest["files"][arcname] = hash_file(fpath)

            manifest_json = json.dumps(manifest, indent=2).encode("utf-8")
            info = tarfile.TarInfo(name=MANIFEST_NAME)
            info.size = len(manifest_json)
            tar.addfile(info, io.BytesIO(manifest_json))

        logger.info("Release artifact created: %s (%d files)", out, len(manifest["files"]))
        return out
