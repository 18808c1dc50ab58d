"""
Artifact Store
==============
JSON artifacts under the output directory.

    <output_dir>/
        paths.json                  Initial + Deepen discovery
        metadata.json               per-page metadata, groupings, unique paths
        extract/<slug>.json         per-page extraction
        extract/_index.json         url -> file index for the Extract phase
        .cache.json                 phase fingerprints (CacheManager)
        performance-report.json     PerformanceMonitor report

Every write goes to a temp file in the same directory and is renamed into
place, so readers never observe a half-written file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import FileSystemError
from .utils import slugify

logger = logging.getLogger(__name__)

PATHS_FILE = "paths.json"
METADATA_FILE = "metadata.json"
EXTRACT_DIR = "extract"
# leading underscore keeps it out of the slug namespace
EXTRACT_INDEX = "_index.json"
CACHE_FILE = ".cache.json"
REPORT_FILE = "performance-report.json"


def write_json_atomic(path: Union[str, Path], data: Any) -> Path:
    """Serialize ``data`` and atomically replace ``path`` with it."""
    path = Path(path)
    try:
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as e:
        raise FileSystemError(f"Cannot serialize {path.name}: {e}", context={"path": str(path)}) from e

    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent,
            prefix=f".{path.name}.", suffix=".tmp", delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise FileSystemError(f"Could not write {path}: {e}", context={"path": str(path)}) from e
    finally:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
    return path


def read_json(path: Union[str, Path]) -> Any:
    path = Path(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise FileSystemError(f"Missing artifact: {path}", context={"path": str(path)}) from e
    except json.JSONDecodeError as e:
        raise FileSystemError(f"Corrupt artifact {path}: {e}", context={"path": str(path)}) from e
    except OSError as e:
        raise FileSystemError(f"Could not read {path}: {e}", context={"path": str(path)}) from e


class ArtifactStore:
    """Async facade over the output directory; file I/O runs in a worker thread."""

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)

    @property
    def paths_file(self) -> Path:
        return self.output_dir / PATHS_FILE

    @property
    def metadata_file(self) -> Path:
        return self.output_dir / METADATA_FILE

    @property
    def extract_dir(self) -> Path:
        return self.output_dir / EXTRACT_DIR

    @property
    def cache_file(self) -> Path:
        return self.output_dir / CACHE_FILE

    @property
    def report_file(self) -> Path:
        return self.output_dir / REPORT_FILE

    def exists(self, ref: Optional[str]) -> bool:
        return bool(ref) and (self.output_dir / ref).exists()

    def relative(self, path: Path) -> str:
        return str(Path(path).relative_to(self.output_dir))

    async def write_json(self, path: Union[str, Path], data: Any) -> Path:
        return await asyncio.to_thread(write_json_atomic, path, data)

    async def read_json(self, path: Union[str, Path]) -> Any:
        return await asyncio.to_thread(read_json, path)

    # ------------------------------------------------------------------
    # Phase inputs / outputs
    # ------------------------------------------------------------------

    async def save_paths(self, doc: Dict[str, Any]) -> Path:
        return await self.write_json(self.paths_file, doc)

    async def load_paths(self) -> Dict[str, Any]:
        if not self.paths_file.exists():
            raise FileSystemError(
                f"No paths file at {self.paths_file}",
                context={"path": str(self.paths_file)},
                hint="Run the initial phase first (tokencrawler initial --url ...).",
            )
        return await self.read_json(self.paths_file)

    async def save_metadata(self, doc: Dict[str, Any]) -> Path:
        return await self.write_json(self.metadata_file, doc)

    async def load_metadata(self) -> Dict[str, Any]:
        if not self.metadata_file.exists():
            raise FileSystemError(
                f"No metadata file at {self.metadata_file}",
                context={"path": str(self.metadata_file)},
                hint="Run the metadata phase first (tokencrawler metadata).",
            )
        return await self.read_json(self.metadata_file)

    async def save_extract(self, url: str, data: Any) -> str:
        """Write one page's extraction; returns the path relative to output_dir."""
        path = self.extract_dir / f"{slugify(url)}.json"
        await self.write_json(path, data)
        return self.relative(path)

    async def save_extract_index(self, entries: List[Dict[str, Any]]) -> Path:
        return await self.write_json(self.extract_dir / EXTRACT_INDEX, {
            'total_pages': len(entries),
            'pages': entries,
        })

    async def missing_extract_files(self) -> List[str]:
        """Page files listed in the Extract index that are gone from disk."""
        index = await self.read_json(self.extract_dir / EXTRACT_INDEX)
        return [entry.get("file") or "" for entry in index.get("pages", [])
                if not self.exists(entry.get("file"))]
