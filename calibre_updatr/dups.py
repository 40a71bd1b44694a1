"""Find byte-identical files in a Calibre library directory."""

from __future__ import annotations

import hashlib
import json
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from . import logging_manager as log_mgr

logger = log_mgr.get_logger().getChild("dups")

DEFAULT_EXTENSIONS: Tuple[str, ...] = (
    "epub",
    "pdf",
    "mobi",
    "azw",
    "azw3",
    "djvu",
    "fb2",
    "rtf",
    "txt",
    "doc",
    "docx",
    "cbz",
    "cbr",
)
SIDECAR_NAMES = frozenset({"metadata.opf", "cover.jpg", "cover.jpeg", "cover.png"})
CHUNK_SIZE = 1024 * 1024
OUTPUT_FORMATS = ("text", "json")


@dataclass(slots=True)
class ScanOptions:
    extensions: Sequence[str] = DEFAULT_EXTENSIONS
    follow_symlinks: bool = False
    min_size: int = 0
    include_sidecars: bool = False
    threads: int = 0


@dataclass(frozen=True, slots=True)
class HashedFile:
    path: Path
    size: int
    digest: str


@dataclass(slots=True)
class DuplicateGroup:
    size: int
    digest: str
    files: List[Path] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"bytes": self.size, "blake2b": self.digest, "files": [str(p) for p in self.files]}


def normalize_extensions(extensions: Optional[Iterable[str]]) -> Tuple[str, ...]:
    cleaned = {ext.strip().lstrip(".").lower() for ext in extensions or ()}
    cleaned.discard("")
    return tuple(sorted(cleaned)) or DEFAULT_EXTENSIONS


def _wanted(path: Path, options: ScanOptions, extensions: frozenset[str]) -> bool:
    if options.min_size > 0:
        try:
            if path.stat().st_size < options.min_size:
                return False
        except OSError:
            # Unreadable entries are reported when hashing.
            pass
    if options.include_sidecars and path.name in SIDECAR_NAMES:
        return True
    suffix = path.suffix.lower()
    return bool(suffix) and suffix[1:] in extensions


def _walk_error(exc: OSError) -> None:
    logger.warning("Walk error: %s", exc, extra={"event": "dups.walk_error"})


def collect_candidates(library: Path, options: ScanOptions) -> List[Path]:
    """Return the files under ``library`` worth hashing, sorted by path."""

    extensions = frozenset(normalize_extensions(options.extensions))
    seen_dirs: set[tuple[int, int]] = set()
    found: List[Path] = []
    for root, dirnames, filenames in os.walk(
        library, followlinks=options.follow_symlinks, onerror=_walk_error
    ):
        if options.follow_symlinks:
            try:
                stat = os.stat(root)
            except OSError as exc:
                _walk_error(exc)
                dirnames[:] = []
                continue
            key = (stat.st_dev, stat.st_ino)
            if key in seen_dirs:
                # Symlink cycle.
                dirnames[:] = []
                continue
            seen_dirs.add(key)
        for name in filenames:
            path = Path(root) / name
            if not options.follow_symlinks and path.is_symlink():
                continue
            if not path.is_file():
                continue
            if _wanted(path, options, extensions):
                found.append(path)
    found.sort()
    return found


def hash_file(path: Path, *, chunk_size: int = CHUNK_SIZE) -> HashedFile:
    size = path.stat().st_size
    hasher = hashlib.blake2b()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            hasher.update(chunk)
    return HashedFile(path=path, size=size, digest=hasher.hexdigest())


def _hash_all(paths: Sequence[Path], threads: int) -> Iterator[HashedFile]:
    workers = threads if threads > 0 else None
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(hash_file, path): path for path in paths}
        for future in as_completed(futures):
            try:
                yield future.result()
            except OSError as exc:
                logger.warning(
                    "Skipping %s: %s",
                    futures[future],
                    exc,
                    extra={"event": "dups.hash_error"},
                )


def find_duplicates(files: Iterable[HashedFile]) -> List[DuplicateGroup]:
    """Group by ``(size, digest)``; the largest groups, then the largest files, come first."""

    buckets: Dict[Tuple[int, str], List[Path]] = {}
    for item in files:
        buckets.setdefault((item.size, item.digest), []).append(item.path)
    groups = [
        DuplicateGroup(size=size, digest=digest, files=sorted(paths))
        for (size, digest), paths in buckets.items()
        if len(paths) >= 2
    ]
    groups.sort(key=lambda group: (-len(group.files), -group.size, group.digest))
    return groups


def scan_library(library: Path | str, options: Optional[ScanOptions] = None) -> List[DuplicateGroup]:
    options = options or ScanOptions()
    root = Path(library).expanduser()
    if not root.is_dir():
        raise NotADirectoryError(f"Library path is not a directory: {root}")

    started = time.perf_counter()
    logger.info(
        "Starting duplicate scan of %s",
        root,
        extra={
            "event": "dups.start",
            "follow_symlinks": options.follow_symlinks,
            "min_size": options.min_size,
            "include_sidecars": options.include_sidecars,
        },
    )
    candidates = collect_candidates(root, options)
    logger.info(
        "Collected %d candidate files",
        len(candidates),
        extra={"event": "dups.candidates", "count": len(candidates)},
    )
    groups = find_duplicates(_hash_all(candidates, options.threads))
    logger.info(
        "Found %d duplicate groups",
        len(groups),
        extra={
            "event": "dups.done",
            "count": len(groups),
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return groups


def render_text(groups: Sequence[DuplicateGroup]) -> str:
    if not groups:
        return "No duplicates found (by full-file BLAKE2b hash).\n"
    lines = [f"Duplicate groups: {len(groups)}", ""]
    for index, group in enumerate(groups, start=1):
        lines.append(
            f"== Group {index}: {len(group.files)} files | {group.size} bytes | "
            f"blake2b {group.digest} =="
        )
        lines.extend(f"  - {path}" for path in group.files)
        lines.append("")
    return "\n".join(lines) + "\n"


def render_json(groups: Sequence[DuplicateGroup]) -> str:
    return json.dumps([group.to_dict() for group in groups], indent=2) + "\n"


def render(groups: Sequence[DuplicateGroup], output: str = "text") -> str:
    if output not in OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format: {output!r}")
    return render_json(groups) if output == "json" else render_text(groups)


__all__ = [
    "DEFAULT_EXTENSIONS",
    "DuplicateGroup",
    "HashedFile",
    "OUTPUT_FORMATS",
    "SIDECAR_NAMES",
    "ScanOptions",
    "collect_candidates",
    "find_duplicates",
    "hash_file",
    "normalize_extensions",
    "render",
    "render_json",
    "render_text",
    "scan_library",
]
