"""Local filesystem search through the OS file index.

macOS uses Spotlight (``mdfind``); other platforms use ``locate``. Raw hits
are filtered down to things a user would plausibly be looking for, stat'ed,
scored and truncated.
"""

from __future__ import annotations

import asyncio
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Protocol

import aiofiles.os

from unisearch.core.errors import SearchError
from unisearch.core.logging import get_logger
from unisearch.schemas.search import ResultMetadata, SearchResult
from unisearch.services.scoring import (
    APP_EXTENSIONS,
    ARCHIVE_EXTENSIONS,
    DOCUMENT_EXTENSIONS,
    MEDIA_EXTENSIONS,
    OFFICE_EXTENSIONS,
    LocalPathScorer,
    ScoringCandidate,
    ScoringStrategy,
)
from unisearch.services.search_cache import SearchCache

logger = get_logger(__name__)

PROVIDER_NAME = "local"
MIN_CANDIDATES = 20
CANDIDATE_FACTOR = 3

SYSTEM_PREFIXES = (
    "/System", "/Library", "/private", "/usr", "/bin", "/sbin", "/opt",
    "/etc", "/var", "/dev", "/proc", "/sys", "/tmp", "/cores", "/Volumes",
)
EXCLUDED_DIRS = {
    # build artifacts and dependency trees
    "node_modules", "bower_components", "dist", "build", "target", "out",
    "__pycache__", ".venv", "venv", ".tox", ".gradle", "Pods", "DerivedData",
    "site-packages", ".next", ".nuxt", ".cache",
    # VCS internals
    ".git", ".svn", ".hg", "CVS",
}
# Top-level folders of the home directory that only hold app data
EXCLUDED_HOME_DIRS = {"Library", "AppData"}
TEMP_PREFIXES = ("~$", ".~lock")
TEMP_SUFFIXES = (".tmp", ".temp", ".swp", ".swo", ".part", ".crdownload", "~")
CONFIG_EXTENSIONS = {
    ".json", ".yml", ".yaml", ".plist", ".lock", ".ini", ".toml", ".cfg", ".conf",
    ".xml", ".log", ".db", ".sqlite", ".pyc", ".o", ".class", ".map", ".properties",
}
ALLOWED_EXTENSIONS = (
    APP_EXTENSIONS | DOCUMENT_EXTENSIONS | OFFICE_EXTENSIONS | MEDIA_EXTENSIONS | ARCHIVE_EXTENSIONS
)
# Extensionless build and project files
DEVELOPER_FILES = {
    "Makefile", "GNUmakefile", "Dockerfile", "Containerfile", "Jenkinsfile", "Vagrantfile",
    "Gemfile", "Rakefile", "Procfile", "Brewfile", "Podfile", "LICENSE", "LICENCE", "COPYING",
    "NOTICE", "AUTHORS", "CONTRIBUTORS", "CODEOWNERS", "CHANGELOG", "MANIFEST", "VERSION",
}


# ========== Path filter ==========


def _under(path: PurePath, prefix: str) -> bool:
    return path == PurePath(prefix) or PurePath(prefix) in path.parents


def looks_user_authored(name: str) -> bool:
    """Extensionless names like ``README`` or ``Notes``."""
    if name in DEVELOPER_FILES:
        return False
    return name.isalpha() and (name[0].isupper() or name.isupper())


def is_excluded_path(path: str, root: Path) -> bool:
    """True if ``path`` is outside ``root`` or sits somewhere users never look."""
    p = PurePath(path)
    try:
        rel = p.relative_to(root)
    except ValueError:
        return True

    for prefix in SYSTEM_PREFIXES:
        if _under(p, prefix) and not _under(PurePath(root), prefix):
            return True

    parts = rel.parts
    if not parts:
        return True
    if parts[0] in EXCLUDED_HOME_DIRS:
        return True
    for segment in parts:
        if segment.startswith(".") or segment in EXCLUDED_DIRS:
            return True

    name = parts[-1]
    if name.startswith(TEMP_PREFIXES) or name.endswith(TEMP_SUFFIXES):
        return True
    if p.suffix.lower() in CONFIG_EXTENSIONS:
        return True
    return False


def is_allowed_file(name: str) -> bool:
    """Allow-list for regular files that passed the exclusion filter."""
    suffix = PurePath(name).suffix.lower()
    if suffix:
        return suffix in ALLOWED_EXTENSIONS
    return looks_user_authored(name)


# ========== OS search backends ==========


class LocalSearchBackend(Protocol):
    async def find(self, query: str, root: Path, limit: int) -> list[str]: ...


async def run_search_command(args: list[str], timeout: float) -> list[str]:
    """Run a search command and return its non-empty output lines."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SearchError(f"{args[0]} is not available") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise SearchError(f"{args[0]} timed out after {timeout:.1f}s") from e

    # locate exits 1 when nothing matched
    if proc.returncode not in (0, 1):
        raise SearchError(
            f"{args[0]} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return [line for line in stdout.decode(errors="replace").splitlines() if line.strip()]


class SpotlightBackend:
    """``mdfind -onlyin <root> -name <query>``."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def find(self, query: str, root: Path, limit: int) -> list[str]:
        lines = await run_search_command(
            ["mdfind", "-onlyin", str(root), "-name", query],
            self.timeout,
        )
        return lines[:limit]


class LocateBackend:
    """``locate -i -b -l <n> <query>``, filtered to ``root``."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def find(self, query: str, root: Path, limit: int) -> list[str]:
        # Over-fetch; hits outside root are discarded afterwards
        lines = await run_search_command(
            ["locate", "-i", "-b", "-l", str(limit * 4), query],
            self.timeout,
        )
        root_str = str(root).rstrip("/") + "/"
        return [line for line in lines if line.startswith(root_str)][:limit]


def default_backend(timeout: float = 5.0) -> LocalSearchBackend:
    if sys.platform == "darwin":
        return SpotlightBackend(timeout)
    return LocateBackend(timeout)


# ========== Provider ==========


class LocalSearchProvider:
    """Search provider for files under the user's home directory."""

    name = PROVIDER_NAME

    def __init__(
        self,
        root: Path,
        backend: LocalSearchBackend | None = None,
        scorer: ScoringStrategy | None = None,
        cache: SearchCache | None = None,
    ):
        self.root = Path(root)
        self._backend = backend or default_backend()
        self._scorer = scorer or LocalPathScorer()
        self._cache = cache

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        if not query.strip() or limit <= 0:
            return []

        if self._cache is not None:
            cached = self._cache.get(query, self.name, limit)
            if cached is not None:
                return cached

        wanted = max(limit * CANDIDATE_FACTOR, MIN_CANDIDATES)
        paths = await self._backend.find(query.strip(), self.root, wanted)
        survivors = [p for p in dict.fromkeys(paths) if not is_excluded_path(p, self.root)]

        stats = await asyncio.gather(*(self._stat(p) for p in survivors))
        results: list[SearchResult] = []
        for path, info in zip(survivors, stats):
            if info is None:
                continue
            is_folder, modified = info
            name = PurePath(path).name
            if not is_folder and not is_allowed_file(name):
                continue

            candidate = ScoringCandidate(
                name=name,
                path=path,
                is_folder=is_folder,
                modified=modified,
            )
            results.append(
                SearchResult(
                    id=path,
                    name=name,
                    path=path,
                    type="folder" if is_folder else "file",
                    source="local",
                    score=self._scorer.score(query, candidate),
                    metadata=ResultMetadata(modified_time=modified.isoformat()),
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)

        logger.debug(
            "local_search_completed",
            candidates=len(paths),
            kept=len(results),
        )
        if self._cache is not None:
            self._cache.set(query, self.name, results, depth=limit)
        return results[:limit]

    @staticmethod
    async def _stat(path: str) -> tuple[bool, datetime] | None:
        try:
            st = await aiofiles.os.stat(path)
        except OSError:
            return None
        return stat.S_ISDIR(st.st_mode), datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
