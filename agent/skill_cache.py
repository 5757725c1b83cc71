"""Skill content cache.

A skill is a markdown instruction document injected into the system prompt.
Skills are referenced by source:

  - a local directory or file path
  - ``github:owner/repo[/path][@ref]`` (fetched through the GitHub contents API)
  - an ``http(s)://`` URL of a single file

Lookup order for ``SkillCache.load``: in-memory entry, then the on-disk copy
under ``<cache_dir>/<cache_key>/``, then a fresh fetch. Remote fetches persist
every fetched file plus a manifest; the manifest is written last so a partial
download is never mistaken for a cache hit. Local sources are already on disk
and are read directly, only the in-memory layer applies to them.

Content file resolution inside a skill: the ref's designated ``file``, then
``SKILL.md``, then ``README.md``, then the first ``.md`` file by name.
"""

import base64
import hashlib
import json
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import requests

from forge_constants import FORGE_SKILLS_CACHE_DIR, GITHUB_API_URL

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 20
MAX_SKILL_FILE_BYTES = 1024 * 1024
MAX_FILES_PER_SKILL = 50
MANIFEST_NAME = "_manifest.json"
CONTENT_FALLBACKS = ("SKILL.md", "README.md")


class SkillLoadError(Exception):
    """Raised when a skill cannot be fetched or has no usable content."""


@dataclass
class SkillRef:
    name: str
    source: str
    version: Optional[str] = None
    file: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SkillRef":
        if not isinstance(data, dict):
            raise ValueError(f"skill entry must be a mapping, got {type(data).__name__}")
        source = data.get("source") or data.get("path") or data.get("url")
        if not source:
            raise ValueError(f"skill '{data.get('name', '?')}' has no source")
        return cls(
            name=str(data.get("name") or Path(str(source)).stem),
            source=str(source),
            version=str(data["version"]) if data.get("version") else None,
            file=str(data["file"]) if data.get("file") else None,
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class SkillContent:
    name: str
    content: str
    source: str
    loaded_at: float
    cache_key: str


def cache_key_for(source: str, version: Optional[str] = None) -> str:
    """Stable 16-hex-char key for a source/version pair."""
    raw = f"{source}@{version or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def is_remote(source: str) -> bool:
    return source.startswith(("github:", "http://", "https://"))


def pick_content(files: Dict[str, str], designated: Optional[str] = None) -> str:
    """Choose the skill's content file from a name -> text mapping."""
    candidates: List[str] = []
    if designated:
        candidates.append(designated)
    candidates.extend(CONTENT_FALLBACKS)
    candidates.extend(sorted(n for n in files if n.lower().endswith(".md")))
    for name in candidates:
        text = (files.get(name) or "").strip()
        if text:
            return text
    return ""


def parse_github_source(source: str, version: Optional[str] = None):
    """Split ``github:owner/repo[/path][@ref]`` into (owner, repo, path, ref)."""
    spec = source[len("github:"):]
    ref = None
    if "@" in spec:
        spec, ref = spec.rsplit("@", 1)
    parts = [p for p in spec.split("/") if p]
    if len(parts) < 2:
        raise SkillLoadError(f"invalid GitHub skill source: {source}")
    owner, repo = parts[0], parts[1]
    path = "/".join(parts[2:])
    return owner, repo, path, version or ref


class SkillCache:
    """Two-level (memory + disk) cache of skill contents.

    Thread-safe; one instance may be shared by every session in the process.
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        github_token: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else FORGE_SKILLS_CACHE_DIR
        self._session = session or requests.Session()
        self._github_token = github_token or os.getenv("GITHUB_TOKEN")
        self._timeout = timeout
        self._memory: Dict[str, SkillContent] = {}
        self._lock = threading.Lock()

    def load(self, ref: SkillRef, refresh: bool = False) -> SkillContent:
        """Return the content for *ref*, fetching only on a full cache miss.

        Raises SkillLoadError (or a requests/OS error) on failure.
        """
        key = cache_key_for(ref.source, ref.version)
        if refresh:
            self.invalidate(ref)
        else:
            with self._lock:
                cached = self._memory.get(key)
            if cached is not None:
                return cached

        files = None
        if is_remote(ref.source) and not refresh:
            files = self._read_disk(key)
            if files is not None:
                logger.debug("Skill '%s' served from disk cache %s", ref.name, key)

        if files is None:
            files = self._fetch(ref)
            if is_remote(ref.source):
                self._persist(key, ref, files)

        text = pick_content(files, ref.file)
        if not text:
            raise SkillLoadError(
                f"skill '{ref.name}' ({ref.source}) has no non-empty content file"
            )
        content = SkillContent(
            name=ref.name,
            content=text,
            source=ref.source,
            loaded_at=time.time(),
            cache_key=key,
        )
        with self._lock:
            self._memory[key] = content
        return content

    def load_all(self, refs: Sequence[SkillRef]) -> List[SkillContent]:
        """Load every enabled ref; failures are logged and skipped."""
        loaded = []
        for ref in refs:
            if not ref.enabled:
                continue
            try:
                loaded.append(self.load(ref))
            except Exception as e:
                logger.warning("Failed to load skill '%s' from %s: %s", ref.name, ref.source, e)
        return loaded

    def invalidate(self, ref: SkillRef) -> None:
        key = cache_key_for(ref.source, ref.version)
        with self._lock:
            self._memory.pop(key, None)
        target = self.cache_dir / key
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)

    def refresh(self, ref: SkillRef) -> SkillContent:
        return self.load(ref, refresh=True)

    # ------------------------------------------------------------------
    # Disk layer
    # ------------------------------------------------------------------

    def _read_disk(self, key: str) -> Optional[Dict[str, str]]:
        entry = self.cache_dir / key
        manifest_path = entry / MANIFEST_NAME
        if not manifest_path.exists():
            return None
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            return {
                name: (entry / name).read_text(encoding="utf-8")
                for name in manifest.get("files", [])
            }
        except (OSError, ValueError) as e:
            logger.warning("Discarding unreadable skill cache entry %s: %s", key, e)
            shutil.rmtree(entry, ignore_errors=True)
            return None

    def _persist(self, key: str, ref: SkillRef, files: Dict[str, str]) -> None:
        entry = self.cache_dir / key
        try:
            entry.mkdir(parents=True, exist_ok=True)
            for name, text in files.items():
                (entry / name).write_text(text, encoding="utf-8")
            manifest = {
                "name": ref.name,
                "source": ref.source,
                "version": ref.version,
                "files": sorted(files),
                "fetched_at": time.time(),
            }
            (entry / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        except OSError as e:
            # Content is still usable from memory for this process
            logger.warning("Could not persist skill '%s' to %s: %s", ref.name, entry, e)

    # ------------------------------------------------------------------
    # Fetchers
    # ------------------------------------------------------------------

    def _fetch(self, ref: SkillRef) -> Dict[str, str]:
        if ref.source.startswith("github:"):
            return self._fetch_github(ref)
        if ref.source.startswith(("http://", "https://")):
            return self._fetch_http(ref.source)
        return self._fetch_local(ref.source)

    def _fetch_local(self, source: str) -> Dict[str, str]:
        path = Path(os.path.expanduser(source))
        if path.is_file():
            return {path.name: path.read_text(encoding="utf-8")}
        if not path.is_dir():
            raise SkillLoadError(f"skill path does not exist: {source}")
        files = {}
        for child in sorted(path.iterdir()):
            if child.is_file() and child.suffix.lower() in (".md", ".txt"):
                files[child.name] = child.read_text(encoding="utf-8")
        return files

    def _fetch_http(self, url: str) -> Dict[str, str]:
        response = self._session.get(url, timeout=self._timeout)
        response.raise_for_status()
        name = os.path.basename(urlparse(url).path) or "SKILL.md"
        return {name: response.text}

    def _github_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"
        return headers

    def _fetch_github(self, ref: SkillRef) -> Dict[str, str]:
        owner, repo, path, git_ref = parse_github_source(ref.source, ref.version)
        url = f"{GITHUB_API_URL}/repos/{owner}/{repo}/contents/{path}".rstrip("/")
        params = {"ref": git_ref} if git_ref else None
        response = self._session.get(
            url, headers=self._github_headers(), params=params, timeout=self._timeout
        )
        if response.status_code == 404:
            raise SkillLoadError(f"GitHub path not found: {owner}/{repo}/{path}")
        response.raise_for_status()
        listing = response.json()

        if isinstance(listing, dict):
            return {listing.get("name", "SKILL.md"): self._decode_github_file(listing)}

        files: Dict[str, str] = {}
        for item in listing:
            if item.get("type") != "file":
                continue
            if item.get("size", 0) > MAX_SKILL_FILE_BYTES:
                logger.debug("Skipping oversized skill file %s", item.get("path"))
                continue
            if len(files) >= MAX_FILES_PER_SKILL:
                logger.warning("Skill '%s' has more than %d files, truncating", ref.name, MAX_FILES_PER_SKILL)
                break
            file_resp = self._session.get(
                item["url"], headers=self._github_headers(), timeout=self._timeout
            )
            file_resp.raise_for_status()
            files[item["name"]] = self._decode_github_file(file_resp.json())
        return files

    @staticmethod
    def _decode_github_file(payload: Dict[str, Any]) -> str:
        raw = payload.get("content") or ""
        if payload.get("encoding") == "base64":
            return base64.b64decode(raw).decode("utf-8", errors="replace")
        return raw
