"""SharePoint remote tree client.

Exposes the capability set the mirror engine consumes: list child folders,
list files, fetch a file into a local directory, and list the navigation
tree. Requests go through the SharePoint REST API with a bearer token; token
acquisition happens elsewhere.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp

# Library views folder present in every document library.
HIDDEN_FOLDERS = {"Forms"}
RETRY_STATUSES = {429, 500, 502, 503, 504}
CHUNK_SIZE = 64 * 1024


class MirrorError(Exception):
    """Base class for mirror failures."""

    def __init__(self, remote_path: str, message: str) -> None:
        super().__init__(f"{remote_path}: {message}")
        self.remote_path = remote_path
        self.message = message


class AccessError(MirrorError):
    """Root folder is missing or not readable with the supplied token."""


class EnumerationError(MirrorError):
    """Listing the folders or files of a remote folder failed."""


class FetchError(MirrorError):
    """Downloading a single remote file failed."""


class WriteError(MirrorError):
    """Creating a local directory or writing a local file failed."""


@dataclass(slots=True, frozen=True)
class FolderNode:
    name: str
    path: str


@dataclass(slots=True, frozen=True)
class FileLeaf:
    name: str
    path: str
    size: int | None = None


class RemoteTreeClient(Protocol):
    async def check_access(self, path: str) -> None: ...

    async def list_child_folders(self, path: str) -> list[FolderNode]: ...

    async def list_files(self, path: str) -> list[FileLeaf]: ...

    async def fetch_file(self, path: str, dest_dir: Path, filename: str) -> int: ...

    async def list_navigation_tree(self) -> str: ...


class RequestScheduler:
    """Ensure a minimum delay between request starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so requests are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


def normalize_remote_path(path: str) -> str:
    """Return path with a single leading slash and no trailing slash."""
    path = "/" + path.strip().strip("/")
    return path


def _quote_path(path: str) -> str:
    # OData string literals escape single quotes by doubling them.
    return quote(path.replace("'", "''"), safe="/")


class SharePointClient:
    """REST client for one SharePoint site, bound to a caller-owned session."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        site_url: str,
        access_token: str,
        scheduler: RequestScheduler | None = None,
        max_retries: int = 4,
        timeout_sec: float = 60,
        backoff_sec: float = 0.5,
    ) -> None:
        self.session = session
        self.site_url = site_url.rstrip("/")
        self.scheduler = scheduler or RequestScheduler(0.0)
        self.max_retries = max(0, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        # File bodies may take arbitrarily long; only a stalled transfer times out.
        self.download_timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout_sec, sock_read=timeout_sec)
        self.backoff_sec = backoff_sec
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json;odata=nometadata",
        }

    def folder_url(self, path: str) -> str:
        return f"{self.site_url}/_api/web/GetFolderByServerRelativePath(decodedurl='{_quote_path(path)}')"

    def file_url(self, path: str) -> str:
        return f"{self.site_url}/_api/web/GetFileByServerRelativePath(decodedurl='{_quote_path(path)}')"

    async def request_bytes(self, url: str) -> tuple[int, bytes | None, str]:
        """GET url with retry/backoff. Return (status, body_or_none, error_text)."""
        error = ""
        for attempt in range(self.max_retries + 1):
            try:
                await self.scheduler.wait_turn()
                async with self.session.get(url, headers=self._headers, timeout=self.timeout) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        return status, await resp.read(), ""
                    error = f"HTTP {status}"
                    if status not in RETRY_STATUSES or attempt == self.max_retries:
                        return status, None, error
                    logging.debug("HTTP %s for %s, retrying", status, url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                error = str(exc) or type(exc).__name__
                if attempt == self.max_retries:
                    logging.debug("Request failed after retries: %s (%s)", url, error)
                    return -1, None, error
            await asyncio.sleep((2**attempt) * self.backoff_sec)
        return -1, None, error

    async def _get_json(self, url: str, path: str, error_cls: type[MirrorError]) -> Any:
        status, body, error = await self.request_bytes(url)
        if body is None:
            raise error_cls(path, error or f"HTTP {status}")
        try:
            return json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise error_cls(path, f"invalid JSON response: {exc}") from exc

    async def check_access(self, path: str) -> None:
        """Probe the root folder; raise AccessError when it cannot be read."""
        url = f"{self.folder_url(path)}?$select=Exists"
        obj = await self._get_json(url, path, AccessError)
        if not isinstance(obj, dict) or not obj.get("Exists", False):
            raise AccessError(path, "folder does not exist")

    async def list_child_folders(self, path: str) -> list[FolderNode]:
        url = f"{self.folder_url(path)}/Folders?$select=Name,ServerRelativeUrl"
        obj = await self._get_json(url, path, EnumerationError)
        folders: list[FolderNode] = []
        for item in _values(obj):
            name = item.get("Name")
            if not isinstance(name, str) or not name or name in HIDDEN_FOLDERS:
                continue
            child = item.get("ServerRelativeUrl") or f"{path}/{name}"
            folders.append(FolderNode(name=name, path=normalize_remote_path(child)))
        return folders

    async def list_files(self, path: str) -> list[FileLeaf]:
        url = f"{self.folder_url(path)}/Files?$select=Name,ServerRelativeUrl,Length"
        obj = await self._get_json(url, path, EnumerationError)
        files: list[FileLeaf] = []
        for item in _values(obj):
            name = item.get("Name")
            if not isinstance(name, str) or not name:
                continue
            size = item.get("Length")
            try:
                size = int(size) if size is not None else None
            except (TypeError, ValueError):
                size = None
            child = item.get("ServerRelativeUrl") or f"{path}/{name}"
            files.append(FileLeaf(name=name, path=normalize_remote_path(child), size=size))
        return files

    async def fetch_file(self, path: str, dest_dir: Path, filename: str) -> int:
        """Stream path into dest_dir/filename, truncating any existing file."""
        url = f"{self.file_url(path)}/$value"
        out_path = Path(dest_dir) / filename
        error = ""
        for attempt in range(self.max_retries + 1):
            try:
                await self.scheduler.wait_turn()
                async with self.session.get(url, headers=self._headers, timeout=self.download_timeout) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        return await self._stream_to(resp, path, out_path)
                    error = f"HTTP {status}"
                    if status not in RETRY_STATUSES or attempt == self.max_retries:
                        raise FetchError(path, error)
                    logging.debug("HTTP %s for %s, retrying", status, url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                error = str(exc) or type(exc).__name__
                if attempt == self.max_retries:
                    raise FetchError(path, error) from exc
            await asyncio.sleep((2**attempt) * self.backoff_sec)
        raise FetchError(path, error)

    async def _stream_to(self, resp: aiohttp.ClientResponse, path: str, out_path: Path) -> int:
        size = 0
        try:
            with out_path.open("wb") as fh:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    fh.write(chunk)
                    size += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            # Timeouts and connection errors subclass OSError; the caller retries them.
            raise
        except OSError as exc:
            raise WriteError(path, f"cannot write {out_path}: {exc}") from exc
        return size

    async def list_navigation_tree(self) -> str:
        """Render the top navigation bar and quick launch as indented text."""
        lines: list[str] = []
        for section in ("TopNavigationBar", "QuickLaunch"):
            url = f"{self.site_url}/_api/web/Navigation/{section}?$expand=Children"
            obj = await self._get_json(url, self.site_url, EnumerationError)
            lines.append(f"[{section}]")
            lines.extend(render_navigation(_values(obj)))
        return "\n".join(lines) + "\n"


def _values(obj: Any) -> list[dict[str, Any]]:
    values = obj.get("value") if isinstance(obj, dict) else None
    if not isinstance(values, list):
        return []
    return [item for item in values if isinstance(item, dict)]


def render_navigation(nodes: list[dict[str, Any]], depth: int = 0) -> list[str]:
    """Flatten navigation nodes into `- Title (Url)` lines, two spaces per level."""
    out: list[str] = []
    for node in nodes:
        title = str(node.get("Title") or "").strip() or "(untitled)"
        url = str(node.get("Url") or "").strip()
        out.append(f"{'  ' * depth}- {title} ({url})")
        children = node.get("Children")
        if isinstance(children, dict):
            children = children.get("results") or children.get("value")
        if isinstance(children, list):
            out.extend(render_navigation([c for c in children if isinstance(c, dict)], depth + 1))
    return out
