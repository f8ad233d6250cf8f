"""Shared fixtures: an in-memory remote tree client."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from spclient import AccessError, EnumerationError, FetchError, FileLeaf, FolderNode, WriteError

DEMO_TREE: dict[str, Any] = {
    "A": {"x.txt": b"x contents"},
    "root.txt": b"root contents",
}

DEEP_TREE: dict[str, Any] = {
    "Docs": {
        "a.txt": b"a",
        "Sub": {
            "b.txt": b"bb",
            "Deeper": {"c.txt": b"ccc"},
        },
    },
    "Media": {
        "img.png": b"\x89PNG\r\n",
        "empty": {},
    },
    "top.txt": b"top",
}

NAVIGATION = "[TopNavigationBar]\n- Home (/sites/demo)\n[QuickLaunch]\n- Documents (/sites/demo/Shared Documents)\n"


class FakeTreeClient:
    """Remote tree built from a nested dict: dict values are folders, bytes are files."""

    def __init__(self, tree: dict[str, Any], root: str = "/sites/demo", navigation: str = NAVIGATION, delay: float = 0.0) -> None:
        self.root = root
        self.navigation = navigation
        self.delay = delay
        self.folders: dict[str, list[FolderNode]] = {}
        self.files: dict[str, list[FileLeaf]] = {}
        self.contents: dict[str, bytes] = {}
        self.denied: set[str] = set()
        self.fail_folders: set[str] = set()
        self.fail_files: set[str] = set()
        self.fail_fetch: set[str] = set()
        self.fail_navigation = False
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._load(root, tree)

    def _load(self, path: str, tree: dict[str, Any]) -> None:
        self.folders[path] = []
        self.files[path] = []
        for name, value in tree.items():
            child = f"{path}/{name}"
            if isinstance(value, dict):
                self.folders[path].append(FolderNode(name=name, path=child))
                self._load(child, value)
            else:
                self.files[path].append(FileLeaf(name=name, path=child, size=len(value)))
                self.contents[child] = value

    async def _call(self, op: str, path: str) -> None:
        self.calls.append((op, path))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def check_access(self, path: str) -> None:
        await self._call("check_access", path)
        if path in self.denied or path not in self.folders:
            raise AccessError(path, "HTTP 403")

    async def list_child_folders(self, path: str) -> list[FolderNode]:
        await self._call("list_child_folders", path)
        if path in self.fail_folders:
            raise EnumerationError(path, "HTTP 500")
        return list(self.folders[path])

    async def list_files(self, path: str) -> list[FileLeaf]:
        await self._call("list_files", path)
        if path in self.fail_files:
            raise EnumerationError(path, "HTTP 500")
        return list(self.files[path])

    async def fetch_file(self, path: str, dest_dir: Path, filename: str) -> int:
        await self._call("fetch_file", path)
        if path in self.fail_fetch:
            raise FetchError(path, "HTTP 503")
        body = self.contents[path]
        try:
            (Path(dest_dir) / filename).write_bytes(body)
        except OSError as exc:
            raise WriteError(path, str(exc)) from exc
        return len(body)

    async def list_navigation_tree(self) -> str:
        await self._call("list_navigation_tree", self.root)
        if self.fail_navigation:
            raise EnumerationError(self.root, "HTTP 500")
        return self.navigation


def snapshot(root: Path) -> dict[str, bytes | None]:
    """Map every path under root to its bytes (None for directories)."""
    out: dict[str, bytes | None] = {}
    if not root.exists():
        return out
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        out[rel] = path.read_bytes() if path.is_file() else None
    return out


@pytest.fixture
def demo_client() -> FakeTreeClient:
    return FakeTreeClient(DEMO_TREE)


@pytest.fixture
def deep_client() -> FakeTreeClient:
    return FakeTreeClient(DEEP_TREE)
