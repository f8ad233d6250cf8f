#!/usr/bin/env python3
"""Mirror a SharePoint site's document tree into a local directory.

Steps:
A) Probe the root folder for read access (fatal on failure).
B) Export the site navigation tree to <export_root>/sites/<site>_navigation.txt.
C) Walk the folder tree depth-first, creating directories and downloading files.
D) Optionally write a manifest of the mirrored files, then log a summary.

Dry-run mode performs every enumeration but never touches the filesystem and
never downloads file contents.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import enum
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp
import yaml

from spclient import (
    AccessError,
    EnumerationError,
    FetchError,
    FolderNode,
    MirrorError,
    RemoteTreeClient,
    RequestScheduler,
    SharePointClient,
    WriteError,
    normalize_remote_path,
)

TOKEN_ENV = "SPMIRROR_ACCESS_TOKEN"
SITEMAP_SUFFIX = "_navigation.txt"
MANIFEST_SUFFIX = "_manifest.json"

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_NO_ACCESS = 2


class RunMode(enum.Enum):
    LIVE = "live"
    DRY_RUN = "dry-run"


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    tenant_url: str
    site: str
    root_path: str = ""
    export_root: str = "export"
    dry_run: bool = False
    concurrency: int = 1
    delay_sec: float = 0.0
    max_retries: int = 4
    timeout_sec: int = 60
    access_token: str = field(default="", repr=False)
    write_manifest: bool = False

    @property
    def mode(self) -> RunMode:
        return RunMode.DRY_RUN if self.dry_run else RunMode.LIVE

    @property
    def site_url(self) -> str:
        return f"{self.tenant_url.rstrip('/')}/sites/{self.site}"

    @property
    def root(self) -> str:
        return normalize_remote_path(self.root_path or f"/sites/{self.site}")


@dataclass(slots=True)
class Failure:
    kind: str
    remote_path: str
    message: str


FAILURE_KINDS: dict[type[MirrorError], str] = {
    AccessError: "access",
    EnumerationError: "enumeration",
    FetchError: "fetch",
    WriteError: "write",
}


@dataclass(slots=True)
class MirrorResult:
    """Counters and recorded failures of one mirror run."""

    folders: int = 0
    files: int = 0
    bytes: int = 0
    written: list[Path] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record(self, exc: MirrorError) -> None:
        kind = FAILURE_KINDS.get(type(exc), "error")
        logging.warning("%s failure: %s", kind.capitalize(), exc)
        self.failures.append(Failure(kind, exc.remote_path, exc.message))


def to_local_path(remote_path: str, export_root: str | Path) -> Path:
    """Map an absolute remote path onto the export root.

    `/sites/demo/A/x.txt` under `/export` becomes `/export/sites/demo/A/x.txt`.
    Every remote segment becomes exactly one local segment, so distinct remote
    paths never collide.
    """
    segments = remote_path.strip("/").split("/")
    for segment in segments:
        if segment in ("", ".", ".."):
            raise ValueError(f"malformed remote path: {remote_path!r}")
    return Path(export_root).joinpath(*segments)


def site_artifact_path(export_root: str | Path, site: str, suffix: str) -> Path:
    """Return <export_root>/sites/<site><suffix>."""
    return Path(export_root) / "sites" / f"{site}{suffix}"


class MirrorContext:
    """State shared by all folder visits of one mirror run."""

    def __init__(
        self,
        client: RemoteTreeClient,
        export_root: str | Path,
        mode: RunMode,
        keep_written: bool = False,
    ) -> None:
        self.client = client
        self.export_root = Path(export_root)
        self.mode = mode
        self.keep_written = keep_written
        self.result = MirrorResult()

    @property
    def dry_run(self) -> bool:
        return self.mode is RunMode.DRY_RUN

    def ensure_dir(self, remote_path: str) -> Path | None:
        """Create the local directory for remote_path. None means skip the subtree."""
        local = to_local_path(remote_path, self.export_root)
        if self.dry_run:
            logging.info("[dry-run] would create %s", local)
        else:
            try:
                local.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                self.result.record(WriteError(remote_path, f"cannot create {local}: {exc}"))
                return None
            logging.debug("Directory %s", local)
        self.result.folders += 1
        return local

    async def child_folders(self, remote_path: str) -> list[FolderNode]:
        try:
            return await self.client.list_child_folders(remote_path)
        except EnumerationError as exc:
            self.result.record(exc)
            return []

    async def mirror_files(self, remote_path: str, local: Path) -> None:
        try:
            files = await self.client.list_files(remote_path)
        except EnumerationError as exc:
            self.result.record(exc)
            return
        for leaf in files:
            target = local / leaf.name
            if self.dry_run:
                logging.info("[dry-run] would fetch %s -> %s", leaf.path, target)
                self.result.files += 1
                continue
            try:
                size = await self.client.fetch_file(leaf.path, local, leaf.name)
            except (FetchError, WriteError) as exc:
                self.result.record(exc)
                continue
            logging.debug("Fetched %s (%s bytes)", target, size)
            self.result.files += 1
            self.result.bytes += size
            if self.keep_written:
                self.result.written.append(target)


async def _mirror_sequential(ctx: MirrorContext, root: str) -> None:
    # ("folder", path) visits a folder; ("files", path) mirrors its files once
    # every child subtree pushed above it has been handled.
    stack: list[tuple[str, str, Path | None]] = [("folder", root, None)]
    while stack:
        kind, remote_path, local = stack.pop()
        if kind == "files":
            await ctx.mirror_files(remote_path, local)
            continue
        local = ctx.ensure_dir(remote_path)
        if local is None:
            continue
        children = await ctx.child_folders(remote_path)
        stack.append(("files", remote_path, local))
        stack.extend(("folder", child.path, None) for child in reversed(children))


async def _mirror_concurrent(ctx: MirrorContext, root: str, workers: int) -> None:
    queue: asyncio.Queue[str] = asyncio.Queue()
    queue.put_nowait(root)

    async def worker() -> None:
        while True:
            remote_path = await queue.get()
            try:
                local = ctx.ensure_dir(remote_path)
                if local is not None:
                    for child in await ctx.child_folders(remote_path):
                        queue.put_nowait(child.path)
                    await ctx.mirror_files(remote_path, local)
            finally:
                queue.task_done()

    tasks = [asyncio.create_task(worker()) for _ in range(workers)]
    joiner = asyncio.create_task(queue.join())
    try:
        done, _ = await asyncio.wait([joiner, *tasks], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task is not joiner:
                # A worker only returns by raising.
                task.result()
    finally:
        for task in (joiner, *tasks):
            task.cancel()
        await asyncio.gather(joiner, *tasks, return_exceptions=True)


async def mirror_folder(
    client: RemoteTreeClient,
    remote_path: str,
    export_root: str | Path,
    mode: RunMode = RunMode.LIVE,
    concurrency: int = 1,
    keep_written: bool = False,
) -> MirrorResult:
    """Mirror remote_path and everything beneath it under export_root.

    With concurrency 1 the walk is strictly sequential: each child folder's
    subtree is finished before the next sibling, and a folder's files follow
    its subfolders. Larger values run that many workers over a shared queue;
    the resulting tree is the same, only the order of operations differs.
    With keep_written, result.written lists every local file written.
    """
    ctx = MirrorContext(client, export_root, mode, keep_written)
    root = normalize_remote_path(remote_path)
    if concurrency > 1:
        await _mirror_concurrent(ctx, root, concurrency)
    else:
        await _mirror_sequential(ctx, root)
    return ctx.result


async def export_site_map(
    client: RemoteTreeClient,
    site: str,
    export_root: str | Path,
    mode: RunMode = RunMode.LIVE,
) -> Path | None:
    """Write the site navigation tree verbatim; in dry-run, only log it."""
    text = await client.list_navigation_tree()
    if mode is RunMode.DRY_RUN:
        logging.info("[dry-run] site map for %s:\n%s", site, text.rstrip("\n"))
        return None
    out_path = site_artifact_path(export_root, site, SITEMAP_SUFFIX)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(text, encoding="utf-8")
    logging.info("Wrote site map %s", out_path)
    return out_path


def write_manifest(export_root: str | Path, site: str, root: str, files: list[Path]) -> Path:
    """Record path, size and sha256 of every file mirrored in this run."""
    export_root = Path(export_root)
    entries: list[dict[str, Any]] = []
    for path in sorted(files):
        data = path.read_bytes()
        entries.append(
            {
                "path": path.relative_to(export_root).as_posix(),
                "size": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }
        )
    manifest_path = site_artifact_path(export_root, site, MANIFEST_SUFFIX)
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    manifest_path.write_text(
        json.dumps({"generated_at": int(time.time()), "root": root, "files": entries}, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    logging.info("Generated %s manifest entries", len(entries))
    return manifest_path


async def mirror_site(client: RemoteTreeClient, config: Config) -> int:
    """Run access probe, site map and mirror for one site. Return exit code."""
    mode = config.mode
    root = config.root
    try:
        await client.check_access(root)
    except AccessError as exc:
        logging.error("No access to %s, aborting: %s", root, exc.message)
        return EXIT_NO_ACCESS

    site_map_error: MirrorError | None = None
    try:
        await export_site_map(client, config.site, config.export_root, mode)
    except EnumerationError as exc:
        site_map_error = exc
    except OSError as exc:
        site_map_error = WriteError(root, f"cannot write site map: {exc}")

    want_manifest = config.write_manifest and mode is RunMode.LIVE
    result = await mirror_folder(client, root, config.export_root, mode, config.concurrency, want_manifest)
    if site_map_error is not None:
        result.record(site_map_error)

    manifest_path = None
    if want_manifest:
        try:
            manifest_path = write_manifest(config.export_root, config.site, root, result.written)
        except OSError as exc:
            result.record(WriteError(root, f"cannot write manifest: {exc}"))

    logging.info(
        "Summary: mode=%s root=%s folders=%s files=%s bytes=%s failures=%s manifest=%s",
        mode.value,
        root,
        result.folders,
        result.files,
        result.bytes,
        len(result.failures),
        manifest_path,
    )
    for failure in result.failures:
        logging.warning("  %s %s: %s", failure.kind, failure.remote_path, failure.message)
    return EXIT_OK if result.ok else EXIT_PARTIAL


def load_config(config_path: Path) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must be a mapping")
    for key in ("tenant_url", "site"):
        if not data.get(key):
            raise ValueError(f"config.yaml is missing required key: {key}")

    config = Config(
        tenant_url=str(data["tenant_url"]).rstrip("/"),
        site=str(data["site"]).strip("/"),
        root_path=str(data.get("root_path") or ""),
        export_root=str(data.get("export_root", "export")),
        dry_run=bool(data.get("dry_run", False)),
        concurrency=max(1, int(data.get("concurrency", 1))),
        delay_sec=float(data.get("delay_sec", 0.0)),
        max_retries=int(data.get("max_retries", 4)),
        timeout_sec=int(data.get("timeout_sec", 60)),
        access_token=str(data.get("access_token") or os.environ.get(TOKEN_ENV, "")),
        write_manifest=bool(data.get("write_manifest", False)),
    )
    try:
        to_local_path(config.root, config.export_root)
    except ValueError:
        raise ValueError(f"config.yaml has an invalid root_path: {config.root!r}") from None
    return config


async def run(config: Config) -> int:
    """Open one HTTP session for the run and mirror the configured site."""
    logging.info("Starting mirror with config: %s", config)
    scheduler = RequestScheduler(config.delay_sec)
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))

    async with aiohttp.ClientSession(connector=connector) as session:
        client = SharePointClient(
            session,
            config.site_url,
            config.access_token,
            scheduler=scheduler,
            max_retries=config.max_retries,
            timeout_sec=config.timeout_sec,
        )
        return await mirror_site(client, config)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Mirror a SharePoint site's documents to a local directory")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML file")
    parser.add_argument("--dry-run", action="store_true", help="Enumerate and report without writing anything")
    parser.add_argument("--concurrency", type=int, help="Number of folder workers (overrides config)")
    parser.add_argument("--export-root", help="Local destination directory (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every directory and file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config_path = Path(args.config)
    if not config_path.exists():
        raise SystemExit(f"config file not found: {config_path}")
    config = load_config(config_path)
    overrides: dict[str, Any] = {}
    if args.dry_run:
        overrides["dry_run"] = True
    if args.concurrency is not None:
        overrides["concurrency"] = max(1, args.concurrency)
    if args.export_root:
        overrides["export_root"] = args.export_root
    config = dataclasses.replace(config, **overrides)
    if not config.access_token:
        raise SystemExit(f"no access token: set access_token in {config_path} or {TOKEN_ENV}")
    raise SystemExit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
