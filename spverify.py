#!/usr/bin/env python3
"""Check a mirrored site against the manifest written by the last live run."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Iterable

from spmirror import MANIFEST_SUFFIX, load_config, site_artifact_path, to_local_path


def load_manifest(path: Path) -> tuple[str, dict[str, int]]:
    """Return (mirrored root, {relative path: size}) from a manifest file."""
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not isinstance(data.get("files"), list):
        raise ValueError(f"not a mirror manifest: {path}")

    entries: dict[str, int] = {}
    for item in data["files"]:
        if not isinstance(item, dict):
            continue
        raw_path: Any = item.get("path")
        if not isinstance(raw_path, str):
            continue
        try:
            entries[raw_path.replace("\\", "/")] = int(item.get("size"))
        except (TypeError, ValueError):
            continue
    return str(data.get("root") or ""), entries


def iter_output_files(root: Path) -> Iterable[Path]:
    for path in root.rglob("*"):
        if path.is_file():
            yield path


def verify(export_root: Path, manifest_path: Path) -> tuple[int, list[str]]:
    """Compare files under the mirrored root with the manifest.

    Return (ok_count, problems). Files outside the mirrored root, such as the
    site map and the manifest itself, are not considered.
    """
    problems: list[str] = []
    if not manifest_path.exists():
        return 0, [f"manifest not found: {manifest_path}"]
    try:
        root, manifest_entries = load_manifest(manifest_path)
    except (OSError, ValueError) as exc:
        return 0, [f"failed to load manifest: {exc}"]

    local_root = to_local_path(root, export_root) if root else export_root
    actual_entries: dict[str, int] = {}
    if local_root.is_dir():
        for file_path in iter_output_files(local_root):
            rel = file_path.relative_to(export_root).as_posix()
            actual_entries[rel] = file_path.stat().st_size

    ok_count = 0
    for rel, expected_size in sorted(manifest_entries.items()):
        if rel not in actual_entries:
            problems.append(f"missing file: {rel}")
            continue
        actual_size = actual_entries[rel]
        if actual_size != expected_size:
            problems.append(f"size mismatch: {rel} (expected={expected_size}, actual={actual_size})")
        else:
            ok_count += 1

    for rel in sorted(set(actual_entries) - set(manifest_entries)):
        problems.append(f"extra file not in manifest: {rel}")

    return ok_count, problems


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a mirrored SharePoint site against its manifest")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML file")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    export_root = Path(config.export_root)
    manifest_path = site_artifact_path(export_root, config.site, MANIFEST_SUFFIX)

    ok_count, problems = verify(export_root, manifest_path)
    for problem in problems:
        print(f"[NG] {problem}")
    print(f"OK: {ok_count}")
    print(f"NG: {len(problems)}")
    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
