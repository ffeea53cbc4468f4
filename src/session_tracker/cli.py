"""Command line helpers for inspecting and exporting sessions."""
from __future__ import annotations

import argparse
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import Sequence

from .archive import ArchiveAssembler, ManifestInputs
from .config import AppConfig, ConfigManager
from .devices import DEVICES_FILENAME, DeviceDirectory
from .errors import ArchiveError, SessionNotFoundError
from .matcher import RecordingMatcher, RootScope, SearchRoot, default_search_roots
from .sessions import SessionStore
from .system_log import SystemLog

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the session tracker CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m session_tracker.cli",
        description="Session tracker recording and export helpers",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("session-tracker.json"),
        help="Path to the configuration file; its directory is the application root.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    match = commands.add_parser("match", help="List the recordings that belong to a session.")
    match.add_argument("session_id", type=int)
    match.add_argument(
        "--root",
        dest="roots",
        action="append",
        type=Path,
        default=[],
        help="Global search root (repeatable). Defaults to the configured roots.",
    )
    match.add_argument(
        "--session-root",
        dest="session_roots",
        action="append",
        type=Path,
        default=[],
        help="Directory whose videos all belong to the session (repeatable).",
    )

    export = commands.add_parser("export", help="Write the session archive to a directory.")
    export.add_argument("session_id", type=int)
    export.add_argument(
        "--output",
        type=Path,
        default=Path("."),
        help="Directory receiving the archive (default: current directory).",
    )
    return parser


def _search_roots(config: AppConfig, args: argparse.Namespace) -> tuple[SearchRoot, ...]:
    if not args.roots and not args.session_roots:
        return default_search_roots(config.storage, args.session_id)
    roots = [SearchRoot(path, RootScope.GLOBAL) for path in args.roots]
    roots.extend(SearchRoot(path, RootScope.SESSION) for path in args.session_roots)
    return tuple(roots)


def _run_match(config: AppConfig, args: argparse.Namespace) -> int:
    matcher = RecordingMatcher.from_settings(config.matching)
    result = matcher.match(args.session_id, _search_roots(config, args))
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_OK
    print(f"Session {result.session_id}")
    print("Search roots:")
    for root in result.roots:
        marker = "" if root.path.is_dir() else " (missing)"
        print(f" - {root.path} [{root.scope.value}]{marker}")
    print(f"Recordings ({len(result.recordings)}):")
    for recording in result.recordings:
        print(f" - {recording.path} ({recording.size} bytes, {recording.match_reason})")
    if result.thumbnails:
        print(f"Thumbnails ({len(result.thumbnails)}):")
        for thumbnail in result.thumbnails:
            print(f" - {thumbnail.path}")
    if result.ambiguous:
        print("Ambiguous filenames:")
        for name in result.ambiguous:
            print(f" * {name}")
    return EXIT_OK


def _run_export(config: AppConfig, args: argparse.Namespace) -> int:
    storage = config.storage
    data_root = storage.data_root
    assembler = ArchiveAssembler(
        storage,
        SessionStore(data_root / "sessions.db"),
        matcher=RecordingMatcher.from_settings(config.matching),
        devices=DeviceDirectory(data_root / DEVICES_FILENAME, base_topic=config.namespaces[0]),
        system_log=SystemLog(data_root / "system_log.jsonl"),
    )
    try:
        handle = assembler.assemble(args.session_id, ManifestInputs(requested_by="cli"))
    except SessionNotFoundError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except ArchiveError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    destination = output_dir / handle.filename
    with handle:
        shutil.move(str(handle.path), destination)
    counts = dict(handle.manifest.counts)
    if args.json:
        payload = {
            "archive": str(destination),
            "counts": counts,
            "empty_categories": list(handle.manifest.empty_categories),
            "ambiguous": list(handle.manifest.ambiguous),
        }
        print(json.dumps(payload, indent=2))
        return EXIT_OK
    print(f"Archive written to {destination}")
    for category, count in counts.items():
        print(f" - {category}: {count}")
    if handle.manifest.empty_categories:
        print("Empty categories: " + ", ".join(handle.manifest.empty_categories))
    return EXIT_OK


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = ConfigManager(args.config).get()
    except RuntimeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    if args.command == "match":
        return _run_match(config, args)
    return _run_export(config, args)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m session_tracker.cli`."""

    return run(argv)


__all__ = ["build_parser", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
