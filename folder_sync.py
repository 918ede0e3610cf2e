from __future__ import annotations

import argparse
import json
import shutil
import sys
from typing import List, Sequence, TextIO

from tools.folder_sync_core import (
    FolderSyncConfig,
    FolderSyncCore,
    FolderSyncError,
    SyncResult,
    UsageError,
)

_BAR_WIDTHS = (60, 40, 20)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foldersync", description="One-way incremental folder sync")
    parser.add_argument("source", nargs="?", help="Directory to copy from")
    parser.add_argument("destination", nargs="?", help="Directory to copy into")
    parser.add_argument("--keep-going", action="store_true", help="Skip files whose copy fails instead of stopping")
    parser.add_argument("--out", choices=["JSON", "TEXT"], default="TEXT", help="Output format")
    parser.add_argument("--gui", action="store_true", help="Open the sync window instead of running in the terminal")
    return parser


def _render_bar(processed: int, total: int, width: int) -> str:
    fraction = 1.0 if total <= 0 else min(1.0, processed / total)
    filled = int(round(fraction * width))
    return f"[{'#' * filled}{'-' * (width - filled)}] {fraction * 100:5.1f}%"


def _printable(text: str, stream: TextIO) -> str:
    encoding = getattr(stream, "encoding", None) or "utf-8"
    return text.encode(encoding, "backslashreplace").decode(encoding)


class _ConsoleReporter:
    """Prints narration lines and a single rewritten progress line on a terminal."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self._bar_open = False

    def status(self, message: str) -> None:
        if self._bar_open:
            self.stream.write("\n")
            self._bar_open = False
        self.stream.write(_printable(message, self.stream) + "\n")
        self.stream.flush()

    def progress(self, label: str, processed: int, total: int) -> None:
        if not self.stream.isatty():
            return
        columns = shutil.get_terminal_size().columns
        width = _BAR_WIDTHS[-1]
        for candidate in _BAR_WIDTHS:
            if columns - len(label) - 2 >= candidate:
                width = candidate
                break
        self.stream.write(f"\r{_render_bar(processed, total, width)} {_printable(label, self.stream)} ")
        self.stream.flush()
        self._bar_open = True


def _launch_gui(args: argparse.Namespace) -> int:
    from plugins.base import run_plugin_standalone
    from tools.folder_sync_tool import PLUGIN

    argv = [value for value in (args.source, args.destination) if value]
    if args.keep_going:
        argv.append("--keep-going")
    run_plugin_standalone(PLUGIN, argv)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.gui:
        return _launch_gui(args)

    try:
        config = FolderSyncConfig(
            source=args.source,
            destination=args.destination,
            continue_on_error=args.keep_going,
        )
    except UsageError as exc:
        parser.print_usage(sys.stderr)
        print(exc, file=sys.stderr)
        return 1

    results: List[SyncResult] = []
    if args.out == "JSON":
        core = FolderSyncCore(config, result_callback=results.append)
    else:
        reporter = _ConsoleReporter(sys.stdout)
        core = FolderSyncCore(
            config,
            status_callback=reporter.status,
            progress_callback=reporter.progress,
            result_callback=results.append,
        )

    try:
        summary = core.run()
    except (FolderSyncError, OSError) as exc:
        raise SystemExit(f"error: {exc}") from exc

    if args.out == "JSON":
        output = {
            "summary": summary.as_dict(),
            "items": [{"action": item.status, "path": item.rel, "detail": item.detail} for item in results],
        }
        json.dump(output, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        print(
            f"Processed {summary.total} files – {summary.copied} copied, {summary.touched} touched, "
            f"{summary.unchanged} unchanged, {summary.failed} failed"
        )
        for item in results:
            if item.status == "FAILED":
                print(_printable(f"{item.status:<9} {item.rel} – {item.detail}", sys.stdout))
    return 0


if __name__ == "__main__":
    sys.exit(main())
