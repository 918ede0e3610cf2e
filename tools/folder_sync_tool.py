from __future__ import annotations

import queue
import threading
from pathlib import Path
from typing import Any, List, Optional, Tuple

import ttkbootstrap as tb
from ttkbootstrap.dialogs import Messagebox

from plugins.base import AppContext, run_plugin_standalone
from .folder_sync_core import (
    FolderSyncConfig,
    FolderSyncCore,
    FolderSyncError,
    SyncResult,
)

_STATUS_TAGS = {
    "COPIED": "success",
    "TOUCHED": "info",
    "UNCHANGED": "secondary",
    "FAILED": "danger",
}


class FolderSyncTool:
    key = "folder_sync"
    title = "Folder Sync"
    description = "Copy new and changed files from a source folder into a destination folder."

    def __init__(self) -> None:
        self.ctx: Optional[AppContext] = None
        self.panel: Optional[tb.Frame] = None
        self.source_var: Optional[tb.StringVar] = None
        self.dest_var: Optional[tb.StringVar] = None
        self.keep_going_var: Optional[tb.BooleanVar] = None
        self.summary_var: Optional[tb.StringVar] = None
        self.progress_var: Optional[tb.StringVar] = None
        self.progress_bar = None
        self.results_tree = None
        self.log = None
        self.sync_button = None

        self._worker: Optional[threading.Thread] = None
        self._ui_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()

    # ------------------------------------------------------------------ UI --
    def make_panel(self, master, context: AppContext):
        from tkinter import filedialog

        self.ctx = context
        root = tb.Frame(master)
        self.panel = root

        paths = tb.Labelframe(root, text="Folders", padding=8)
        paths.pack(fill="x", padx=8, pady=(10, 6))
        self.source_var = tb.StringVar()
        self.dest_var = tb.StringVar()
        for label, var in (("Source:", self.source_var), ("Destination:", self.dest_var)):
            row = tb.Frame(paths)
            row.pack(fill="x", pady=3)
            tb.Label(row, text=label, width=12).pack(side="left")
            tb.Entry(row, textvariable=var).pack(side="left", fill="x", expand=True, padx=6)
            tb.Button(
                row,
                text="Browse",
                bootstyle="secondary",
                command=lambda v=var: self._browse(v, filedialog.askdirectory),
            ).pack(side="left")

        actions = tb.Frame(root)
        actions.pack(fill="x", padx=8, pady=(0, 6))
        self.keep_going_var = tb.BooleanVar(value=False)
        tb.Checkbutton(actions, text="Skip files that fail to copy", variable=self.keep_going_var).pack(side="left")
        self.sync_button = tb.Button(actions, text="Sync", bootstyle="success", command=self._start_sync)
        self.sync_button.pack(side="right")

        self.summary_var = tb.StringVar(value="Ready.")
        self.progress_var = tb.StringVar(value="Idle")
        tb.Label(root, textvariable=self.summary_var, bootstyle="secondary").pack(fill="x", padx=8)
        tb.Label(root, textvariable=self.progress_var, bootstyle="info").pack(fill="x", padx=8)
        self.progress_bar = tb.Progressbar(root, maximum=100, bootstyle="success-striped")
        self.progress_bar.pack(fill="x", padx=8, pady=(2, 6))

        split = tb.PanedWindow(root, orient="vertical")
        split.pack(fill="both", expand=True, padx=8, pady=(0, 8))
        results_frame = tb.Labelframe(split, text="Results", padding=4)
        log_frame = tb.Labelframe(split, text="Log", padding=4)
        split.add(results_frame, weight=2)
        split.add(log_frame, weight=1)

        self.results_tree = tb.Treeview(results_frame, columns=("status", "path", "detail"), show="headings")
        self.results_tree.heading("status", text="Status")
        self.results_tree.heading("path", text="Relative path")
        self.results_tree.heading("detail", text="Details")
        self.results_tree.column("status", width=100, anchor="w")
        self.results_tree.column("path", width=320, anchor="w")
        self.results_tree.column("detail", anchor="w")
        self.results_tree.pack(fill="both", expand=True)
        style_manager = tb.Style()
        for status, style in _STATUS_TAGS.items():
            color = getattr(getattr(style_manager, "colors", None), style, None)
            if color:
                self.results_tree.tag_configure(status, foreground=color)

        self.log = tb.ScrolledText(log_frame, height=8)
        self.log.pack(fill="both", expand=True)
        return root

    def start(self, context: AppContext, targets: List[Path], argv: List[str]):
        if self.source_var is None:
            return
        if len(targets) > 0:
            self.source_var.set(str(targets[0]))
        if len(targets) > 1:
            self.dest_var.set(str(targets[1]))
        if "--keep-going" in (argv or []):
            self.keep_going_var.set(True)

    def cleanup(self):
        # A sync cannot be cancelled; a closed window just stops polling.
        self.panel = None

    def _browse(self, var, chooser):
        path = chooser()
        if path:
            var.set(path)

    # ------------------------------------------------------------- Syncing --
    def _start_sync(self):
        if self._worker and self._worker.is_alive():
            Messagebox.show_info(title=self.title, message="A sync is already running.")
            return
        source = self.source_var.get().strip()
        destination = self.dest_var.get().strip()
        if not source or not destination:
            Messagebox.show_error(title=self.title, message="Choose both a source and a destination folder.")
            return
        if not Path(source).is_dir():
            Messagebox.show_error(title=self.title, message=f"Source missing: {source}")
            return

        config = FolderSyncConfig(
            source=Path(source),
            destination=Path(destination),
            continue_on_error=bool(self.keep_going_var.get()),
        )
        self.results_tree.delete(*self.results_tree.get_children())
        self.log.delete("1.0", "end")
        self.progress_bar.configure(value=0)
        self.summary_var.set("Syncing…")
        self.progress_var.set("Preparing")
        self.sync_button.configure(state="disabled")

        self._worker = threading.Thread(target=self._run_core, args=(config,), name="folder-sync", daemon=True)
        self._worker.start()
        self.panel.after(100, self._poll_ui_queue)

    def _run_core(self, config: FolderSyncConfig) -> None:
        core = FolderSyncCore(
            config,
            status_callback=lambda message: self._ui_queue.put(("status", message)),
            progress_callback=lambda label, done, total: self._ui_queue.put(("progress", (label, done, total))),
            result_callback=lambda item: self._ui_queue.put(("result", item)),
        )
        try:
            summary = core.run()
        except (FolderSyncError, OSError) as exc:
            self._ui_queue.put(("error", str(exc)))
            return
        self._ui_queue.put(("summary", summary.as_dict()))

    def _poll_ui_queue(self):
        if self.panel is None:
            return
        try:
            while True:
                event, payload = self._ui_queue.get_nowait()
                if event == "status":
                    self.log.insert("end", payload + "\n")
                    self.log.see("end")
                elif event == "progress":
                    self._set_progress(*payload)
                elif event == "result":
                    self._add_result(payload)
                elif event == "summary":
                    self._finish(payload)
                elif event == "error":
                    self._fail(payload)
        except queue.Empty:
            pass
        if (self._worker and self._worker.is_alive()) or not self._ui_queue.empty():
            self.panel.after(200, self._poll_ui_queue)

    def _set_progress(self, label: str, done: int, total: int):
        percent = 100.0 if total <= 0 else min(100.0, done * 100.0 / total)
        self.progress_bar.configure(value=percent)
        self.progress_var.set(f"{label} {percent:.0f}%")

    def _add_result(self, item: SyncResult):
        self.results_tree.insert("", "end", values=(item.status, item.rel, item.detail), tags=(item.status,))

    def _finish(self, summary):
        self.summary_var.set(
            f"Completed – {summary['total']} files ({summary['copied']} copied, {summary['touched']} touched, "
            f"{summary['unchanged']} unchanged, {summary['failed']} failed)"
        )
        self.progress_var.set("Idle")
        self.sync_button.configure(state="normal")

    def _fail(self, message: str):
        self.summary_var.set("Sync stopped.")
        self.progress_var.set("Idle")
        self.sync_button.configure(state="normal")
        Messagebox.show_error(title=self.title, message=message)


PLUGIN = FolderSyncTool()


if __name__ == "__main__":
    run_plugin_standalone(PLUGIN)
