from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol, Tuple


def _split_argv(argv: List[str]) -> Tuple[List[Path], List[str]]:
    """Separate positional paths from ``--flag`` style options.

    Paths are handed to the tool in the order given, so ``SOURCE DEST`` from
    the command line arrives as the first two targets.
    """

    targets: List[Path] = []
    extra: List[str] = []
    for arg in argv:
        if arg.startswith("--"):
            extra.append(arg)
        else:
            targets.append(Path(arg).expanduser())
    return targets, extra


class ToolPlugin(Protocol):
    key: str
    title: str
    description: str

    def make_panel(self, master, context: "AppContext") -> Any:
        """Build and return the tool's panel inside ``master``."""

    def start(self, context: "AppContext", targets: List[Path], argv: List[str]) -> None:
        """Called once the panel exists, with any paths passed on the command line."""

    def cleanup(self) -> None:
        """Called when the window closes."""


@dataclass
class AppContext:
    app_name: str
    version: str
    platform: str
    resource_dir: Path


def run_plugin_standalone(plugin: "ToolPlugin", argv: Optional[List[str]] = None) -> None:
    """Open ``plugin`` in its own ttkbootstrap window and block until it closes."""

    import platform
    import sys

    try:
        import ttkbootstrap as tb
        from ttkbootstrap.dialogs import Messagebox
    except ImportError as exc:  # pragma: no cover - import error propagated
        raise RuntimeError("Install dependencies: pip install ttkbootstrap") from exc

    argv = list(sys.argv[1:] if argv is None else argv)
    targets, extra = _split_argv(argv)

    ctx = AppContext(
        app_name=getattr(plugin, "title", getattr(plugin, "key", "Tool")),
        version=getattr(plugin, "version", "standalone"),
        platform=platform.system(),
        resource_dir=Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent.parent)),
    )

    window = tb.Window(title=ctx.app_name, themename="darkly")
    window.geometry("900x600")
    window.resizable(True, True)

    container = tb.Frame(window, padding=8)
    container.pack(fill="both", expand=True)

    panel = plugin.make_panel(container, ctx)
    if hasattr(panel, "pack"):
        panel.pack(fill="both", expand=True)

    def _start_tool():
        try:
            plugin.start(ctx, targets, extra)
        except Exception as exc:  # pragma: no cover - GUI error path
            Messagebox.show_error(message=str(exc), title="Tool start error")

    def _on_close():
        plugin.cleanup()
        window.destroy()

    window.after(50, _start_tool)
    window.protocol("WM_DELETE_WINDOW", _on_close)
    window.mainloop()
