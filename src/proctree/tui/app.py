"""Live process tree view for proctree.

The Textual ``Tree`` widget mirrors a ProcessTree. The poller tells the
binding which node changed and only that branch of the widget is rebuilt.
"""

import json
from collections.abc import Callable
from typing import Any

import structlog
from rich.text import Text
from textual.app import App, ComposeResult
from textual.widgets import Footer, Tree
from textual.widgets.tree import TreeNode

from proctree.collector import ProcessCollector
from proctree.config import Config, default_root_pid
from proctree.debug import (
    DebugLaunchConfig,
    force_terminate,
    resolve,
    resolve_children,
    terminate,
)
from proctree.poller import ProcessPoller
from proctree.tree import (
    ChangeKind,
    ChangeTarget,
    Collapsible,
    DebugScope,
    ProcessNode,
    ProcessTree,
)

log = structlog.get_logger()

_SCOPE_TAGS = {
    DebugScope.NONE: "",
    DebugScope.SELF: " ◆",
    DebugScope.CHILDREN: " ◇",
    DebugScope.BOTH: " ◆◇",
}


def render_label(node: ProcessNode) -> Text:
    """Widget label for a node: dimmed when terminated, tagged when debuggable."""
    style = "dim" if node.terminated else ""
    return Text.assemble(
        (node.label or str(node.pid), style),
        (_SCOPE_TAGS[node.debug_scope], "bold magenta"),
    )


class TreeBinding:
    """Keeps a Textual Tree widget in step with a ProcessTree."""

    def __init__(self, model: ProcessTree, widget: Tree[int]) -> None:
        self.model = model
        self.widget = widget
        self.visible = True
        self._handles: dict[int, TreeNode[int]] = {model.root.node_id: widget.root}
        widget.root.data = model.root.node_id

    @property
    def active(self) -> bool:
        return self.visible

    def handle(self, node_id: int) -> TreeNode[int] | None:
        return self._handles.get(node_id)

    def refresh(self, target: ChangeTarget) -> None:
        node = self.model.get(target.node_id) if target.node_id is not None else None
        handle = self._handles.get(target.node_id) if target.node_id is not None else None
        if target.kind is ChangeKind.TREE or node is None or handle is None:
            self._rebuild(self.widget.root, self.model.root)
        else:
            self._rebuild(handle, node)

    def reveal(self, node: ProcessNode) -> None:
        handle = self._handles[node.node_id]
        self.widget.scroll_to_node(handle)

    def _forget(self, handle: TreeNode[int]) -> None:
        for child in handle.children:
            self._forget(child)
            if child.data is not None:
                self._handles.pop(child.data, None)

    def _rebuild(self, handle: TreeNode[int], node: ProcessNode) -> None:
        self._forget(handle)
        handle.remove_children()
        handle.set_label(render_label(node))
        for child in self.model.children(node):
            self._add(handle, child)
        expandable = node.collapsible is Collapsible.EXPANDED
        handle.allow_expand = expandable
        if expandable:
            handle.expand()
        else:
            handle.collapse()

    def _add(self, parent: TreeNode[int], node: ProcessNode) -> None:
        expandable = node.collapsible is Collapsible.EXPANDED
        handle = parent.add(
            render_label(node),
            data=node.node_id,
            expand=expandable,
            allow_expand=expandable,
        )
        self._handles[node.node_id] = handle
        for child in self.model.children(node):
            self._add(handle, child)


class ProcessTreeApp(App):
    """Live process tree below a root pid."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #processes {
        height: 1fr;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("d", "attach", "Debug"),
        ("D", "attach_children", "Debug children"),
        ("t", "terminate", "Terminate"),
        ("k", "force_terminate", "Kill"),
        ("p", "toggle_pause", "Pause"),
    ]

    def __init__(
        self,
        config: Config | None = None,
        root_pid: int | None = None,
        collector: ProcessCollector | None = None,
        launcher: Callable[[DebugLaunchConfig], Any] | None = None,
    ):
        super().__init__()
        self.config = config or Config.load()
        self.root_pid = root_pid if root_pid is not None else default_root_pid()
        self.model = ProcessTree(self.root_pid, keep_terminated=self.config.tree.keep_terminated)
        self.collector = collector or ProcessCollector(self.config)
        self.launcher = launcher
        self.binding: TreeBinding | None = None
        self.poller: ProcessPoller | None = None

    def compose(self) -> ComposeResult:
        """Create the layout."""
        yield Tree(f"pid {self.root_pid}", id="processes")
        yield Footer()

    def on_mount(self) -> None:
        """Bind the widget and start polling."""
        self.title = "proctree"
        self.sub_title = f"pid {self.root_pid}"
        widget = self.query_one("#processes", Tree)
        widget.show_root = False
        widget.root.expand()
        self.binding = TreeBinding(self.model, widget)
        self.poller = ProcessPoller.from_config(
            self.config, self.model, self.collector, self.binding
        )
        self.poller.start()

    async def on_unmount(self) -> None:
        """Stop polling on shutdown."""
        if self.poller is not None:
            await self.poller.stop()

    def _selected(self) -> ProcessNode | None:
        widget = self.query_one("#processes", Tree)
        cursor = widget.cursor_node
        if cursor is None or cursor.data is None:
            return None
        return self.model.get(cursor.data)

    def _launch(self, config: DebugLaunchConfig) -> None:
        log.info("attach_requested", **config.to_dict())
        if self.launcher is not None:
            self.launcher(config)
        else:
            self.notify(json.dumps(config.to_dict()), title="Attach configuration")

    def action_attach(self) -> None:
        node = self._selected()
        if node is None:
            return
        if node.debug_scope not in (DebugScope.SELF, DebugScope.BOTH):
            self.notify(f"{node.name} does not look debuggable", severity="warning")
            return
        self._launch(resolve(node))

    def action_attach_children(self) -> None:
        node = self._selected()
        if node is None:
            return
        if node.debug_scope not in (DebugScope.CHILDREN, DebugScope.BOTH):
            self.notify(f"No debuggable children under {node.name}", severity="warning")
            return
        for config in resolve_children(self.model, node):
            self._launch(config)

    def action_terminate(self) -> None:
        node = self._selected()
        if node is not None and not node.terminated:
            terminate(node.pid)

    def action_force_terminate(self) -> None:
        node = self._selected()
        if node is not None and not node.terminated:
            force_terminate(node.pid)

    def action_toggle_pause(self) -> None:
        if self.binding is None or self.poller is None:
            return
        self.binding.visible = not self.binding.visible
        if self.binding.visible:
            self.poller.resume()
            self.sub_title = f"pid {self.root_pid}"
        else:
            self.poller.pause()
            self.sub_title = f"pid {self.root_pid} (paused)"


def run_tui(config: Config | None = None, root_pid: int | None = None) -> None:
    """Run the TUI application."""
    app = ProcessTreeApp(config, root_pid=root_pid)
    app.run()
