"""Agent Monitor TUI application."""

import logging
from typing import Optional

from rich.text import Text
from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Input, ListView, Static, TabbedContent, TabPane

from .config import MonitorConfig
from .errors import MonitorError
from .formatting import MESSAGE_FILTER_LABELS, MESSAGE_FILTER_TYPES
from .lock import LockCoordinator
from .models import LifecycleState, Session, SessionDelta
from .monitor import SessionMonitor
from .rotation import LogRotator
from .session import subagent_path
from .ui import (
    APP_CSS,
    DetailPanel,
    ErrorItem,
    MessageItem,
    RunSeparator,
    SubagentItem,
    build_sidebar_text,
    build_stats_text,
)

logger = logging.getLogger(__name__)


class MonitorApp(App):
    """TUI following one agent log, with controls for the agent process."""

    CSS = APP_CSS

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("s", "start_agent", "Start"),
        Binding("x", "stop_agent", "Stop"),
        Binding("i", "interrupt_agent", "Interrupt"),
        Binding("r", "resume_agent", "Resume"),
        Binding("ctrl+r", "refresh", "Refresh"),
        Binding("f", "cycle_filter", "Filter"),
        Binding("b", "toggle_sidebar", "Sidebar"),
        Binding("1", "show_tab('messages')", "Messages", show=False),
        Binding("2", "show_tab('subagents')", "Sub-agents", show=False),
        Binding("3", "show_tab('errors')", "Errors", show=False),
        Binding("4", "show_tab('stats')", "Stats", show=False),
        Binding("tab", "focus_detail", "Detail", show=False),
        Binding("escape", "back_to_list", "Back", show=False),
    ]

    def __init__(self, config: MonitorConfig):
        super().__init__()
        self.config = config
        process = config.process

        self.monitor = SessionMonitor(
            process.log_path,
            poll_interval=process.poll_interval,
            debounce=process.debounce,
            require_timestamp=process.require_timestamp,
        )
        self.coordinator = LockCoordinator.from_config(config)
        self.rotator = LogRotator(
            process.log_path,
            archive_dir=config.archive_dir,
            max_bytes=config.rotation.max_bytes,
            retention_days=config.rotation.retention_days,
            compress=config.rotation.compress,
        )

        self.session: Optional[Session] = None
        self._message_items: list[MessageItem] = []
        self._subagent_items: list[SubagentItem] = []
        self._error_items: list[ErrorItem] = []
        self._separated_runs: set[int] = set()
        self._filter: Optional[str] = None
        self._input_mode: Optional[str] = None
        self._resume_session_id: Optional[str] = None
        self._unsubscribe = None
        self._remove_listener = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal(id="body"):
            yield Static("", id="sidebar")
            with Vertical(id="main-container"):
                yield Static("", id="filter-bar")
                yield Input(placeholder="Feedback for the agent (Enter to send, Escape to cancel)", id="feedback-input")
                with TabbedContent(initial=self.config.display.default_tab, id="tabs"):
                    with TabPane("Messages", id="messages"):
                        yield ListView(id="message-list")
                    with TabPane("Sub-agents", id="subagents"):
                        yield ListView(id="subagent-list")
                    with TabPane("Errors", id="errors"):
                        yield ListView(id="error-list")
                    with TabPane("Stats", id="stats"):
                        yield Static("", id="stats-panel")
            with Vertical(id="detail-container"):
                yield DetailPanel(id="detail-panel")
        yield Footer()

    def on_mount(self):
        """Start tailing and watching the lock when the app mounts."""
        self.title = f"Agent Monitor: {self.config.project_root.name}"
        self.sub_title = str(self.config.process.log_path)
        if not self.config.display.show_sidebar:
            self.query_one("#sidebar").add_class("hidden")

        detail = self.query_one("#detail-panel", DetailPanel)
        text = Text()
        text.append("Waiting for agent output in\n", style="dim")
        text.append(f"{self.config.process.log_path}\n\n", style="cyan")
        text.append("Press ", style="dim")
        text.append("s", style="bold")
        text.append(" to start the agent", style="dim")
        detail.update(text)

        self._remove_listener = self.coordinator.add_listener(self._on_state_change)
        self.coordinator.refresh_state()
        self._unsubscribe = self.monitor.subscribe(self._on_session_update)
        self.monitor.start()

        self.set_interval(self.config.process.lock_check_interval, self.coordinator.refresh_state)
        self.set_interval(1.0, self._update_sidebar)
        self._update_filter_bar()
        self._update_sidebar()
        self.query_one("#message-list", ListView).focus()

    async def on_unmount(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
        if self._remove_listener is not None:
            self._remove_listener()
        await self.monitor.stop()
        # A child spawned here cannot outlive this event loop
        if self.coordinator.owns_process:
            try:
                await self.coordinator.stop()
            except MonitorError as e:
                logger.error(f"Could not stop agent on exit: {e}")

    # -- session updates --

    def _on_session_update(self, session: Session, delta: SessionDelta):
        """Apply a monitor snapshot to the lists."""
        self.session = session
        if delta.reset:
            self.query_one("#detail-panel", DetailPanel).clear_display()
        self._sync_messages(delta)
        self._sync_subagents(delta.reset)
        self._sync_errors(delta.reset)
        self.query_one("#stats-panel", Static).update(build_stats_text(session))
        self._update_filter_bar()
        self._update_sidebar()

    def _sync_messages(self, delta: SessionDelta):
        message_list = self.query_one("#message-list", ListView)
        messages = self.session.messages
        if delta.reset or len(self._message_items) > len(messages):
            message_list.clear()
            self._message_items = []
            self._separated_runs = set()

        for index in self._touched_messages(delta):
            if index < len(self._message_items):
                self._message_items[index].update_message(messages[index])

        # Later runs start at a message index; a run with no messages yet sits at the end
        unseparated = [run for run in self.session.runs[1:] if run.number not in self._separated_runs]
        start = len(self._message_items)
        widgets = []
        for i in range(start, len(messages) + 1):
            for run in unseparated:
                if run.start_index != i:
                    continue
                self._separated_runs.add(run.number)
                previous = self.session.runs[run.number - 2]
                widgets.append(RunSeparator(run, previous.stats.end_time))
            if i < len(messages):
                item = MessageItem(messages[i], i)
                item.display = self._filter is None or item.filter_type == self._filter
                self._message_items.append(item)
                widgets.append(item)
        if widgets:
            message_list.mount(*widgets)

    def _touched_messages(self, delta: SessionDelta) -> set[int]:
        """Indices of top-level messages owning an updated tool call."""
        if not delta.updated_tool_calls:
            return set()
        owner = {call.id: i for i, message in enumerate(self.session.messages) for call in message.tool_calls}
        touched = set()
        for call in delta.updated_tool_calls:
            path = subagent_path(self.session, call.id)
            top_id = path[0].id if path else call.id
            if top_id in owner:
                touched.add(owner[top_id])
        return touched

    def _sync_subagents(self, reset: bool):
        subagent_list = self.query_one("#subagent-list", ListView)
        calls = self.session.subagents
        if reset or len(self._subagent_items) > len(calls):
            subagent_list.clear()
            self._subagent_items = []

        for item, call in zip(self._subagent_items, calls):
            item.call = call
            item.refresh_text()

        items = [SubagentItem(call) for call in calls[len(self._subagent_items):]]
        if items:
            self._subagent_items.extend(items)
            subagent_list.mount(*items)

    def _sync_errors(self, reset: bool):
        error_list = self.query_one("#error-list", ListView)
        errors = self.session.errors
        if reset or len(self._error_items) > len(errors):
            error_list.clear()
            self._error_items = []

        items = [ErrorItem(error) for error in errors[len(self._error_items):]]
        if items:
            self._error_items.extend(items)
            error_list.mount(*items)

    def _on_state_change(self, state: LifecycleState, error: Optional[str]):
        if state is LifecycleState.ERROR and error:
            self.notify(error, title="Agent error", severity="error", timeout=5)
        self._update_sidebar()

    def _update_sidebar(self):
        sidebar = self.query_one("#sidebar", Static)
        sidebar.update(build_sidebar_text(self.session, self.coordinator.state, self.coordinator.error))

    def _update_filter_bar(self):
        text = Text()
        text.append("Filter: ", style="dim")
        if self._filter is None:
            text.append("All", style="bold cyan")
        else:
            text.append(MESSAGE_FILTER_LABELS[self._filter], style="bold yellow")
        if self.session is not None:
            shown = sum(1 for item in self._message_items if item.display)
            text.append(f" | {shown}/{len(self._message_items)} messages", style="dim")
        self.query_one("#filter-bar", Static).update(text)

    # -- selection --

    @on(ListView.Highlighted, "#message-list")
    def on_message_highlighted(self, event: ListView.Highlighted):
        if isinstance(event.item, MessageItem):
            self.query_one("#detail-panel", DetailPanel).show_message(event.item.message)

    @on(ListView.Highlighted, "#subagent-list")
    def on_subagent_highlighted(self, event: ListView.Highlighted):
        if isinstance(event.item, SubagentItem) and self.session is not None:
            call = event.item.call
            self.query_one("#detail-panel", DetailPanel).show_subagent(call, subagent_path(self.session, call.id))

    @on(ListView.Highlighted, "#error-list")
    def on_error_highlighted(self, event: ListView.Highlighted):
        if isinstance(event.item, ErrorItem) and self.session is not None:
            error = event.item.error
            call = self.session.tool_calls.get(error.tool_call_id)
            self.query_one("#detail-panel", DetailPanel).show_error(error, call)

    def action_show_tab(self, tab: str):
        self.query_one("#tabs", TabbedContent).active = tab

    def action_focus_detail(self):
        self.query_one("#detail-panel", DetailPanel).focus()

    def action_back_to_list(self):
        if self._input_mode is not None:
            self._hide_input()
            return
        active = self.query_one("#tabs", TabbedContent).active
        list_ids = {"messages": "#message-list", "subagents": "#subagent-list", "errors": "#error-list"}
        if active in list_ids:
            self.query_one(list_ids[active], ListView).focus()

    def action_cycle_filter(self):
        """Cycle the message list through All and each message category."""
        order = [None, *MESSAGE_FILTER_TYPES]
        self._filter = order[(order.index(self._filter) + 1) % len(order)]
        for item in self._message_items:
            item.display = self._filter is None or item.filter_type == self._filter
        self._update_filter_bar()

    def action_toggle_sidebar(self):
        self.query_one("#sidebar").toggle_class("hidden")

    def action_refresh(self):
        """Re-read the log from the beginning."""
        self.monitor.refresh()
        self.notify("Reloaded session from log")

    # -- process control --

    def action_start_agent(self):
        self._run_start()

    @work(exclusive=True, group="process")
    async def _run_start(self):
        try:
            self.rotator.rotate_if_needed()
            self.rotator.prune()
            record = await self.coordinator.start()
        except MonitorError as e:
            logger.warning(f"Start failed: {e}")
            self.notify(str(e), title="Start failed", severity="error", timeout=5)
            return
        self.notify(f"Agent started (PID {record.pid})")

    def action_stop_agent(self):
        self._run_stop()

    @work(exclusive=True, group="process")
    async def _run_stop(self):
        try:
            stopped = await self.coordinator.stop()
        except MonitorError as e:
            logger.warning(f"Stop failed: {e}")
            self.notify(str(e), title="Stop failed", severity="error", timeout=5)
            return
        self.notify("Agent stopped" if stopped else "No agent running", severity="information")

    def action_interrupt_agent(self):
        if not self.coordinator.is_locked():
            self.notify("No running agent to interrupt", severity="warning")
            return
        self._show_input("interrupt", "Feedback for the running agent (Enter to interrupt, Escape to cancel)")

    def action_resume_agent(self):
        session_id = self.session.session_id if self.session else None
        if not session_id:
            record = self.coordinator.read()
            session_id = record.session_id if record else None
        if not session_id:
            self.notify("No session id seen in the log yet", severity="warning")
            return
        self._resume_session_id = session_id
        self._show_input("resume", f"Feedback to resume {session_id[:8]} with (Enter to resume, Escape to cancel)")

    def _show_input(self, mode: str, placeholder: str):
        feedback = self.query_one("#feedback-input", Input)
        self._input_mode = mode
        feedback.placeholder = placeholder
        feedback.value = ""
        feedback.add_class("visible")
        feedback.focus()

    def _hide_input(self):
        feedback = self.query_one("#feedback-input", Input)
        feedback.remove_class("visible")
        feedback.value = ""
        self._input_mode = None
        self.query_one("#message-list", ListView).focus()

    @on(Input.Submitted, "#feedback-input")
    def on_feedback_submitted(self, event: Input.Submitted):
        text = event.value.strip()
        mode = self._input_mode
        self._hide_input()
        if not text:
            return
        if mode == "interrupt":
            try:
                record = self.coordinator.interrupt(text)
            except MonitorError as e:
                self.notify(str(e), title="Interrupt failed", severity="error", timeout=5)
                return
            self.notify(f"Interrupted agent (PID {record.pid})")
        elif mode == "resume" and self._resume_session_id:
            self._run_resume(self._resume_session_id, text)

    @work(exclusive=True, group="process")
    async def _run_resume(self, session_id: str, feedback: str):
        try:
            if self.coordinator.is_locked():
                await self.coordinator.stop()
            self.rotator.rotate_if_needed()
            record = await self.coordinator.resume(session_id, feedback)
        except MonitorError as e:
            logger.warning(f"Resume failed: {e}")
            self.notify(str(e), title="Resume failed", severity="error", timeout=5)
            return
        self.notify(f"Resumed session {session_id[:8]} (PID {record.pid})")
