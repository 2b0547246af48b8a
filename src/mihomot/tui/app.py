"""Interactive dashboard for a mihomo daemon.

Philosophy: the TUI renders StateView and turns keys into intents. Nothing more.
- Every change goes through the event loop as an intent; widgets never call the API
- Displayed daemon values are whatever the last fetch confirmed
- Single-screen dashboard; settings and proxy details are modal popups
"""

from typing import Any

import structlog
from rich.text import Text
from textual import events, on
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Input, Label, Static

from mihomot.config import Config, save_settings
from mihomot.controller import (
    CommitLocal,
    EditRemote,
    EventLoop,
    Refresh,
    ResizeHistory,
    SelectProxy,
    TestGroup,
    TestReachability,
)
from mihomot.edits import (
    LABELS,
    SETTINGS_ROWS,
    EditableField,
    LocalField,
    current_value,
    is_text_field,
)
from mihomot.formatting import (
    format_latency,
    format_reachability,
    format_speed,
    latency_gauge_percent,
)
from mihomot.models import Failed, LatencyResult, Success, Testing, classify_latency
from mihomot.state import StateView
from mihomot.tui.sparkline import Sparkline

log = structlog.get_logger()


def latency_style(result: LatencyResult, config: Config) -> str:
    """Map a latency result to a Rich style using config colors and thresholds."""
    colors = config.tui.colors.latency
    if isinstance(result, Success):
        grade = classify_latency(
            result.ms, config.latency.good_below_ms, config.latency.warn_below_ms
        )
        return getattr(colors, grade.value)
    if isinstance(result, Testing):
        return colors.testing
    if isinstance(result, Failed):
        return colors.bad
    return colors.idle


class StatusPanel(Static):
    """Daemon config summary from the last confirmed snapshot."""

    DEFAULT_CSS = """
    StatusPanel {
        height: 9;
        padding: 0 1;
        border: solid $primary;
        border-title-align: left;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "Overview"

    def update_from(self, state: StateView) -> None:
        config = state.config
        if config is None:
            self.update(Text("Loading config...", style="dim"))
            return
        tun = "off"
        if config.tun_enabled:
            tun = f"on ({config.tun_stack})" if config.tun_stack else "on"
        lines = [
            ("Controller", state.settings.base_url),
            ("Mode", config.mode.value.upper()),
            ("Mixed Port", str(config.mixed_port)),
            ("TUN", tun),
            ("Log Level", config.log_level.value),
            ("Allow LAN", "yes" if config.allow_lan else "no"),
            ("IPv6", "yes" if config.ipv6 else "no"),
        ]
        text = Text()
        for i, (label, value) in enumerate(lines):
            if i:
                text.append("\n")
            text.append(f"{label:<12}", style="bold")
            text.append(value)
        self.update(text)


class ReachabilityGauge(Static):
    """Bar showing the latest reachability test against the test URL."""

    DEFAULT_CSS = """
    ReachabilityGauge {
        height: 3;
        padding: 0 1;
        border: solid $primary;
        border-title-align: left;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "Test Latency"

    def update_from(self, result: LatencyResult, style: str) -> None:
        width = max(10, self.size.width - 4)
        percent = latency_gauge_percent(result)
        filled = width * percent // 100
        label = format_reachability(result)
        bar = Text("█" * filled, style=style)
        bar.append("░" * (width - filled), style="dim")
        text = Text(f"{label}\n", style=style)
        text.append(bar)
        self.update(text)


class TrafficPanel(Static):
    """Download and upload sparklines with the current rate in the titles."""

    DEFAULT_CSS = """
    TrafficPanel {
        height: 1fr;
    }

    TrafficPanel Sparkline {
        border: solid $primary;
        border-title-align: left;
    }
    """

    def compose(self) -> ComposeResult:
        colors = self.app.config.tui.colors.traffic
        yield Sparkline(color=colors.download, id="download")
        yield Sparkline(color=colors.upload, id="upload")

    def on_resize(self, event: events.Resize) -> None:
        """Keep as much history as the charts can show (minus their borders)."""
        self.app.controller.submit(ResizeHistory(event.size.width - 2))

    def update_from(self, state: StateView) -> None:
        try:
            down = self.query_one("#download", Sparkline)
            up = self.query_one("#upload", Sparkline)
        except NoMatches:
            return
        down.border_title = f"Download: {format_speed(state.down_rate)}/s"
        up.border_title = f"Upload: {format_speed(state.up_rate)}/s"
        down.set_data(state.download_history)
        up.set_data(state.upload_history)


class GroupList(Static):
    """Selector groups, sorted by name, with their active member."""

    DEFAULT_CSS = """
    GroupList {
        width: 1fr;
        border: solid $primary;
        border-title-align: left;
    }

    GroupList:focus-within {
        border: solid $accent;
    }

    GroupList DataTable {
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._signature: tuple = ()

    def compose(self) -> ComposeResult:
        yield DataTable(id="group-table", cursor_type="row", zebra_stripes=True)

    def on_mount(self) -> None:
        self.border_title = "Groups"
        self.query_one("#group-table", DataTable).add_columns("Group", "Now")

    def update_from(self, state: StateView) -> None:
        rows = tuple((name, state.proxies[name].selected or "-") for name in state.group_names)
        self.border_subtitle = str(len(rows)) if state.proxies_loaded else "loading"
        if rows == self._signature:
            return
        self._signature = rows
        table = self.query_one("#group-table", DataTable)
        cursor = table.cursor_row
        table.clear()
        for name, now in rows:
            table.add_row(Text(name), Text(now, style="dim"), key=name)
        if rows:
            table.move_cursor(row=min(cursor, len(rows) - 1), animate=False)

    def selected_group(self, state: StateView) -> str | None:
        """Group under the cursor."""
        table = self.query_one("#group-table", DataTable)
        names = state.group_names
        if not names or table.cursor_row < 0:
            return None
        return names[min(table.cursor_row, len(names) - 1)]


class ProxyTable(Static):
    """Members of the highlighted group with their latency."""

    DEFAULT_CSS = """
    ProxyTable {
        width: 2fr;
        border: solid $primary;
        border-title-align: left;
    }

    ProxyTable:focus-within {
        border: solid $accent;
    }

    ProxyTable DataTable {
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._group: str | None = None
        self._members: tuple[str, ...] = ()
        self._signature: tuple = ()

    @property
    def group(self) -> str | None:
        return self._group

    def compose(self) -> ComposeResult:
        yield DataTable(id="proxy-table", cursor_type="row", zebra_stripes=True)

    def on_mount(self) -> None:
        self.border_title = "Proxies"
        self.query_one("#proxy-table", DataTable).add_columns("", "Proxy", "Latency")

    def update_from(self, state: StateView, group: str | None) -> None:
        config: Config = self.app.config
        entry = state.proxies.get(group) if group else None
        members = entry.members if entry else ()
        selected = entry.selected if entry else None
        rows = tuple((m, m == selected, state.member_latency(m)) for m in members)
        if group == self._group and rows == self._signature:
            return

        table = self.query_one("#proxy-table", DataTable)
        cursor = table.cursor_row if group == self._group else 0
        self._group = group
        self._members = members
        self._signature = rows
        self.border_title = f"Proxies: {group}" if group else "Proxies"

        table.clear()
        selected_color = config.tui.colors.selected
        for name, is_selected, result in rows:
            table.add_row(
                Text("▶" if is_selected else " ", style=selected_color),
                Text(name, style=f"bold {selected_color}" if is_selected else ""),
                Text(format_latency(result), style=latency_style(result, config)),
                key=name,
            )
        if rows:
            table.move_cursor(row=min(cursor, len(rows) - 1), animate=False)

    def highlighted_member(self) -> str | None:
        """Member under the cursor."""
        table = self.query_one("#proxy-table", DataTable)
        if not self._members or table.cursor_row < 0:
            return None
        return self._members[min(table.cursor_row, len(self._members) - 1)]


class SettingsScreen(ModalScreen):
    """Settings table; Enter toggles/cycles a field or opens an input for it."""

    DEFAULT_CSS = """
    SettingsScreen {
        align: center middle;
    }

    SettingsScreen > Vertical {
        width: 70%;
        height: auto;
        max-height: 80%;
        border: thick $accent;
        border-title-align: center;
        background: $surface;
        padding: 0 1;
    }

    SettingsScreen DataTable {
        height: auto;
    }

    SettingsScreen #settings-hint {
        color: $text-muted;
    }
    """

    BINDINGS = [
        ("escape", "close", "Close"),
        ("s", "close", "Close"),
        ("q", "close", "Close"),
    ]

    def __init__(self, controller: EventLoop, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._controller = controller
        self._editing: EditableField | None = None
        self._value_column: Any = None

    def compose(self) -> ComposeResult:
        with Vertical() as container:
            container.border_title = "Configuration"
            yield DataTable(id="settings-table", cursor_type="row")
            yield Input(id="settings-input")
            yield Label("Enter: edit/toggle  Esc: close", id="settings-hint")

    def on_mount(self) -> None:
        table = self.query_one("#settings-table", DataTable)
        _, self._value_column = table.add_columns("Setting", "Value")
        state = self._controller.state
        for field in SETTINGS_ROWS:
            table.add_row(LABELS[field], self._display_value(field, state), key=field.value)
        self.query_one("#settings-input", Input).display = False
        table.focus()
        self.set_interval(self._controller.tick_interval, self.refresh_values)

    def _display_value(self, field: EditableField, state: StateView) -> str:
        value = current_value(field, state.config, state.settings)
        if field is LocalField.API_SECRET:
            return "*" * len(value)
        return value or "-"

    def refresh_values(self) -> None:
        """Redraw values from the latest state."""
        table = self.query_one("#settings-table", DataTable)
        state = self._controller.state
        for field in SETTINGS_ROWS:
            table.update_cell(field.value, self._value_column, self._display_value(field, state))

    @on(DataTable.RowSelected, "#settings-table")
    def activate(self, event: DataTable.RowSelected) -> None:
        field = SETTINGS_ROWS[event.cursor_row]
        if not is_text_field(field):
            self._controller.submit(EditRemote(field))
            return
        state = self._controller.state
        self._editing = field
        editor = self.query_one("#settings-input", Input)
        editor.value = current_value(field, state.config, state.settings)
        editor.placeholder = LABELS[field]
        editor.display = True
        editor.focus()

    @on(Input.Submitted, "#settings-input")
    def commit(self, event: Input.Submitted) -> None:
        field = self._editing
        if isinstance(field, LocalField):
            self._controller.submit(CommitLocal(field, event.value))
        elif field is not None:
            self._controller.submit(EditRemote(field, event.value))
        self._stop_editing()

    def _stop_editing(self) -> None:
        self._editing = None
        editor = self.query_one("#settings-input", Input)
        editor.display = False
        self.query_one("#settings-table", DataTable).focus()

    def action_close(self) -> None:
        if self._editing is not None:
            self._stop_editing()
            return
        self.dismiss()


class ProxyInfoScreen(ModalScreen):
    """Details the daemon reported for one proxy."""

    DEFAULT_CSS = """
    ProxyInfoScreen {
        align: center middle;
    }

    ProxyInfoScreen > Static {
        width: 60%;
        height: auto;
        max-height: 80%;
        border: thick $accent;
        border-title-align: center;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("escape", "close", "Close"),
        ("i", "close", "Close"),
        ("q", "close", "Close"),
    ]

    def __init__(self, name: str, state: StateView, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._proxy_name = name
        self._state = state

    def compose(self) -> ComposeResult:
        body = Static(self._details(), id="proxy-info")
        body.border_title = self._proxy_name
        yield body

    def _details(self) -> Text:
        entry = self._state.proxies.get(self._proxy_name)
        text = Text()
        text.append(f"{'Latency':<14}", style="bold")
        text.append(format_latency(self._state.member_latency(self._proxy_name)))
        if entry is None:
            text.append("\nNo details reported by the daemon", style="dim")
            return text
        rows: list[tuple[str, str]] = [("Type", entry.kind)]
        if entry.members:
            rows.append(("Members", str(len(entry.members))))
            rows.append(("Now", entry.selected or "-"))
        rows.extend((key, str(value)) for key, value in sorted(entry.extra.items()))
        for key, value in rows:
            text.append("\n")
            text.append(f"{key:<14}", style="bold")
            text.append(value)
        return text

    def action_close(self) -> None:
        self.dismiss()


class MihomotApp(App):
    """Dashboard for a mihomo daemon."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-area {
        height: 1fr;
    }

    #overview {
        width: 2fr;
    }

    #error-line {
        height: 1;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("t", "test", "Test"),
        ("s", "settings", "Settings"),
        ("i", "info", "Info"),
    ]

    def __init__(self, config: Config | None = None, controller: EventLoop | None = None):
        super().__init__()
        self.config = config or Config.load()
        # Create config file with defaults if it doesn't exist; overrides stay out of it
        if controller is None and not self.config.config_path.exists():
            Config().save()
        self.controller = controller or EventLoop(self.config, save_settings=save_settings)

    def compose(self) -> ComposeResult:
        """Create the TUI layout."""
        yield Horizontal(
            GroupList(id="groups"),
            ProxyTable(id="proxies"),
            Vertical(
                StatusPanel(id="status"),
                ReachabilityGauge(id="gauge"),
                TrafficPanel(id="traffic"),
                id="overview",
            ),
            id="main-area",
        )
        yield Label("", id="error-line")
        yield Footer()

    def on_mount(self) -> None:
        """Start background work and the render tick."""
        self.title = "mihomot"
        self.sub_title = self.config.settings.base_url
        self.controller.start()
        self.set_interval(self.controller.tick_interval, self._on_tick)
        self.query_one("#group-table", DataTable).focus()

    async def on_unmount(self) -> None:
        """Cleanup on shutdown."""
        await self.controller.aclose()

    def _on_tick(self) -> None:
        self.controller.tick()
        self.render_state(self.controller.state)

    def render_state(self, state: StateView) -> None:
        """Push the latest state into every widget."""
        try:
            groups = self.query_one("#groups", GroupList)
            groups.update_from(state)
            self.query_one("#proxies", ProxyTable).update_from(state, groups.selected_group(state))
            self.query_one("#status", StatusPanel).update_from(state)
            self.query_one("#gauge", ReachabilityGauge).update_from(
                state.reachability, latency_style(state.reachability, self.config)
            )
            self.query_one("#traffic", TrafficPanel).update_from(state)
            error_line = self.query_one("#error-line", Label)
        except NoMatches:
            return
        self.sub_title = state.settings.base_url
        if state.last_error:
            error_line.update(Text(state.last_error, style=self.config.tui.colors.error))
        else:
            error_line.update("")

    def _proxies_focused(self) -> bool:
        return self.focused is not None and self.focused.id == "proxy-table"

    @on(DataTable.RowSelected, "#group-table")
    def enter_group(self, event: DataTable.RowSelected) -> None:
        self.query_one("#proxy-table", DataTable).focus()

    @on(DataTable.RowSelected, "#proxy-table")
    def select_member(self, event: DataTable.RowSelected) -> None:
        proxies = self.query_one("#proxies", ProxyTable)
        member = proxies.highlighted_member()
        if proxies.group and member:
            self.controller.submit(SelectProxy(proxies.group, member))

    @on(DataTable.RowHighlighted, "#group-table")
    def highlight_group(self, event: DataTable.RowHighlighted) -> None:
        state = self.controller.state
        groups = self.query_one("#groups", GroupList)
        self.query_one("#proxies", ProxyTable).update_from(state, groups.selected_group(state))

    def action_refresh(self) -> None:
        """Refetch everything; with the proxy list focused, also test its group."""
        group = self.query_one("#proxies", ProxyTable).group
        if self._proxies_focused() and group:
            self.controller.submit(TestGroup(group))
        self.controller.submit(Refresh())

    def action_test(self) -> None:
        """Re-run the reachability test."""
        self.controller.submit(TestReachability())

    def action_settings(self) -> None:
        self.push_screen(SettingsScreen(self.controller))

    def action_info(self) -> None:
        """Show details for the highlighted proxy."""
        if not self._proxies_focused():
            return
        member = self.query_one("#proxies", ProxyTable).highlighted_member()
        if member:
            self.push_screen(ProxyInfoScreen(member, self.controller.state))


def run_tui(config: Config | None = None) -> None:
    """Run the TUI application."""
    app = MihomotApp(config)
    log.info("tui_started", base_url=app.config.settings.base_url)
    app.run()
