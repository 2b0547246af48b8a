# tests/test_tui.py
"""Tests for the dashboard app."""

import asyncio

import pytest
from textual.widgets import DataTable, Input

from mihomot.config import Config
from mihomot.controller import EventLoop
from mihomot.models import PENDING, TESTING, Failed, FailureReason, Success
from mihomot.tui.app import (
    MihomotApp,
    ProxyInfoScreen,
    SettingsScreen,
    latency_style,
)


async def wait_for(pilot, condition, timeout: float = 2.0) -> None:
    """Let the app run until condition() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await pilot.pause(0.02)


def make_app(test_config: Config, daemon) -> MihomotApp:
    controller = EventLoop(test_config, http=daemon.client())
    return MihomotApp(config=test_config, controller=controller)


def test_tui_app_starts_without_crash():
    """TUI app initializes without errors."""
    app = MihomotApp(config=Config(), controller=EventLoop(Config()))
    assert app is not None


def test_latency_style():
    """Latency cells use the configured colors and thresholds."""
    config = Config()
    colors = config.tui.colors.latency
    assert latency_style(Success(50), config) == colors.good
    assert latency_style(Success(300), config) == colors.warn
    assert latency_style(Success(900), config) == colors.bad
    assert latency_style(Failed(FailureReason.TIMEOUT), config) == colors.bad
    assert latency_style(TESTING, config) == colors.testing
    assert latency_style(PENDING, config) == colors.idle


class TestDashboard:
    """Drive the app with a pilot against the fake daemon."""

    @pytest.mark.asyncio
    async def test_groups_loaded(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.query_one("#group-table", DataTable).row_count == 3)
            proxies = app.query_one("#proxy-table", DataTable)
            await wait_for(pilot, lambda: proxies.row_count == 2)

            assert app.query_one("#groups").border_subtitle == "3"
            assert app.focused is app.query_one("#group-table")

    @pytest.mark.asyncio
    async def test_enter_selects_member(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.query_one("#proxy-table", DataTable).row_count == 2)

            # GLOBAL is first; its members are Proxy and DIRECT
            await pilot.press("enter")
            assert app.focused is app.query_one("#proxy-table")
            await pilot.press("down", "enter")

            await wait_for(
                pilot, lambda: app.controller.state.proxies["GLOBAL"].selected == "DIRECT"
            )

        assert daemon.proxies["proxies"]["GLOBAL"]["now"] == "DIRECT"

    @pytest.mark.asyncio
    async def test_refresh_on_proxy_list_tests_group(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.query_one("#proxy-table", DataTable).row_count == 2)
            await pilot.press("down", "enter", "r")

            state = app.controller.state
            await wait_for(pilot, lambda: state.member_latency("HK") == Success(80))

        assert daemon.requests_to("GET", "/proxies/US/delay")

    @pytest.mark.asyncio
    async def test_test_key_reruns_reachability(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: isinstance(app.controller.state.reachability, Success))
            await pilot.press("t")
            await wait_for(pilot, lambda: app.controller.probe.reachability_generation == 2)

    @pytest.mark.asyncio
    async def test_history_follows_chart_width(self, test_config, daemon):
        """The traffic history shrinks to what the charts can show."""
        app = make_app(test_config, daemon)
        async with app.run_test(size=(120, 40)) as pilot:
            await wait_for(pilot, lambda: app.controller.state.traffic_capacity < 240)
            assert app.controller.state.traffic_capacity > 0

    @pytest.mark.asyncio
    async def test_error_line_shows_last_error(self, test_config, daemon):
        daemon.down = True
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.controller.state.last_error is not None)
            assert app.controller.state.last_error.startswith("Failed to connect")
            assert app.controller.state.config is None


class TestSettingsScreen:
    """Tests for the settings popup."""

    @pytest.mark.asyncio
    async def test_open_and_close(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await pilot.press("s")
            assert isinstance(app.screen, SettingsScreen)
            await pilot.press("escape")
            assert not isinstance(app.screen, SettingsScreen)

    @pytest.mark.asyncio
    async def test_toggle_field_patches_daemon(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.controller.state.config is not None)
            await pilot.press("s")
            # Rows: API URL, API Secret, Test URL, Test Timeout, Mode, TUN, ...
            await pilot.press("down", "down", "down", "down", "down", "enter")

            await wait_for(pilot, lambda: app.controller.state.config.tun_enabled)

        assert daemon.config["tun"]["enable"] is True

    @pytest.mark.asyncio
    async def test_text_field_commits_local_setting(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await pilot.press("s")
            await pilot.press("down", "down", "down", "enter")
            editor = app.screen.query_one("#settings-input", Input)
            assert editor.display
            assert editor.value == "1000"

            editor.value = "2500"
            await pilot.press("enter")
            await wait_for(pilot, lambda: app.controller.state.settings.test_timeout_ms == 2500)
            assert not editor.display

    @pytest.mark.asyncio
    async def test_escape_cancels_editing_first(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await pilot.press("s", "enter")
            await pilot.press("escape")
            assert isinstance(app.screen, SettingsScreen)
            assert not app.screen.query_one("#settings-input", Input).display


class TestProxyInfoScreen:
    """Tests for the proxy details popup."""

    @pytest.mark.asyncio
    async def test_info_needs_proxy_list_focus(self, test_config, daemon):
        app = make_app(test_config, daemon)
        async with app.run_test() as pilot:
            await wait_for(pilot, lambda: app.query_one("#proxy-table", DataTable).row_count == 2)
            await pilot.press("i")
            assert not isinstance(app.screen, ProxyInfoScreen)

            await pilot.press("down", "enter", "i")
            assert isinstance(app.screen, ProxyInfoScreen)
            assert "Shadowsocks" in app.screen._details().plain

            await pilot.press("escape")
            assert not isinstance(app.screen, ProxyInfoScreen)
