"""CLI commands for mihomot."""

import asyncio

import click

from mihomot import __version__


@click.group(invoke_without_command=True)
@click.option("--url", "-U", "base_url", default=None, help="Controller URL for this run")
@click.option("--secret", "-S", default=None, help="API secret for this run")
@click.version_option(__version__, prog_name="mihomot")
@click.pass_context
def main(ctx, base_url: str | None, secret: str | None) -> None:
    """Terminal dashboard for a mihomo proxy daemon.

    Runs the interactive dashboard when no command is given.
    """
    from mihomot.config import Config

    ctx.ensure_object(dict)
    ctx.obj["config"] = Config.load().with_overrides(base_url, secret)

    if ctx.invoked_subcommand is None:
        ctx.invoke(tui)


@main.command()
@click.pass_context
def tui(ctx) -> None:
    """Launch interactive dashboard."""
    from mihomot.logging import configure
    from mihomot.tui import run_tui

    config = ctx.obj["config"]
    configure(config, source="tui")
    run_tui(config)


@main.command()
@click.pass_context
def status(ctx) -> None:
    """Show the daemon's mode, ports and selector groups."""
    from mihomot import logging as console
    from mihomot.client import ControlClient
    from mihomot.errors import ControlError

    config = ctx.obj["config"]
    console.configure(config, source="cli")
    console.version_info("mihomot", __version__)

    async def fetch():
        client = ControlClient(
            config.settings.base_url,
            config.settings.api_secret,
            timeout=config.system.control_timeout,
        )
        try:
            return await client.fetch_config(), await client.fetch_proxies()
        finally:
            await client.aclose()

    try:
        snapshot, proxies = asyncio.run(fetch())
    except ControlError as e:
        console.daemon_unreachable(e.user_message)
        raise SystemExit(1) from None

    console.daemon_connected(
        config.settings.base_url, snapshot.mode.value, snapshot.mixed_port, snapshot.tun_enabled
    )
    for name in sorted(n for n, g in proxies.items() if g.is_selectable):
        group = proxies[name]
        console.group_line(name, group.kind, group.selected, len(group.members))


@main.command()
@click.option("--group", "-g", default=None, help="Test every member of this group instead")
@click.pass_context
def test(ctx, group: str | None) -> None:
    """Measure latency without the dashboard.

    Without --group, runs the reachability test against the configured test
    URL. With --group, asks the daemon to measure each member of the group.
    """
    from mihomot import logging as console
    from mihomot.formatting import format_latency

    config = ctx.obj["config"]
    console.configure(config, source="cli")
    state = asyncio.run(_run_headless_test(config, group))

    if group is None:
        console.reachability_result(
            config.settings.test_url, format_latency(state.reachability), state.reachability
        )
        if state.last_error:
            console.daemon_unreachable(state.last_error)
        if not _succeeded(state.reachability):
            raise SystemExit(1)
        return

    if group not in state.proxies:
        console.daemon_unreachable(state.last_error or f"No such group: {group}")
        raise SystemExit(1)

    selected = state.proxies[group].selected
    members = state.members_of(group)
    for name in members:
        result = state.member_latency(name)
        console.member_result(name, format_latency(result), result, name == selected)
    ok = sum(1 for name in members if _succeeded(state.member_latency(name)))
    console.sweep_summary(group, ok, len(members))


def _succeeded(result) -> bool:
    from mihomot.models import Success

    return isinstance(result, Success)


async def _run_headless_test(config, group: str | None):
    """Drive the event loop until the requested test settles; return the final state."""
    from mihomot import logging as console
    from mihomot.controller import EventLoop, TestGroup
    from mihomot.formatting import is_settled

    loop = EventLoop(config)
    stop = asyncio.Event()
    submitted = False

    def on_tick(state) -> None:
        nonlocal submitted
        if group is None:
            if is_settled(state.reachability):
                stop.set()
            return
        if not state.proxies_loaded:
            if state.last_error:
                stop.set()
            return
        if not submitted:
            if group not in state.proxies:
                stop.set()
                return
            console.sweep_waiting(group, len(state.members_of(group)))
            loop.submit(TestGroup(group))
            submitted = True
            return
        if all(is_settled(state.member_latency(m)) for m in state.members_of(group)):
            stop.set()

    budget = config.settings.test_timeout_ms / 1000 + 2 * config.system.control_timeout
    try:
        await asyncio.wait_for(loop.run(stop, on_tick, stream_traffic=False), timeout=budget)
    except TimeoutError:
        console.warn(f"Gave up after {budget:.0f}s")
    finally:
        await loop.aclose()
    return loop.state


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from mihomot.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[daemon]")
    click.echo(f"  base_url = {cfg.settings.base_url}")
    click.echo(f"  api_secret = {'*' * len(cfg.settings.api_secret)}")
    click.echo(f"  test_url = {cfg.settings.test_url}")
    click.echo(f"  test_timeout_ms = {cfg.settings.test_timeout_ms}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  control_timeout = {cfg.system.control_timeout}")
    click.echo(f"  tick_interval = {cfg.system.tick_interval}")
    click.echo()
    click.echo("[latency]")
    click.echo(f"  good_below_ms = {cfg.latency.good_below_ms}")
    click.echo(f"  warn_below_ms = {cfg.latency.warn_below_ms}")
    click.echo()
    click.echo("[tui]")
    click.echo(f"  traffic_history_size = {cfg.tui.traffic_history_size}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from mihomot import logging as console
    from mihomot.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        console.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from mihomot.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


@config.command("path")
def config_path() -> None:
    """Print the config file location."""
    from mihomot.config import Config

    click.echo(str(Config().config_path))
