from __future__ import annotations

import argparse
import codecs
import os
import queue
import select
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping
import termios
import tty

from dotenv import load_dotenv
from rich.color import Color, ColorParseError
from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text

from kinopio_api import (
    DEFAULT_API_URL,
    DEFAULT_BACKGROUND_COLOR,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_WEB_URL,
    FetchFailure,
    SpaceRepository,
)
from navigation import (
    Effect,
    Event,
    FetchFailed,
    FetchSpaceDetail,
    FetchSpaces,
    KeyPressed,
    NavigationState,
    Quit,
    Resized,
    Row,
    SpaceLoaded,
    SpacesLoaded,
    View,
    breadcrumb,
    card_detail_fields,
    clamp_cursor,
    dispatch,
    initial_state,
    project_rows,
)

API_KEY_ENV = "KINOPIO_API_KEY"
API_URL_ENV = "KINOPIO_API_URL"
WEB_URL_ENV = "KINOPIO_WEB_URL"
TIMEOUT_ENV = "KINOPIO_TIMEOUT_SECONDS"

SPINNER = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
ACTIVITY_LOG_MAX = 12
ERROR_LINES_MAX = 6
POLL_SECONDS = 0.1
VIEW_DEPTH = {view: depth for depth, view in enumerate(View)}


class MissingCredential(Exception):
    pass


@dataclass
class AppConfig:
    api_key: str
    api_url: str
    web_url: str
    timeout_seconds: float


@dataclass
class RuntimeState:
    nav: NavigationState
    activity_log: list[str]
    show_help: bool
    terminal_width: int
    terminal_height: int
    spinner_index: int = 0


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 1:
        return value[:width]
    return f"{value[: width - 1]}…"


def load_config(environ: Mapping[str, str]) -> AppConfig:
    api_key = (environ.get(API_KEY_ENV) or "").strip()
    if not api_key:
        raise MissingCredential(f"API key is not set. Export {API_KEY_ENV} and try again.")

    raw_timeout = (environ.get(TIMEOUT_ENV) or "").strip()
    if raw_timeout:
        try:
            timeout_seconds = float(raw_timeout)
        except ValueError:
            raise ValueError(f"{TIMEOUT_ENV} must be a number, got '{raw_timeout}'") from None
    else:
        timeout_seconds = DEFAULT_TIMEOUT_SECONDS
    if timeout_seconds < 1:
        raise ValueError(f"{TIMEOUT_ENV} must be >= 1")

    return AppConfig(
        api_key=api_key,
        api_url=(environ.get(API_URL_ENV) or "").strip() or DEFAULT_API_URL,
        web_url=(environ.get(WEB_URL_ENV) or "").strip() or DEFAULT_WEB_URL,
        timeout_seconds=timeout_seconds,
    )


def parse_args(argv: list[str], environ: Mapping[str, str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        description=(
            "Browse your Kinopio spaces, cards and boxes in the terminal. "
            f"Requires {API_KEY_ENV} in the environment or a .env file."
        )
    )
    parser.parse_args(argv)
    return load_config(environ)


def append_activity_log(runtime_state: RuntimeState, message: str, max_entries: int = ACTIVITY_LOG_MAX) -> None:
    timestamp = now_utc().strftime("%H:%M:%S")
    runtime_state.activity_log.append(f"[{timestamp}] {message}")
    if len(runtime_state.activity_log) > max_entries:
        runtime_state.activity_log = runtime_state.activity_log[-max_entries:]


def error_banner_height(error: FetchFailure | None) -> int:
    if error is None:
        return 0
    lines = min(ERROR_LINES_MAX, len(error.message.splitlines()) or 1)
    # borders plus the instructions line
    return lines + 3


def list_capacity(terminal_height: int, error: FetchFailure | None = None) -> int:
    usable_height = max(9, terminal_height - 4)
    # status and footer lines plus the list panel borders
    chrome = 2 + 2
    return max(1, usable_height - chrome - error_banner_height(error))


def _line_input_worker(
    event_queue: queue.Queue[tuple[str, Any]],
    stop_event: threading.Event,
) -> None:
    while not stop_event.is_set():
        try:
            line = sys.stdin.readline()
        except Exception:
            if stop_event.wait(0.2):
                break
            continue
        if line == "":
            if stop_event.wait(0.2):
                break
            continue
        key = line.strip()
        event_queue.put(("key", key or "ENTER"))


ESCAPE_SEQUENCES = {
    "[A": "UP",
    "[B": "DOWN",
    "[C": "RIGHT",
    "[D": "LEFT",
    "[H": "HOME",
    "[F": "END",
    "[1~": "HOME",
    "[4~": "END",
    "[5~": "PGUP",
    "[6~": "PGDN",
    "OA": "UP",
    "OB": "DOWN",
    "OC": "RIGHT",
    "OD": "LEFT",
    "OH": "HOME",
    "OF": "END",
}


def decode_escape_sequence(sequence: str) -> str:
    return ESCAPE_SEQUENCES.get(sequence, "ESC")


CONTROL_KEYS = {
    "\r": "ENTER",
    "\n": "ENTER",
    "\x7f": "BACKSPACE",
    "\b": "BACKSPACE",
    "\x03": "QUIT",
}
CONTINUATION_WAIT_SECONDS = 0.05
ESCAPE_WAIT_SECONDS = 0.01


def new_key_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="ignore")


def read_char(fd: int, decoder: codecs.IncrementalDecoder) -> str:
    while True:
        data = os.read(fd, 1)
        if not data:
            decoder.reset()
            return ""
        char = decoder.decode(data)
        pending, _ = decoder.getstate()
        if char or not pending:
            return char
        # a multi-byte character arrives in pieces; give up on a stray lead byte
        if not select.select([fd], [], [], CONTINUATION_WAIT_SECONDS)[0]:
            decoder.reset()
            return ""


def read_escape_sequence(fd: int, decoder: codecs.IncrementalDecoder) -> str:
    sequence = ""
    while len(sequence) < 6 and select.select([fd], [], [], ESCAPE_WAIT_SECONDS)[0]:
        char = read_char(fd, decoder)
        if not char:
            break
        sequence += char
        if sequence.endswith("~") or (sequence[-1:].isalpha() and sequence != "O"):
            break
    return sequence


def read_key(fd: int, decoder: codecs.IncrementalDecoder) -> str:
    char = read_char(fd, decoder)
    if char == "\x1b":
        return decode_escape_sequence(read_escape_sequence(fd, decoder))
    return CONTROL_KEYS.get(char, char)


def key_input_worker(
    event_queue: queue.Queue[tuple[str, Any]],
    stop_event: threading.Event,
) -> None:
    try:
        fd = sys.stdin.fileno()
        raw_terminal = os.isatty(fd)
        old_settings = termios.tcgetattr(fd) if raw_terminal else None
    except (OSError, ValueError, termios.error):
        raw_terminal = False
    if not raw_terminal:
        _line_input_worker(event_queue, stop_event)
        return

    decoder = new_key_decoder()
    tty.setcbreak(fd)
    try:
        while not stop_event.is_set():
            if not select.select([fd], [], [], 0.2)[0]:
                continue
            key = read_key(fd, decoder)
            if key:
                event_queue.put(("key", key))
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def perform_fetch(repository: SpaceRepository, request: Effect) -> Event:
    try:
        if isinstance(request, FetchSpaces):
            return SpacesLoaded(tuple(repository.list_spaces()))
        if isinstance(request, FetchSpaceDetail):
            return SpaceLoaded(repository.get_space(request.space_id))
    except FetchFailure as exc:
        return FetchFailed(exc)
    except Exception as exc:
        return FetchFailed(FetchFailure(f"Unexpected error: {exc}"))
    raise TypeError(f"Not a fetch request: {request!r}")


def fetch_worker(
    repository: SpaceRepository,
    request_queue: queue.Queue[Effect],
    event_queue: queue.Queue[tuple[str, Any]],
    stop_event: threading.Event,
) -> None:
    while not stop_event.is_set():
        try:
            request = request_queue.get(timeout=0.25)
        except queue.Empty:
            continue
        event = perform_fetch(repository, request)
        if not stop_event.is_set():
            event_queue.put(("event", event))


def describe_request(request: Effect, config: AppConfig) -> str:
    base = config.api_url.strip().rstrip("/")
    if isinstance(request, FetchSpaces):
        return f"GET {base}/user/spaces"
    if isinstance(request, FetchSpaceDetail):
        return f"GET {base}/space/{request.space_id}"
    return ""


def describe_event(event: Event) -> str:
    if isinstance(event, SpacesLoaded):
        return f"Loaded {len(event.spaces)} spaces"
    if isinstance(event, SpaceLoaded):
        space = event.space
        return (
            f"Loaded space {space.name or space.id} "
            f"({len(space.cards)} cards, {len(space.boxes)} boxes)"
        )
    if isinstance(event, FetchFailed):
        first_line = event.error.message.splitlines()[0] if event.error.message else "unknown error"
        return f"Fetch failed: {first_line}"
    return ""


def describe_navigation(before: NavigationState, after: NavigationState) -> str:
    if before.view == after.view:
        return ""
    trail = " › ".join(breadcrumb(after))
    if VIEW_DEPTH[after.view] < VIEW_DEPTH[before.view]:
        return f"Back to {trail}"
    return f"Opened {trail}"


def run_effects(
    runtime_state: RuntimeState,
    effects: list[Effect],
    request_queue: queue.Queue[Effect],
    config: AppConfig,
) -> bool:
    exit_requested = False
    for effect in effects:
        if isinstance(effect, Quit):
            exit_requested = True
            continue
        append_activity_log(runtime_state, describe_request(effect, config))
        request_queue.put(effect)
    return exit_requested


def handle_event(
    runtime_state: RuntimeState,
    event: Event,
    request_queue: queue.Queue[Effect],
    config: AppConfig,
) -> bool:
    nav = runtime_state.nav
    if isinstance(event, KeyPressed) and event.key == "?" and not nav.filtering:
        runtime_state.show_help = not runtime_state.show_help
        return False
    if isinstance(event, Resized):
        runtime_state.terminal_width = event.width
        runtime_state.terminal_height = event.height

    page_size = list_capacity(runtime_state.terminal_height, nav.last_error)
    runtime_state.nav, effects = dispatch(nav, event, page_size=page_size)

    for message in (describe_event(event), describe_navigation(nav, runtime_state.nav)):
        if message:
            append_activity_log(runtime_state, message)
    return run_effects(runtime_state, effects, request_queue, config)


def color_swatch(color: str) -> Text:
    if not color or color == DEFAULT_BACKGROUND_COLOR:
        return Text(color or DEFAULT_BACKGROUND_COLOR, style="dim")
    try:
        parsed = Color.parse(color)
    except ColorParseError:
        return Text(color)
    swatch = Text("  ", style=Style(bgcolor=parsed))
    swatch.append(f" {color}")
    return swatch


def visible_window(cursor: int, total: int, max_rows: int) -> tuple[int, int]:
    if total <= max_rows:
        return 0, total
    start = max(0, min(cursor - max_rows // 2, total - max_rows))
    return start, start + max_rows


def empty_list_message(nav: NavigationState) -> str:
    if nav.filter_text:
        return f'No matches for "{nav.filter_text}"'
    if nav.loading:
        return "Loading spaces..." if nav.view == View.SPACE_LIST else "Loading space..."
    if nav.view == View.SPACE_LIST:
        return "No spaces"
    return "No cards"


def render_list_table(
    rows: list[Row],
    cursor: int,
    max_rows: int,
    empty_message: str,
) -> Table:
    table = Table(expand=True, box=None, show_edge=False, pad_edge=False, show_header=False)
    table.add_column("Sel", width=2)
    table.add_column("Item", no_wrap=True, overflow="ellipsis", ratio=1)

    selected = clamp_cursor(cursor, rows)
    start, end = visible_window(selected, len(rows), max(1, max_rows))
    for index in range(start, end):
        row = rows[index]
        is_selected = index == selected
        table.add_row(
            ">" if is_selected else "",
            row.label,
            style="bold bright_white on rgb(28,28,28)" if is_selected else "",
        )

    if not rows:
        table.add_row("", empty_message)
    return table


def render_card_detail(nav: NavigationState) -> Table:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold cyan", justify="right")
    grid.add_column()
    card = nav.selected_card
    if card is None:
        grid.add_row("-", "No card selected")
        return grid
    for key, value in card_detail_fields(card):
        if key == "backgroundColor":
            grid.add_row(key, color_swatch(value))
        else:
            grid.add_row(key, value)
    return grid


def render_error_panel(error: FetchFailure) -> Panel:
    lines = error.message.splitlines() or ["Unknown error"]
    shown = lines[:ERROR_LINES_MAX]
    if len(lines) > ERROR_LINES_MAX:
        shown[-1] = f"… (+{len(lines) - ERROR_LINES_MAX + 1} more lines)"
    body = Text("\n".join(shown), style="red")
    hint = Text("Press q to quit, r to retry, esc to go back.", style="dim")
    title = f"Error (HTTP {error.status_code})" if error.status_code else "Error"
    return Panel(Group(body, hint), title=title, border_style="red")


def render_help_panel() -> Panel:
    body = (
        "Hotkeys:\n"
        "- j / k / Up / Down : move\n"
        "- PgUp / PgDn : move one page\n"
        "- g / G / Home / End : first / last row\n"
        "- Enter / l / Right : open\n"
        "- Esc / h / Left / Backspace : back\n"
        "- / : filter the list (Enter keeps, Esc clears)\n"
        "- r : reload the current view\n"
        "- ? : toggle this help\n"
        "- q / Ctrl+C : quit"
    )
    return Panel(body, title="Help", border_style="blue")


def render_activity_panel(activity_log: list[str], max_lines: int) -> Panel:
    if not activity_log:
        body = "No activity yet."
    else:
        body = "\n".join(activity_log[-max(1, max_lines) :])
    return Panel(body, title="Activity", border_style="magenta")


def render_status_text(nav: NavigationState, spinner_index: int, terminal_width: int) -> Text:
    max_chars = max(40, terminal_width - 4)
    if nav.filtering:
        text = f"Filter: /{nav.filter_text}   Enter keep | Esc clear"
        return Text(truncate(text, max_chars), style="bold magenta")
    if nav.loading:
        frame = SPINNER[spinner_index % len(SPINNER)]
        label = "Loading spaces..." if nav.view == View.SPACE_LIST else "Loading space..."
        return Text(truncate(f"{frame} {label}", max_chars), style="yellow")
    if nav.filter_text:
        return Text(truncate(f"Filter: {nav.filter_text}", max_chars), style="magenta")
    return Text("Ready", style="green")


def render_footer_text(nav: NavigationState, terminal_width: int) -> Text:
    if nav.view == View.CARD_DETAIL:
        hint = "esc back | r reload | ? help | q quit"
    elif nav.view == View.SPACE_DETAIL:
        hint = "j/k move | enter open | esc back | r reload | ? help | q quit"
    elif nav.view == View.CARD_LIST:
        hint = "j/k move | enter open | / filter | esc back | r reload | ? help | q quit"
    else:
        hint = "j/k move | enter open | / filter | r reload | ? help | q quit"
    return Text(truncate(hint, max(40, terminal_width - 4)), style="cyan")


def view_title(nav: NavigationState, rows: list[Row]) -> str:
    if nav.view == View.SPACE_LIST:
        return f"Spaces ({len(rows)})"
    if nav.view == View.SPACE_DETAIL:
        return "Space"
    if nav.view == View.CARD_LIST:
        return f"Cards ({len(rows)})"
    return "Card"


def build_screen(runtime_state: RuntimeState, config: AppConfig) -> Panel:
    nav = runtime_state.nav
    terminal_width = runtime_state.terminal_width
    terminal_height = runtime_state.terminal_height
    panel_height = max(10, terminal_height - 1)
    capacity = list_capacity(terminal_height, nav.last_error)

    rows = project_rows(nav, config.web_url)
    if nav.view == View.CARD_DETAIL:
        body: Any = render_card_detail(nav)
    else:
        body = render_list_table(rows, nav.cursor, capacity, empty_list_message(nav))
    main_panel = Panel(
        body,
        title=view_title(nav, rows),
        title_align="left",
        border_style="bright_cyan",
        padding=(0, 1),
    )

    if runtime_state.show_help:
        side_panel = render_help_panel()
    else:
        side_panel = render_activity_panel(runtime_state.activity_log, capacity)
    body_layout = Layout(name="body")
    body_layout.split_row(
        Layout(main_panel, name="main", ratio=3),
        Layout(side_panel, name="side", ratio=2),
    )

    sections = []
    if nav.last_error is not None:
        sections.append(
            Layout(
                render_error_panel(nav.last_error),
                name="error",
                size=error_banner_height(nav.last_error),
            )
        )
    sections.append(body_layout)
    sections.append(
        Layout(
            render_status_text(nav, runtime_state.spinner_index, terminal_width),
            name="status",
            size=1,
        )
    )
    sections.append(Layout(render_footer_text(nav, terminal_width), name="footer", size=1))

    root_layout = Layout(name="root")
    root_layout.split_column(*sections)
    subtitle = Text(truncate(" › ".join(breadcrumb(nav)), max(20, terminal_width - 10)))
    return Panel(
        root_layout,
        title="Kinopio",
        border_style="bright_blue",
        subtitle=subtitle,
        subtitle_align="left",
        height=panel_height,
    )


def drain_events(
    runtime_state: RuntimeState,
    event_queue: queue.Queue[tuple[str, Any]],
    request_queue: queue.Queue[Effect],
    config: AppConfig,
    timeout: float = POLL_SECONDS,
) -> bool:
    try:
        item = event_queue.get(timeout=timeout)
    except queue.Empty:
        return False
    while True:
        kind, value = item
        event = KeyPressed(value) if kind == "key" else value
        if handle_event(runtime_state, event, request_queue, config):
            return True
        try:
            item = event_queue.get_nowait()
        except queue.Empty:
            return False


def run(config: AppConfig, console: Console, repository: SpaceRepository | None = None) -> int:
    if repository is None:
        repository = SpaceRepository(
            config.api_key,
            api_url=config.api_url,
            timeout_seconds=config.timeout_seconds,
        )

    nav, effects = initial_state()
    runtime_state = RuntimeState(
        nav=nav,
        activity_log=[],
        show_help=False,
        terminal_width=console.size.width,
        terminal_height=console.size.height,
    )
    append_activity_log(runtime_state, "Press ? for help. q quits.")

    stop_event = threading.Event()
    event_queue: queue.Queue[tuple[str, Any]] = queue.Queue()
    request_queue: queue.Queue[Effect] = queue.Queue()
    run_effects(runtime_state, effects, request_queue, config)

    worker = threading.Thread(
        target=fetch_worker,
        args=(repository, request_queue, event_queue, stop_event),
        daemon=True,
    )
    worker.start()
    input_worker = threading.Thread(
        target=key_input_worker,
        args=(event_queue, stop_event),
        daemon=True,
    )
    input_worker.start()

    with Live(
        build_screen(runtime_state, config),
        console=console,
        refresh_per_second=10,
        screen=True,
        vertical_overflow="crop",
    ) as live:
        try:
            while True:
                if drain_events(runtime_state, event_queue, request_queue, config):
                    return 0

                width, height = console.size
                if (width, height) != (runtime_state.terminal_width, runtime_state.terminal_height):
                    handle_event(runtime_state, Resized(width, height), request_queue, config)

                runtime_state.spinner_index += 1
                live.update(build_screen(runtime_state, config))
        finally:
            stop_event.set()
            worker.join(timeout=2)
            input_worker.join(timeout=2)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    error_console = Console(stderr=True)
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:], os.environ)
    except MissingCredential as exc:
        error_console.print(f"[red]{escape(str(exc))}[/red]")
        return 1
    except ValueError as exc:
        error_console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        return 2

    try:
        return run(config, console)
    except KeyboardInterrupt:
        console.print("\n[bold]Stopped.[/bold]")
        return 0
    except Exception as exc:
        error_console.print(f"[red]Error running program:[/red] {escape(str(exc))}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
