from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from kinopio_api import DEFAULT_WEB_URL, Card, FetchFailure, Space, browse_url


class View(Enum):
    SPACE_LIST = "spaces"
    SPACE_DETAIL = "space"
    CARD_LIST = "cards"
    CARD_DETAIL = "card"


LIST_VIEWS = {View.SPACE_LIST, View.CARD_LIST}
DETAIL_VIEWS = {View.SPACE_DETAIL, View.CARD_LIST, View.CARD_DETAIL}

ROW_SPACE = "space"
ROW_CATEGORY = "category"
ROW_CARD = "card"

CATEGORY_CARDS = "cards"
CATEGORY_BOXES = "boxes"

DEFAULT_PAGE_SIZE = 10

QUIT_KEYS = {"q", "QUIT"}
DOWN_KEYS = {"j", "DOWN"}
UP_KEYS = {"k", "UP"}
FIRST_KEYS = {"g", "HOME"}
LAST_KEYS = {"G", "END"}
SELECT_KEYS = {"ENTER", "l", "RIGHT"}
BACK_KEYS = {"ESC", "BACKSPACE", "h", "LEFT"}
RELOAD_KEYS = {"r"}
FILTER_KEYS = {"/"}


@dataclass(frozen=True)
class Row:
    kind: str
    primary: str
    secondary: str
    target: Any

    @property
    def label(self) -> str:
        if self.kind == ROW_CARD:
            return f"{self.primary} {self.secondary}"
        return f"{self.primary} — {self.secondary}"


@dataclass(frozen=True)
class NavigationState:
    view: View = View.SPACE_LIST
    spaces: tuple[Space, ...] = field(default_factory=tuple)
    selected_space: Space | None = None
    selected_card: Card | None = None
    cursor: int = 0
    loading: bool = False
    last_error: FetchFailure | None = None
    filter_text: str = ""
    filtering: bool = False


# events


@dataclass(frozen=True)
class KeyPressed:
    key: str


@dataclass(frozen=True)
class SpacesLoaded:
    spaces: tuple[Space, ...]


@dataclass(frozen=True)
class SpaceLoaded:
    space: Space


@dataclass(frozen=True)
class FetchFailed:
    error: FetchFailure


@dataclass(frozen=True)
class Resized:
    width: int
    height: int


Event = Union[KeyPressed, SpacesLoaded, SpaceLoaded, FetchFailed, Resized]


# effects


@dataclass(frozen=True)
class FetchSpaces:
    pass


@dataclass(frozen=True)
class FetchSpaceDetail:
    space_id: str


@dataclass(frozen=True)
class Quit:
    pass


Effect = Union[FetchSpaces, FetchSpaceDetail, Quit]


def initial_state() -> tuple[NavigationState, list[Effect]]:
    return NavigationState(loading=True), [FetchSpaces()]


def format_count(count: int, noun: str) -> str:
    return f"{count} {noun}"


def format_coordinates(card: Card) -> str:
    return f"({card.x}, {card.y})"


def _matches_filter(row: Row, filter_text: str) -> bool:
    query = filter_text.strip().lower()
    if not query:
        return True
    return query in row.primary.lower()


def project_rows(state: NavigationState, web_url: str = DEFAULT_WEB_URL) -> list[Row]:
    if state.view == View.SPACE_LIST:
        rows = [
            Row(ROW_SPACE, space.name, browse_url(space, web_url), space)
            for space in state.spaces
        ]
    elif state.view == View.SPACE_DETAIL:
        space = state.selected_space
        if space is None:
            return []
        return [
            Row(ROW_CATEGORY, "Cards", format_count(len(space.cards), "cards"), CATEGORY_CARDS),
            Row(ROW_CATEGORY, "Boxes", format_count(len(space.boxes), "boxes"), CATEGORY_BOXES),
        ]
    elif state.view == View.CARD_LIST:
        cards = state.selected_space.cards if state.selected_space else ()
        rows = [Row(ROW_CARD, card.name, format_coordinates(card), card) for card in cards]
    else:
        return []
    return [row for row in rows if _matches_filter(row, state.filter_text)]


def card_detail_fields(card: Card) -> list[tuple[str, str]]:
    return [
        ("name", card.name),
        ("x", str(card.x)),
        ("y", str(card.y)),
        ("backgroundColor", card.background_color),
    ]


def breadcrumb(state: NavigationState) -> list[str]:
    parts = ["Spaces"]
    if state.view in DETAIL_VIEWS and state.selected_space is not None:
        parts.append(state.selected_space.name or state.selected_space.id)
    if state.view in {View.CARD_LIST, View.CARD_DETAIL}:
        parts.append("Cards")
    if state.view == View.CARD_DETAIL and state.selected_card is not None:
        parts.append(state.selected_card.name or state.selected_card.id)
    return parts


def clamp_cursor(index: int, rows: list[Row]) -> int:
    if not rows:
        return 0
    if index < 0:
        return 0
    if index >= len(rows):
        return len(rows) - 1
    return index


def _clamped(state: NavigationState) -> NavigationState:
    cursor = clamp_cursor(state.cursor, project_rows(state))
    if cursor == state.cursor:
        return state
    return replace(state, cursor=cursor)


def _cursor_on(state: NavigationState, target: Any) -> NavigationState:
    rows = project_rows(state)
    for index, row in enumerate(rows):
        if _same_entity(row.target, target):
            return replace(state, cursor=index)
    return replace(state, cursor=clamp_cursor(state.cursor, rows))


def _same_entity(left: Any, right: Any) -> bool:
    if isinstance(left, (Space, Card)) and isinstance(right, type(left)):
        return left.id == right.id
    return left == right


def _move(state: NavigationState, delta: int) -> NavigationState:
    rows = project_rows(state)
    return replace(state, cursor=clamp_cursor(state.cursor + delta, rows))


def _enter_view(state: NavigationState, view: View, **changes: Any) -> NavigationState:
    return replace(state, view=view, cursor=0, filter_text="", filtering=False, **changes)


def _select(state: NavigationState) -> tuple[NavigationState, list[Effect]]:
    rows = project_rows(state)
    if not rows or not 0 <= state.cursor < len(rows):
        return state, []
    row = rows[state.cursor]

    if state.view == View.SPACE_LIST:
        if state.loading:
            return state, []
        space: Space = row.target
        next_state = _enter_view(
            state,
            View.SPACE_DETAIL,
            selected_space=space,
            selected_card=None,
            loading=True,
            last_error=None,
        )
        return next_state, [FetchSpaceDetail(space.id)]

    if state.view == View.SPACE_DETAIL:
        if row.target == CATEGORY_CARDS:
            return _enter_view(state, View.CARD_LIST), []
        return state, []

    if state.view == View.CARD_LIST:
        return _enter_view(state, View.CARD_DETAIL, selected_card=row.target), []

    return state, []


def _back(state: NavigationState) -> tuple[NavigationState, list[Effect]]:
    if state.view == View.SPACE_DETAIL:
        previous = state.selected_space
        next_state = _enter_view(
            state, View.SPACE_LIST, selected_space=None, selected_card=None
        )
        return _cursor_on(next_state, previous), []
    if state.view == View.CARD_LIST:
        return _enter_view(state, View.SPACE_DETAIL), []
    if state.view == View.CARD_DETAIL:
        previous = state.selected_card
        next_state = _enter_view(state, View.CARD_LIST, selected_card=None)
        return _cursor_on(next_state, previous), []
    return state, []


def _reload(state: NavigationState) -> tuple[NavigationState, list[Effect]]:
    if state.loading:
        return state, []
    if state.view == View.SPACE_LIST:
        return replace(state, loading=True, last_error=None), [FetchSpaces()]
    if state.selected_space is None:
        return state, []
    next_state = replace(state, loading=True, last_error=None)
    return next_state, [FetchSpaceDetail(state.selected_space.id)]


def _highlighted_target(state: NavigationState) -> Any:
    rows = project_rows(state)
    if not rows:
        return None
    return rows[clamp_cursor(state.cursor, rows)].target


def _handle_filter_key(state: NavigationState, key: str) -> NavigationState:
    if key == "ESC":
        target = _highlighted_target(state)
        return _cursor_on(replace(state, filter_text="", filtering=False), target)
    if key == "ENTER":
        return replace(state, filtering=False)
    if key == "BACKSPACE":
        return _clamped(replace(state, filter_text=state.filter_text[:-1]))
    if key in {"UP", "DOWN"}:
        return _move(state, 1 if key == "DOWN" else -1)
    if len(key) == 1 and key.isprintable():
        return replace(state, filter_text=state.filter_text + key, cursor=0)
    return state


def _handle_key(
    state: NavigationState, key: str, page_size: int
) -> tuple[NavigationState, list[Effect]]:
    if key == "QUIT":
        return state, [Quit()]
    if state.filtering:
        return _handle_filter_key(state, key), []
    if key in QUIT_KEYS:
        return state, [Quit()]
    if key in DOWN_KEYS:
        return _move(state, 1), []
    if key in UP_KEYS:
        return _move(state, -1), []
    if key == "PGDN":
        return _move(state, max(1, page_size)), []
    if key == "PGUP":
        return _move(state, -max(1, page_size)), []
    if key in FIRST_KEYS:
        return _clamped(replace(state, cursor=0)), []
    if key in LAST_KEYS:
        rows = project_rows(state)
        return replace(state, cursor=clamp_cursor(len(rows) - 1, rows)), []
    if key in FILTER_KEYS:
        if state.view in LIST_VIEWS:
            return replace(state, filtering=True), []
        return state, []
    if key in RELOAD_KEYS:
        return _reload(state)
    if key in SELECT_KEYS:
        return _select(state)
    if key == "ESC" and state.filter_text:
        return _handle_filter_key(state, "ESC"), []
    if key in BACK_KEYS:
        return _back(state)
    return state, []


def _apply_space_detail(state: NavigationState, space: Space) -> NavigationState:
    next_state = replace(state, loading=False)
    current = state.selected_space
    if state.view not in DETAIL_VIEWS or current is None or current.id != space.id:
        return next_state
    selected_card = state.selected_card
    if selected_card is not None:
        selected_card = next(
            (card for card in space.cards if card.id == selected_card.id),
            selected_card,
        )
    return _clamped(replace(next_state, selected_space=space, selected_card=selected_card))


def dispatch(
    state: NavigationState,
    event: Event,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[NavigationState, list[Effect]]:
    if isinstance(event, KeyPressed):
        return _handle_key(state, event.key, page_size)
    if isinstance(event, SpacesLoaded):
        return _clamped(replace(state, spaces=tuple(event.spaces), loading=False)), []
    if isinstance(event, SpaceLoaded):
        return _apply_space_detail(state, event.space), []
    if isinstance(event, FetchFailed):
        return replace(state, last_error=event.error, loading=False), []
    if isinstance(event, Resized):
        return state, []
    raise TypeError(f"Unknown event: {event!r}")
