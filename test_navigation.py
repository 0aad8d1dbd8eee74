import pytest

from kinopio_api import Box, Card, FetchFailure, Space
from navigation import (
    FetchFailed,
    FetchSpaceDetail,
    FetchSpaces,
    KeyPressed,
    NavigationState,
    Quit,
    Resized,
    SpaceLoaded,
    SpacesLoaded,
    View,
    breadcrumb,
    card_detail_fields,
    dispatch,
    initial_state,
    project_rows,
)


ALPHA = Space(id="alpha-id", name="Alpha", url="alpha-space")
BETA = Space(id="beta-id", name="Beta", url="beta-space")
NOTE = Card(id="c1", name="Note", x=10, y=20)
TODO = Card(id="c2", name="Todo", x=-5, y=7, background_color="#ff0000")
BETA_DETAIL = Space(id="beta-id", name="Beta", url="beta-space", cards=(NOTE,))
GAMMA_DETAIL = Space(
    id="gamma-id",
    name="Gamma",
    cards=(NOTE, TODO),
    boxes=(Box(id="b1", name="Inbox"),),
)


def press(state, *keys, page_size=10):
    effects = []
    for key in keys:
        state, new_effects = dispatch(state, KeyPressed(key), page_size=page_size)
        effects.extend(new_effects)
    return state, effects


def loaded_state(*spaces):
    state, _ = initial_state()
    state, _ = dispatch(state, SpacesLoaded(spaces or (ALPHA, BETA)))
    return state


def in_space_detail(detail=BETA_DETAIL, listed=(ALPHA, BETA)):
    state = loaded_state(*listed)
    index = [space.id for space in listed].index(detail.id)
    state, _ = press(state, *(["j"] * index), "ENTER")
    state, _ = dispatch(state, SpaceLoaded(detail))
    return state


def labels(state):
    return [row.label for row in project_rows(state)]


def test_initial_state_requests_space_list():
    state, effects = initial_state()

    assert state.view == View.SPACE_LIST
    assert state.loading is True
    assert state.spaces == ()
    assert state.selected_space is None
    assert state.selected_card is None
    assert effects == [FetchSpaces()]


def test_space_list_shows_loaded_spaces_in_order():
    state = loaded_state()

    rows = project_rows(state)
    assert [row.primary for row in rows] == ["Alpha", "Beta"]
    assert rows[1].secondary == "https://kinopio.club/beta-space"
    assert state.cursor == 0
    assert state.loading is False


def test_selecting_space_requests_its_detail():
    state = loaded_state()

    state, effects = press(state, "j", "ENTER")

    assert state.view == View.SPACE_DETAIL
    assert state.selected_space == BETA
    assert state.loading is True
    assert effects == [FetchSpaceDetail("beta-id")]


def test_space_detail_rows_count_cards_and_boxes():
    state = in_space_detail()

    assert state.loading is False
    assert state.selected_space == BETA_DETAIL
    assert labels(state) == ["Cards — 1 cards", "Boxes — 0 boxes"]


def test_drill_down_to_card_detail():
    state = in_space_detail()

    state, effects = press(state, "ENTER")
    assert effects == []
    assert state.view == View.CARD_LIST
    assert labels(state) == ["Note (10, 20)"]

    state, effects = press(state, "ENTER")
    assert effects == []
    assert state.view == View.CARD_DETAIL
    assert state.selected_card == NOTE
    assert project_rows(state) == []
    assert card_detail_fields(state.selected_card) == [
        ("name", "Note"),
        ("x", "10"),
        ("y", "20"),
        ("backgroundColor", "default"),
    ]


def test_selected_card_matches_row_under_cursor():
    state = in_space_detail(GAMMA_DETAIL, listed=(ALPHA, GAMMA_DETAIL))

    state, _ = press(state, "ENTER", "j", "ENTER")

    assert state.selected_card == TODO


def test_boxes_row_has_no_drill_down():
    state = in_space_detail(GAMMA_DETAIL, listed=(ALPHA, GAMMA_DETAIL))

    next_state, effects = press(state, "j", "ENTER")

    assert next_state.view == View.SPACE_DETAIL
    assert next_state.cursor == 1
    assert effects == []


def test_fetch_failure_keeps_view_and_records_error():
    state = loaded_state()
    state, _ = press(state, "ENTER")
    error = FetchFailure("Failed to fetch space alpha-id: 404 Not Found", status_code=404)

    state, effects = dispatch(state, FetchFailed(error))

    assert effects == []
    assert state.view == View.SPACE_DETAIL
    assert state.last_error.status_code == 404
    assert state.loading is False


def test_fetch_failure_on_space_list_does_not_advance():
    state, _ = initial_state()

    state, _ = dispatch(state, FetchFailed(FetchFailure("HTTP 404", status_code=404)))
    state, effects = press(state, "ENTER")

    assert state.view == View.SPACE_LIST
    assert state.last_error is not None
    assert effects == []


def test_error_persists_until_next_fetch():
    state = loaded_state()
    state, _ = dispatch(state, FetchFailed(FetchFailure("boom")))

    state, _ = press(state, "j", "k")
    assert state.last_error == FetchFailure("boom")

    state, effects = press(state, "ENTER")
    assert state.last_error is None
    assert effects == [FetchSpaceDetail("alpha-id")]


@pytest.mark.parametrize("key", ["q", "QUIT"])
@pytest.mark.parametrize("loading", [True, False])
@pytest.mark.parametrize("with_error", [True, False])
def test_quit_from_any_view(key, loading, with_error):
    error = FetchFailure("boom") if with_error else None
    for view in View:
        state = NavigationState(
            view=view,
            spaces=(ALPHA, BETA_DETAIL),
            selected_space=BETA_DETAIL if view != View.SPACE_LIST else None,
            selected_card=NOTE if view == View.CARD_DETAIL else None,
            loading=loading,
            last_error=error,
        )
        _, effects = press(state, key)
        assert effects == [Quit()]


def test_back_from_space_detail_restores_list_without_refetch():
    state = in_space_detail()

    state, effects = press(state, "ESC")

    assert effects == []
    assert state.view == View.SPACE_LIST
    assert state.selected_space is None
    assert state.cursor == 1
    assert [row.primary for row in project_rows(state)] == ["Alpha", "Beta"]


def test_back_walks_up_each_level():
    state = in_space_detail(GAMMA_DETAIL, listed=(ALPHA, GAMMA_DETAIL))
    state, _ = press(state, "ENTER", "j", "ENTER")
    assert state.view == View.CARD_DETAIL

    state, _ = press(state, "h")
    assert state.view == View.CARD_LIST
    assert state.selected_card is None
    assert state.cursor == 1

    state, _ = press(state, "BACKSPACE")
    assert state.view == View.SPACE_DETAIL
    assert state.selected_space == GAMMA_DETAIL
    assert state.cursor == 0

    state, _ = press(state, "LEFT")
    assert state.view == View.SPACE_LIST
    assert state.cursor == 1


def test_back_on_space_list_is_noop():
    state = loaded_state()
    state, _ = press(state, "j")

    next_state, effects = press(state, "ESC", "ESC", "h")

    assert next_state == state
    assert effects == []


def test_back_is_allowed_while_loading():
    state = loaded_state()
    state, _ = press(state, "ENTER")
    assert state.loading is True

    state, effects = press(state, "ESC")

    assert state.view == View.SPACE_LIST
    assert state.loading is True
    assert effects == []


def test_no_second_fetch_while_loading():
    state = loaded_state()
    state, _ = press(state, "ENTER", "ESC")

    state, effects = press(state, "j", "ENTER", "r")

    assert state.view == View.SPACE_LIST
    assert effects == []


def test_stale_detail_response_is_dropped_after_leaving():
    state = loaded_state()
    state, _ = press(state, "j", "ENTER", "ESC")

    state, _ = dispatch(state, SpaceLoaded(BETA_DETAIL))

    assert state.view == View.SPACE_LIST
    assert state.loading is False
    assert state.selected_space is None


def test_detail_for_other_space_only_clears_loading():
    state = loaded_state()
    state, _ = press(state, "ENTER")

    state, _ = dispatch(state, SpaceLoaded(BETA_DETAIL))

    assert state.selected_space == ALPHA
    assert state.loading is False


def test_select_on_empty_list_is_noop():
    state = loaded_state(ALPHA)
    state, _ = dispatch(state, SpacesLoaded(()))

    next_state, effects = press(state, "ENTER")

    assert next_state == state
    assert effects == []


def test_select_on_empty_card_list_is_noop():
    state = in_space_detail(BETA, listed=(ALPHA, BETA))
    state, _ = press(state, "ENTER")
    assert state.view == View.CARD_LIST

    next_state, effects = press(state, "ENTER")

    assert next_state.view == View.CARD_LIST
    assert effects == []


def test_cursor_movement_is_clamped():
    spaces = tuple(Space(id=f"s{i}", name=f"Space {i}") for i in range(25))
    state = loaded_state(*spaces)

    state, _ = press(state, "k")
    assert state.cursor == 0
    state, _ = press(state, "PGDN", page_size=10)
    assert state.cursor == 10
    state, _ = press(state, "G")
    assert state.cursor == 24
    state, _ = press(state, "DOWN")
    assert state.cursor == 24
    state, _ = press(state, "PGUP", page_size=10)
    assert state.cursor == 14
    state, _ = press(state, "HOME")
    assert state.cursor == 0


def test_cursor_clamped_when_list_shrinks():
    state = loaded_state()
    state, _ = press(state, "j")

    state, _ = press(state, "r")
    state, _ = dispatch(state, SpacesLoaded((ALPHA,)))

    assert state.cursor == 0


def test_reload_refetches_current_view():
    state = in_space_detail()
    state, _ = dispatch(state, FetchFailed(FetchFailure("boom")))

    state, effects = press(state, "r")

    assert state.loading is True
    assert state.last_error is None
    assert effects == [FetchSpaceDetail("beta-id")]


def test_refreshed_detail_updates_selected_card():
    state = in_space_detail()
    state, _ = press(state, "ENTER", "ENTER", "r")
    moved = Card(id="c1", name="Note", x=50, y=60)

    state, _ = dispatch(state, SpaceLoaded(Space(id="beta-id", name="Beta", cards=(moved,))))

    assert state.view == View.CARD_DETAIL
    assert state.selected_card == moved


def test_filter_narrows_rows_and_selects_through_them():
    state = loaded_state()

    state, effects = press(state, "/", "b", "e")
    assert state.filtering is True
    assert [row.primary for row in project_rows(state)] == ["Beta"]

    state, effects = press(state, "ENTER")
    assert state.filtering is False
    assert state.filter_text == "be"

    state, effects = press(state, "ENTER")
    assert state.selected_space == BETA
    assert state.filter_text == ""
    assert effects == [FetchSpaceDetail("beta-id")]


def test_quit_key_is_text_while_filtering():
    state = loaded_state()

    state, effects = press(state, "/", "q")
    assert effects == []
    assert state.filter_text == "q"

    _, effects = press(state, "QUIT")
    assert effects == [Quit()]


def test_escape_clears_filter_and_keeps_highlight():
    state = loaded_state()
    state, _ = press(state, "/", "b", "ENTER")

    state, effects = press(state, "ESC")

    assert effects == []
    assert state.view == View.SPACE_LIST
    assert state.filter_text == ""
    assert state.cursor == 1


def test_filter_without_matches_shows_no_rows():
    state = loaded_state()

    state, _ = press(state, "/", "z", "BACKSPACE", "z", "z")

    assert project_rows(state) == []
    assert state.cursor == 0


def test_filter_is_ignored_on_space_detail():
    state = in_space_detail()

    next_state, _ = press(state, "/")

    assert next_state.filtering is False


def test_resize_leaves_state_untouched():
    state = in_space_detail()

    next_state, effects = dispatch(state, Resized(120, 40))

    assert next_state is state
    assert effects == []


def test_breadcrumb_follows_selection():
    state = in_space_detail()
    assert breadcrumb(state) == ["Spaces", "Beta"]

    state, _ = press(state, "ENTER", "ENTER")
    assert breadcrumb(state) == ["Spaces", "Beta", "Cards", "Note"]


def test_unknown_event_is_rejected():
    state, _ = initial_state()
    with pytest.raises(TypeError):
        dispatch(state, object())
