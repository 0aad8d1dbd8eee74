from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import requests

DEFAULT_API_URL = "https://api.kinopio.club"
DEFAULT_WEB_URL = "https://kinopio.club"
DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_BACKGROUND_COLOR = "default"


@dataclass(frozen=True)
class Card:
    id: str
    name: str
    x: int = 0
    y: int = 0
    background_color: str = DEFAULT_BACKGROUND_COLOR


@dataclass(frozen=True)
class Box:
    id: str
    name: str


@dataclass(frozen=True)
class Space:
    id: str
    name: str
    url: str = ""
    cards: tuple[Card, ...] = field(default_factory=tuple)
    boxes: tuple[Box, ...] = field(default_factory=tuple)


class FetchFailure(Exception):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        raw_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw_body = raw_body

    def __str__(self) -> str:
        return self.message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FetchFailure):
            return NotImplemented
        return (self.message, self.status_code, self.raw_body) == (
            other.message,
            other.status_code,
            other.raw_body,
        )

    def __hash__(self) -> int:
        return hash((self.message, self.status_code, self.raw_body))


def normalize_text(raw: Any) -> str:
    if raw is None:
        return ""
    return " ".join(str(raw).split())


def browse_url(space: Space, web_url: str = DEFAULT_WEB_URL) -> str:
    slug = space.url.strip()
    if slug.startswith(("http://", "https://")):
        return slug
    base = web_url.strip().rstrip("/")
    if not slug:
        slug = space.id
    return f"{base}/{slug.lstrip('/')}"


def _require_mapping(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise FetchFailure(f"Unexpected response shape: {what} is not an object")
    return payload


def _require_id(payload: dict[str, Any], what: str) -> str:
    raw_id = payload.get("id")
    if raw_id is None or str(raw_id).strip() == "":
        raise FetchFailure(f"Unexpected response shape: {what} without id")
    return str(raw_id)


def _coordinate(raw: Any, axis: str, card_id: str) -> int:
    if raw is None or raw == "":
        return 0
    if isinstance(raw, bool):
        raise FetchFailure(f"Unexpected response shape: card {card_id} has invalid {axis}")
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        raise FetchFailure(
            f"Unexpected response shape: card {card_id} has invalid {axis} ({raw!r})"
        ) from None


def card_from_payload(payload: Any) -> Card:
    data = _require_mapping(payload, "card")
    card_id = _require_id(data, "card")
    color = normalize_text(data.get("backgroundColor"))
    return Card(
        id=card_id,
        name=normalize_text(data.get("name")),
        x=_coordinate(data.get("x"), "x", card_id),
        y=_coordinate(data.get("y"), "y", card_id),
        background_color=color or DEFAULT_BACKGROUND_COLOR,
    )


def box_from_payload(payload: Any) -> Box:
    data = _require_mapping(payload, "box")
    return Box(id=_require_id(data, "box"), name=normalize_text(data.get("name")))


def space_from_payload(payload: Any) -> Space:
    data = _require_mapping(payload, "space")
    cards = data.get("cards") or []
    boxes = data.get("boxes") or []
    if not isinstance(cards, list) or not isinstance(boxes, list):
        raise FetchFailure("Unexpected response shape: cards and boxes must be arrays")
    return Space(
        id=_require_id(data, "space"),
        name=normalize_text(data.get("name")),
        url=normalize_text(data.get("url")),
        cards=tuple(card_from_payload(card) for card in cards),
        boxes=tuple(box_from_payload(box) for box in boxes),
    )


def spaces_from_payload(payload: Any) -> list[Space]:
    if not isinstance(payload, list):
        raise FetchFailure("Unexpected response shape: space list is not an array")
    return [space_from_payload(space) for space in payload]


def describe_error_response(what: str, response: requests.Response) -> FetchFailure:
    status = f"{response.status_code} {response.reason or ''}".strip()
    body = response.text or ""
    try:
        details = json.loads(body)
    except ValueError:
        message = f"Failed to fetch {what}: {status}\nResponse body: {body}"
    else:
        pretty = json.dumps(details, indent=2)
        message = f"Failed to fetch {what}: {status}\nError details:\n{pretty}"
    return FetchFailure(message, status_code=response.status_code, raw_body=body)


class SpaceRepository:
    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self._headers = {
            "Authorization": api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def list_spaces(self) -> list[Space]:
        payload = self._get_json("/user/spaces", "spaces")
        return spaces_from_payload(payload)

    def get_space(self, space_id: str) -> Space:
        payload = self._get_json(f"/space/{space_id}", f"space {space_id}")
        return space_from_payload(payload)

    def _get_json(self, path: str, what: str) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.get(
                url,
                headers=self._headers,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout:
            raise FetchFailure(
                f"Request timed out after {self.timeout_seconds:g}s"
            ) from None
        except requests.RequestException as exc:
            raise FetchFailure(f"Error performing request: {exc}") from None

        if response.status_code != 200:
            raise describe_error_response(what, response)

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            raise FetchFailure(
                f"Unexpected content type: {content_type or '(none)'}",
                status_code=response.status_code,
                raw_body=response.text,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise FetchFailure(
                f"Error decoding response: {exc}",
                status_code=response.status_code,
                raw_body=response.text,
            ) from None
