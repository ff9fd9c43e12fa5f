"""
BGG XML API 2 response parsing.

Search responses yield item ids; thing responses yield a GameRecord.
"""

import html
import xml.etree.ElementTree as ET

from pydantic import BaseModel, Field

from server.services.errors import InvalidResponseError

# Categories covered by the bulk refresh, in processing order
CATEGORIES = (
    "abstracts",
    "cgs",
    "childrens",
    "family",
    "party",
    "strategy",
    "thematic",
    "wargames",
)

# BGG family rank names; the listing uses the short category names
RANK_NAMES = {
    "abstracts": "abstracts",
    "cgs": "cgs",
    "childrens": "childrensgames",
    "family": "familygames",
    "party": "partygames",
    "strategy": "strategygames",
    "thematic": "thematic",
    "wargames": "wargames",
}


class Range(BaseModel):
    min: int = 0
    max: int = 0


class GameRecord(BaseModel):
    """A board game as stored in detail records and ranking snapshots."""

    id: str
    name: str = ""
    rank: dict[str, int | None] = Field(default_factory=dict)
    player_count: Range = Field(default_factory=Range)
    play_time: Range = Field(default_factory=Range)
    image: str | None = None
    description: str | None = None


def _parse(xml: str) -> ET.Element:
    try:
        return ET.fromstring(xml)
    except ET.ParseError as e:
        raise InvalidResponseError(f"Invalid BGG API response: {e}", service_id="bgg") from e


def _int_value(item: ET.Element, tag: str) -> int:
    node = item.find(tag)
    if node is None:
        return 0
    try:
        return int(node.get("value", "0"))
    except ValueError:
        return 0


def parse_search_ids(xml: str) -> list[str]:
    """Item ids of a search response, in document order."""
    root = _parse(xml)
    return [item.get("id") for item in root.iter("item") if item.get("id")]


def parse_ranking(item: ET.Element, category: str) -> int | None:
    """Rank of the game in a category; None when absent or "Not Ranked"."""
    for rank in item.iter("rank"):
        if rank.get("friendlyname") == category or rank.get("name") == RANK_NAMES.get(
            category
        ):
            value = rank.get("value")
            if not value or value == "Not Ranked":
                return None
            try:
                return int(value)
            except ValueError:
                return None
    return None


def parse_game(xml: str, game_id: str | None = None) -> GameRecord:
    """
    Build a GameRecord from a thing response.

    Raises:
        InvalidResponseError: If the body is not XML or has no item
    """
    root = _parse(xml)
    item = root if root.tag == "item" else root.find("item")
    if item is None:
        raise InvalidResponseError("Invalid BGG API response: no item", service_id="bgg")

    name = ""
    for node in item.findall("name"):
        if node.get("type") == "primary":
            name = node.get("value", "")
            break

    image = item.findtext("image")
    description = item.findtext("description")

    return GameRecord(
        id=item.get("id") or game_id or "",
        name=name,
        rank={category: parse_ranking(item, category) for category in CATEGORIES},
        player_count=Range(
            min=_int_value(item, "minplayers"), max=_int_value(item, "maxplayers")
        ),
        play_time=Range(
            min=_int_value(item, "minplaytime"), max=_int_value(item, "maxplaytime")
        ),
        image=image.strip() if image else None,
        # BGG double-escapes entities such as &amp;#10; inside descriptions
        description=html.unescape(description) if description else None,
    )
