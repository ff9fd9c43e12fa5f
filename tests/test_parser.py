"""Tests for BGG XML parsing."""

import pytest

from conftest import SEARCH_XML, thing_xml
from server.datasource.bgg.parser import CATEGORIES, parse_game, parse_search_ids
from server.services.errors import InvalidResponseError


def test_search_ids_in_document_order():
    assert parse_search_ids(SEARCH_XML) == ["13", "27710", "926"]


def test_search_without_items():
    assert parse_search_ids('<items total="0"></items>') == []


def test_parse_game_fields():
    game = parse_game(thing_xml("13", "CATAN"))

    assert game.id == "13"
    assert game.name == "CATAN"
    assert game.player_count.min == 3 and game.player_count.max == 4
    assert game.play_time.min == 60 and game.play_time.max == 120
    assert game.image == "https://cf.geekdo-images.com/original.jpg"


def test_description_entities_are_decoded():
    game = parse_game(thing_xml())
    assert game.description == 'Trade & build.\nSettle the island "Catan".'


def test_ranks_per_category():
    game = parse_game(thing_xml())

    assert set(game.rank) == set(CATEGORIES)
    assert game.rank["strategy"] == 412
    assert game.rank["family"] is None  # "Not Ranked"
    assert game.rank["wargames"] is None  # absent


def test_missing_optional_fields_default():
    game = parse_game('<items><item type="boardgame" id="7"></item></items>')
    assert game.name == ""
    assert game.player_count.max == 0
    assert game.image is None
    assert game.description is None


@pytest.mark.parametrize("body", ["not xml", "<items></items>"])
def test_invalid_bodies_raise(body):
    with pytest.raises(InvalidResponseError):
        parse_game(body)
