"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from server.datastore.engine import close_db, get_session_factory, init_db
from server.services.metrics import EventType, MetricsCollector
from server.services.rate_limiter import RateLimiter, RateLimiterConfig

SEARCH_XML = """<?xml version="1.0" encoding="utf-8"?>
<items total="3" termsofuse="https://boardgamegeek.com/xmlapi/termsofuse">
    <item type="boardgame" id="13">
        <name type="primary" value="CATAN"/>
        <yearpublished value="1995"/>
    </item>
    <item type="boardgame" id="27710">
        <name type="primary" value="Catan Dice Game"/>
    </item>
    <item type="boardgame" id="926">
        <name type="primary" value="Catan Card Game"/>
    </item>
</items>"""


def thing_xml(game_id: str = "13", name: str = "CATAN") -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<items termsofuse="https://boardgamegeek.com/xmlapi/termsofuse">
    <item type="boardgame" id="{game_id}">
        <thumbnail>https://cf.geekdo-images.com/thumb.jpg</thumbnail>
        <image>https://cf.geekdo-images.com/original.jpg</image>
        <name type="primary" sortindex="1" value="{name}"/>
        <name type="alternate" sortindex="1" value="Die Siedler von Catan"/>
        <description>Trade &amp;amp; build.&amp;#10;Settle the island &amp;quot;Catan&amp;quot;.</description>
        <minplayers value="3"/>
        <maxplayers value="4"/>
        <minplaytime value="60"/>
        <maxplaytime value="120"/>
        <statistics page="1">
            <ratings>
                <ranks>
                    <rank type="subtype" id="1" name="boardgame" friendlyname="Board Game Rank" value="500"/>
                    <rank type="family" id="5497" name="strategygames" friendlyname="Strategy Game Rank" value="412"/>
                    <rank type="family" id="5499" name="familygames" friendlyname="family" value="Not Ranked"/>
                </ranks>
            </ratings>
        </statistics>
    </item>
</items>"""


class RecordingMetrics(MetricsCollector):
    """MetricsCollector that remembers every event and summary."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.events: list[tuple[EventType, dict]] = []
        self.summaries = 0

    async def log_event(self, event_type, **data):
        self.events.append((EventType(event_type), data))
        await super().log_event(event_type, **data)

    def log_summary(self) -> None:
        self.summaries += 1
        super().log_summary()

    def types(self) -> list[EventType]:
        return [event_type for event_type, _ in self.events]


def fast_config(name: str = "test", max_retries: int = 3, min_interval: float = 0.0):
    return RateLimiterConfig(
        name=name,
        min_interval=min_interval,
        base_delay=0.0,
        max_delay=0.0,
        max_retries=max_retries,
    )


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def session_factory(database_url: str):
    """Fresh SQLite database per test."""
    await init_db(database_url)
    yield get_session_factory()
    await close_db()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
async def limiter(metrics: RecordingMetrics):
    rate_limiter = RateLimiter(fast_config(), metrics=metrics)
    yield rate_limiter
    await rate_limiter.close()
