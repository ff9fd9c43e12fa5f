"""
BoardGameGeek data source: cached catalog reads and the bulk refresh job.
"""

from server.datasource.bgg.parser import (
    CATEGORIES,
    GameRecord,
    parse_game,
    parse_search_ids,
)
from server.datasource.bgg.refresh import (
    SYSTEM_CALLER,
    BulkRefreshJob,
    Caller,
    RefreshReport,
)
from server.datasource.bgg.scheduler import RefreshScheduler
from server.datasource.bgg.source import BGGSource

__all__ = [
    "BGGSource",
    "BulkRefreshJob",
    "CATEGORIES",
    "Caller",
    "GameRecord",
    "RefreshReport",
    "RefreshScheduler",
    "SYSTEM_CALLER",
    "parse_game",
    "parse_search_ids",
]
