"""setlistsync domain models -- re-exports all public model classes.

The models are organized across four submodules by concern:
    - entities.py -- persisted entities (Artist, Show, SetlistEntry, Vote, ...)
    - records.py  -- external payloads and their normalized record shapes
    - sync.py     -- sync cycle snapshots and counts
    - trending.py -- ranked trending output
"""

from __future__ import annotations

from src.models.entities import (
    Artist,
    EntityType,
    Setlist,
    SetlistEntry,
    SetlistType,
    Show,
    ShowStatus,
    Song,
    Venue,
    Vote,
    VoteDirection,
)
from src.models.records import (
    ArtistRecord,
    EventRecord,
    RawRecord,
    RecordKind,
    TrackRecord,
    VenueRecord,
)
from src.models.sync import CycleOutcome, EntityCounts, SyncCycle, SyncType
from src.models.trending import Timeframe, TrendingArtist, TrendingShow

__all__ = [
    # entities
    "Artist",
    "EntityType",
    "Setlist",
    "SetlistEntry",
    "SetlistType",
    "Show",
    "ShowStatus",
    "Song",
    "Venue",
    "Vote",
    "VoteDirection",
    # records
    "ArtistRecord",
    "EventRecord",
    "RawRecord",
    "RecordKind",
    "TrackRecord",
    "VenueRecord",
    # sync
    "CycleOutcome",
    "EntityCounts",
    "SyncCycle",
    "SyncType",
    # trending
    "Timeframe",
    "TrendingArtist",
    "TrendingShow",
]
