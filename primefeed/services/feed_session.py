from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from primefeed.models.page_context import PageContext, PageKind, cache_namespace
from primefeed.models.video_record import VideoRecord


class CacheTier(IntEnum):
    EXTERNAL = 1
    MEMORY = 2
    DURABLE = 3


@dataclass(frozen=True)
class MemoryEntry:
    records: tuple[VideoRecord, ...]
    written_at_ms: int


@dataclass
class FeedSession:
    """State owned by the calling context.

    The orchestrator holds the only instance and hands it to the cache
    hierarchy and the continuation fetcher. A context reset drops all build and
    paging state plus the memory entry of the page being left; entries warmed
    for other pages (prefetch) survive. `generation` lets late async results
    detect that a reset happened.
    """

    page: PageContext = field(default_factory=lambda: PageContext(kind=PageKind.OTHER))
    generation: int = 0
    memory: dict[str, MemoryEntry] = field(default_factory=dict)
    in_flight: set[tuple[CacheTier, str]] = field(default_factory=set)
    is_building: bool = False
    build_attempts: int = 0
    list_committed: bool = False
    committed: list[VideoRecord] = field(default_factory=list)
    continuation_token: str | None = None
    api_key: str | None = None
    channel_name: str = ""
    channel_url: str = ""

    def reset(self, page: PageContext) -> int:
        previous_namespace = cache_namespace(self.page)
        if previous_namespace is not None:
            self.memory.pop(previous_namespace, None)
        self.generation += 1
        self.page = page
        self.in_flight.clear()
        self.is_building = False
        self.build_attempts = 0
        self.list_committed = False
        self.committed = []
        self.continuation_token = None
        self.api_key = None
        self.channel_name = ""
        self.channel_url = ""
        return self.generation

    def is_current(self, generation: int) -> bool:
        return generation == self.generation
