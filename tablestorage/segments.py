"""
Segmented query engine.

Drives continuation-token pagination: each round trip returns one bounded
segment plus an opaque token, and the scan is complete once the service
stops returning a token.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Iterator,
    List,
    Optional,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ContinuationToken:
    """
    Opaque service-issued cursor.

    The wrapped value is whatever the service returned and must be replayed
    unchanged. Tokens are not guaranteed to stay valid across writes.
    """
    value: Any = field(repr=False)

    def __repr__(self) -> str:
        return "ContinuationToken(...)"


@dataclass
class QuerySegment(Generic[T]):
    """One page of results and the token for the next page (None when done)."""
    results: List[T]
    continuation_token: Optional[ContinuationToken] = None

    @property
    def has_more(self) -> bool:
        return self.continuation_token is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)


class QueryState(str, Enum):
    """Lifecycle of one query execution."""
    READY = "ready"
    IN_PROGRESS = "in_progress"
    EXHAUSTED = "exhausted"


FetchSegment = Callable[[Optional[ContinuationToken]], Awaitable[QuerySegment[T]]]


class SegmentedQuery(Generic[T]):
    """
    Lazy, non-restartable sequence of results fetched segment by segment.

    States:
        READY -> IN_PROGRESS -> EXHAUSTED

    Each execution owns its token; abandoning it midway is always safe.
    Results may repeat or miss rows if the table changes during the scan.
    """

    def __init__(self, fetch: FetchSegment, description: str = "query"):
        """
        Initialize a query execution.

        Args:
            fetch: Coroutine function issuing one bounded request for a token
            description: Label used in log messages
        """
        self._fetch = fetch
        self._description = description
        self._state = QueryState.READY
        self._token: Optional[ContinuationToken] = None
        self._segments_fetched = 0

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def continuation_token(self) -> Optional[ContinuationToken]:
        """Token the next fetch will replay."""
        return self._token

    @property
    def segments_fetched(self) -> int:
        return self._segments_fetched

    async def fetch_next_segment(self) -> QuerySegment[T]:
        """
        Issue one round trip and advance the state machine.

        Returns:
            The fetched segment

        Raises:
            RuntimeError: If the query is already exhausted
        """
        if self._state == QueryState.EXHAUSTED:
            raise RuntimeError(f"{self._description} is exhausted")

        segment = await self._fetch(self._token)
        self._segments_fetched += 1
        self._token = segment.continuation_token

        if self._token is None:
            self._state = QueryState.EXHAUSTED
        else:
            self._state = QueryState.IN_PROGRESS

        logger.debug(
            f"{self._description}: segment {self._segments_fetched} "
            f"returned {len(segment)} result(s), more={segment.has_more}"
        )
        return segment

    async def segments(self) -> AsyncIterator[QuerySegment[T]]:
        """Yield segments until the scan is exhausted."""
        while self._state != QueryState.EXHAUSTED:
            yield await self.fetch_next_segment()

    async def __aiter__(self) -> AsyncIterator[T]:
        async for segment in self.segments():
            for item in segment:
                yield item

    async def to_list(self) -> List[T]:
        """Drain the remaining results into a list."""
        return [item async for item in self]
