from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from .errors import PkgFetchError

logger = logging.getLogger(__name__)

@dataclass(frozen=True, slots=True)
class PartResult:
    part_id:str
    path:str|None = None #absolute path of the verified part, if successful
    error:PkgFetchError|None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

class PartResultCollector:
    """Accumulates the outcome of every part of a fetch.

    Many part workers put their results on a queue, a single collector reduces them.
    collect() is the join barrier: it returns only after a result for every expected part has arrived,
    so no result is dropped, even if other parts already failed.
    """

    _queue:asyncio.Queue[PartResult]

    def __init__(self, expected_count:int):
        self.expected_count = expected_count
        self._queue = asyncio.Queue()
        self.fetched:dict[str, str] = {}
        self.errors:dict[str, PkgFetchError] = {}

    async def put(self, result:PartResult):
        await self._queue.put(result)

    async def collect(self) -> tuple[dict[str, str], dict[str, PkgFetchError]]:
        received = 0
        while received < self.expected_count:
            result = await self._queue.get()
            received += 1
            if result.error is not None:
                logger.debug(f"Recording fetch error for part {result.part_id}: {result.error}")
                self.errors[result.part_id] = result.error
            else:
                self.fetched[result.part_id] = result.path
        return self.fetched, self.errors
