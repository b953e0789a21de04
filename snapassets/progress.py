import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# detail listeners: (completed, total, results_so_far)
# indicator listeners: (completed, total)
DetailListener = Callable[[int, int, List[Any]], Any]
IndicatorListener = Callable[[int, int], Any]


class ProgressChannel:
    """Per-batch subscription channel with two listener kinds.

    Every subscriber of a kind receives every update; subscribers of one
    batch never see another batch's updates.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._detail: Dict[int, DetailListener] = {}
        self._indicator: Dict[int, IndicatorListener] = {}
        self._next_token = 0

    def _add(self, bucket: Dict[int, Callable], cb: Callable) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        bucket[token] = cb

        def unsubscribe() -> None:
            bucket.pop(token, None)

        return unsubscribe

    def subscribe_detail(self, cb: DetailListener) -> Callable[[], None]:
        return self._add(self._detail, cb)

    def subscribe_indicator(self, cb: IndicatorListener) -> Callable[[], None]:
        return self._add(self._indicator, cb)

    @property
    def listener_count(self) -> int:
        return len(self._detail) + len(self._indicator)

    async def _call(self, cb: Callable, *args: Any) -> None:
        try:
            out = cb(*args)
            if inspect.isawaitable(out):
                await out
        except Exception:
            logger.exception("[progress]: listener failed on channel %s", self.name)

    async def publish(self, completed: int, total: int, results: List[Any]) -> None:
        snapshot = list(results)
        for cb in list(self._detail.values()):
            await self._call(cb, completed, total, snapshot)
        for cb in list(self._indicator.values()):
            await self._call(cb, completed, total)

    def clear(self) -> None:
        self._detail.clear()
        self._indicator.clear()
