"""
Synthetic progress for in-flight video generations.

The backend reports no progress, so a ticker nudges the node's `progress`
upward while it is generating. It never reaches 100: only a real result
does that.
"""
import asyncio
import logging
from typing import Optional

from core.ontology import VideoStatus
from core.schemas import VideoNode

logger = logging.getLogger("canvasflow.progress")


class ProgressTicker:
    """
    Structured handle around the ticking task.

    Usage:
        async with ProgressTicker(store, node_id):
            result = await adapter.await_result(ref)
        # ticker is cancelled here, whatever happened inside

    The task stops by itself when the node is deleted or leaves
    `generating`, so a ticker can never write to a settled node.
    """

    def __init__(
        self,
        store,
        node_id: str,
        interval: float = 1.0,
        step: int = 3,
        ceiling: int = 95,
    ):
        if ceiling >= 100:
            raise ValueError("ticker ceiling must stay below 100")
        self._store = store
        self._node_id = node_id
        self._interval = interval
        self._step = step
        self._ceiling = ceiling
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "ProgressTicker":
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> None:
        """Stop ticking. Safe to call more than once."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            node = self._store.get_node(self._node_id)
            if not isinstance(node, VideoNode) or node.status != VideoStatus.GENERATING:
                logger.debug(f"Ticker for {self._node_id} stopping: node settled or gone")
                return
            current = node.progress or 0
            if current >= self._ceiling:
                continue
            self._store.update_node(self._node_id, {"progress": min(current + self._step, self._ceiling)})

    async def __aenter__(self) -> "ProgressTicker":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
