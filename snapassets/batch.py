"""Background processing of one upload action (a batch of images).

Each batch owns its progress channel and is keyed by id in a registry, so
two batches running at once never share listeners.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from .config import BATCH_CONCURRENCY, BATCH_TTL_SECONDS
from .intake import SelectedImage
from .models import BatchProgress, BatchStatus, BatchSummary, FileInfo, FileResult
from .progress import ProgressChannel
from .storage import AssetStore
from .vision import VisionClient

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _elapsed_s(start: float) -> float:
    return round(time.perf_counter() - start, 3)


class Batch:
    def __init__(
        self,
        user_id: str,
        files: List[SelectedImage],
        vision: VisionClient,
        store: AssetStore,
        concurrency: int = BATCH_CONCURRENCY,
        batch_id: Optional[str] = None,
    ):
        if not files:
            raise ValueError("A batch needs at least one file")
        self.id = batch_id or uuid4().hex
        self.user_id = user_id
        self.files = list(files)
        self.vision = vision
        self.store = store
        self.concurrency = max(1, int(concurrency))
        self.channel = ProgressChannel(self.id)
        self.state = BatchState.IDLE
        self.completed = 0
        self.error: Optional[str] = None
        self.created_at = time.time()
        self.updated_at = self.created_at
        self._slots: List[Optional[FileResult]] = [None] * len(self.files)
        self._publish_lock = asyncio.Lock()
        self._done = asyncio.Event()

    @property
    def total(self) -> int:
        return len(self.files)

    @property
    def done(self) -> bool:
        return self.state in (BatchState.COMPLETED, BatchState.FAILED)

    @property
    def results(self) -> List[FileResult]:
        """Finished files, in submission order."""
        return [r for r in self._slots if r is not None]

    async def _process_file(self, image: SelectedImage) -> FileResult:
        result = FileResult(file=FileInfo(name=image.name, size=image.size, type=image.content_type))
        stage = "analysis"
        try:
            analysis = await self.vision.analyze_async(image.data, image.content_type)
            result.analysis = analysis

            stage = "save"
            asset_id, created = await asyncio.to_thread(
                self.store.save_asset, self.user_id, analysis, content_hash(image.data)
            )
            result.asset_id = asset_id
            result.duplicate = not created

            if created:
                stage = "image upload"
                url = await asyncio.to_thread(
                    self.store.upload_image, self.user_id, asset_id, image.data, image.content_type
                )
                stage = "image attach"
                await asyncio.to_thread(self.store.update_asset, self.user_id, asset_id, {"image_url": url})
                result.image_url = url
            else:
                existing = await asyncio.to_thread(self.store.get_asset, self.user_id, asset_id)
                result.image_url = existing.image_url or None
        except Exception as e:
            logger.warning("[batch %s]: %s failed for %s: %s", self.id, stage, image.name, e)
            result.error = str(e) or f"{stage} failed"
        return result

    async def run(self) -> List[FileResult]:
        if self.state != BatchState.IDLE:
            raise RuntimeError(f"Batch {self.id} already {self.state.value}")
        self.state = BatchState.RUNNING
        self.updated_at = time.time()
        start = time.perf_counter()
        sem = asyncio.Semaphore(self.concurrency)
        logger.info(
            "[batch %s]: running %d files for user %s (concurrency=%d)",
            self.id,
            self.total,
            self.user_id,
            self.concurrency,
        )

        async def worker(index: int, image: SelectedImage) -> None:
            try:
                async with sem:
                    result = await self._process_file(image)
            finally:
                # upload bytes are not kept once the file is handled
                self.files[index] = replace(image, data=b"")
            async with self._publish_lock:
                self._slots[index] = result
                self.completed += 1
                self.updated_at = time.time()
                await self.channel.publish(self.completed, self.total, self.results)

        try:
            await asyncio.gather(*(worker(i, f) for i, f in enumerate(self.files)))
            self.state = BatchState.COMPLETED
        except Exception as e:
            logger.exception("[batch %s]: failed", self.id)
            self.state = BatchState.FAILED
            self.error = str(e) or e.__class__.__name__
        finally:
            self.updated_at = time.time()
            self._done.set()

        summary = self.summary()
        logger.info(
            "[batch %s]: %s in %.3fs successful=%d failed=%d duplicates=%d",
            self.id,
            self.state.value,
            _elapsed_s(start),
            summary.successful,
            summary.failed,
            summary.duplicates,
        )
        return self.results

    async def wait(self) -> List[FileResult]:
        await self._done.wait()
        return self.results

    def summary(self) -> BatchSummary:
        results = self.results
        return BatchSummary(
            batch_id=self.id,
            total=self.total,
            successful=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if r.error),
            duplicates=sum(1 for r in results if r.duplicate),
        )

    def progress(self) -> BatchProgress:
        return BatchProgress(batch_id=self.id, completed=self.completed, total=self.total, state=self.state.value)

    def status(self) -> BatchStatus:
        return BatchStatus(
            batch_id=self.id,
            user_id=self.user_id,
            state=self.state.value,
            completed=self.completed,
            total=self.total,
            percent=round(100.0 * self.completed / self.total, 1),
            done=self.done,
            results=self.results,
            error=self.error,
        )


class BatchRegistry:
    """Live batches keyed by id, plus one-shot summaries of finished ones."""

    def __init__(
        self,
        vision: VisionClient,
        store: AssetStore,
        concurrency: int = BATCH_CONCURRENCY,
        ttl_seconds: int = BATCH_TTL_SECONDS,
    ):
        self.vision = vision
        self.store = store
        self.concurrency = concurrency
        self.ttl_seconds = ttl_seconds
        self._batches: Dict[str, Batch] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._summaries: Dict[str, BatchSummary] = {}

    def create(self, user_id: str, files: List[SelectedImage]) -> Batch:
        batch = Batch(user_id, files, self.vision, self.store, concurrency=self.concurrency)
        self._batches[batch.id] = batch
        return batch

    def start(self, batch: Batch) -> asyncio.Task:
        task = asyncio.create_task(self._run(batch))
        self._tasks[batch.id] = task
        task.add_done_callback(lambda _t, bid=batch.id: self._tasks.pop(bid, None))
        return task

    def submit(self, user_id: str, files: List[SelectedImage]) -> Batch:
        self.cleanup()
        batch = self.create(user_id, files)
        self.start(batch)
        return batch

    async def _run(self, batch: Batch) -> None:
        await batch.run()
        self._summaries[batch.id] = batch.summary()

    def get(self, batch_id: str) -> Optional[Batch]:
        return self._batches.get(batch_id)

    def for_user(self, user_id: str) -> List[Batch]:
        return sorted(
            (b for b in self._batches.values() if b.user_id == user_id),
            key=lambda b: b.created_at,
        )

    def active_for_user(self, user_id: str) -> List[Batch]:
        return [b for b in self.for_user(user_id) if not b.done]

    def pop_summary(self, batch_id: str) -> Optional[BatchSummary]:
        """Counts for a finished batch, handed out once."""
        return self._summaries.pop(batch_id, None)

    def cleanup(self) -> int:
        now = time.time()
        stale = [
            bid
            for bid, b in self._batches.items()
            if b.done and now - b.updated_at > self.ttl_seconds
        ]
        for bid in stale:
            batch = self._batches.pop(bid)
            batch.channel.clear()
            self._summaries.pop(bid, None)
        if stale:
            logger.info("[batches]: cleaned up %d finished batches", len(stale))
        return len(stale)
