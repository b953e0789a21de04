import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from .batch import BatchRegistry
from .config import BATCH_CONCURRENCY, BATCH_TTL_SECONDS, make_anthropic_client
from .intake import IntakeRejected, SelectedImage, SUPPORTED_IMAGE_TYPES, resolve_image_type, validate_upload
from .llm import AnalysisFailed, UnparsableResponse
from .models import (
    Asset,
    AssetUpdate,
    BatchProgress,
    BatchStartResponse,
    BatchStatus,
    BatchSummary,
    DeleteReport,
    InventoryStats,
    PolicyAnalysisResponse,
)
from .policy import PolicyComparator, PolicyInputError
from .storage import AssetNotFound, AssetStore, safe_segment
from .vision import VisionClient

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


def _sse(event: str, payload) -> str:
    data = payload.model_dump(by_alias=True, mode="json") if hasattr(payload, "model_dump") else payload
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def create_app(
    store: Optional[AssetStore] = None,
    vision: Optional[VisionClient] = None,
    comparator: Optional[PolicyComparator] = None,
    registry: Optional[BatchRegistry] = None,
    anthropic_client=None,
) -> FastAPI:
    if store is None:
        store = AssetStore()
    if anthropic_client is None and (vision is None or comparator is None):
        anthropic_client = make_anthropic_client()
    if vision is None:
        vision = VisionClient(client=anthropic_client)
    if comparator is None:
        comparator = PolicyComparator(store, client=anthropic_client)
    if registry is None:
        registry = BatchRegistry(vision, store, concurrency=BATCH_CONCURRENCY, ttl_seconds=BATCH_TTL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Snap My Assets API")
        try:
            yield
        finally:
            logger.info("Shutting down Snap My Assets API")

    app = FastAPI(title="Snap My Assets – AI Home Inventory", lifespan=lifespan)
    app.state.store = store
    app.state.vision = vision
    app.state.comparator = comparator
    app.state.batches = registry

    if store.media_base_url.startswith("/"):
        app.mount(store.media_base_url, StaticFiles(directory=str(store.media_dir)), name="media")

    def _user(user_id: str) -> str:
        try:
            return safe_segment(user_id, "user id")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def _batch(batch_id: str):
        batch = registry.get(batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail="Batch not found")
        return batch

    # ---------------- Health ----------------
    @app.get("/health")
    def health():
        return {"status": "ok", "ai_configured": vision.client is not None}

    # ---------------- Single-image analysis ----------------
    @app.post("/api/analyze-image")
    async def analyze_image(image: Optional[UploadFile] = File(default=None)):
        if image is None:
            return JSONResponse({"error": "No image provided"}, status_code=400)
        mime = resolve_image_type(image.filename or "", image.content_type)
        logger.debug(
            "[/api/analyze-image]: name=%s type=%s size=%s",
            image.filename,
            mime,
            image.size,
        )
        if mime not in SUPPORTED_IMAGE_TYPES:
            return JSONResponse(
                {
                    "error": f"Unsupported image format: {mime}. Please use JPG, PNG, WEBP, or HEIC.",
                    "receivedType": mime,
                    "fileName": image.filename,
                },
                status_code=400,
            )
        data = await image.read()
        try:
            analysis = await vision.analyze_async(data, mime)
        except AnalysisFailed as e:
            return JSONResponse({"error": "Failed to analyze image", "details": str(e)}, status_code=500)
        return analysis.model_dump(by_alias=True, mode="json")

    # ---------------- Policy comparison ----------------
    @app.post("/api/analyze-policy", response_model=PolicyAnalysisResponse)
    async def analyze_policy(
        policy: Optional[UploadFile] = File(default=None),
        user_id: Optional[str] = Form(default=None, alias="userId"),
    ):
        data = await policy.read() if policy is not None else None
        mime = None
        if policy is not None:
            mime = (policy.content_type or "").lower()
            if (policy.filename or "").lower().endswith(".pdf") and mime in ("", "application/octet-stream"):
                mime = "application/pdf"
            elif not mime or mime == "application/octet-stream":
                mime = resolve_image_type(policy.filename or "", None)
        try:
            if user_id:
                _user(user_id)
            return await comparator.analyze_async(user_id, data, mime)
        except PolicyInputError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except UnparsableResponse as e:
            return JSONResponse({"error": "Failed to parse policy analysis", "details": str(e)}, status_code=502)
        except AnalysisFailed as e:
            return JSONResponse({"error": "Failed to analyze policy document", "details": str(e)}, status_code=500)

    # ---------------- Batches ----------------
    @app.post("/users/{user_id}/batches", response_model=BatchStartResponse)
    async def start_batch(user_id: str, files: List[UploadFile] = File(...)):
        _user(user_id)
        selected = [
            SelectedImage(name=f.filename or "upload", content_type=f.content_type or "", data=await f.read())
            for f in files
        ]
        try:
            accepted = validate_upload(selected)
        except IntakeRejected as e:
            raise HTTPException(status_code=400, detail={"errors": e.messages})
        batch = registry.submit(user_id, accepted)
        logger.info("[/batches]: started %s with %d files for %s", batch.id, batch.total, user_id)
        return BatchStartResponse(batch_id=batch.id, total=batch.total)

    @app.get("/batches/{batch_id}", response_model=BatchStatus)
    async def batch_status(batch_id: str):
        registry.cleanup()
        return _batch(batch_id).status()

    @app.get("/batches/{batch_id}/summary", response_model=BatchSummary)
    async def batch_summary(batch_id: str):
        registry.cleanup()
        batch = registry.get(batch_id)
        if batch is not None and not batch.done:
            raise HTTPException(status_code=409, detail="Batch still running")
        summary = registry.pop_summary(batch_id)
        if summary is None:
            raise HTTPException(status_code=404, detail="Summary not found")
        return summary

    @app.get("/batches/{batch_id}/events")
    async def batch_events(batch_id: str, request: Request):
        batch = _batch(batch_id)

        async def stream():
            queue: asyncio.Queue = asyncio.Queue()
            unsubscribe = batch.channel.subscribe_detail(
                lambda completed, total, results: queue.put_nowait(completed)
            )
            finished = asyncio.ensure_future(batch.wait())
            try:
                yield _sse("progress", batch.status())
                while not finished.done():
                    if await request.is_disconnected():
                        return
                    getter = asyncio.ensure_future(queue.get())
                    await asyncio.wait(
                        {getter, finished},
                        timeout=SSE_KEEPALIVE_SECONDS,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if getter.done():
                        yield _sse("progress", batch.status())
                    else:
                        getter.cancel()
                        if not finished.done():
                            yield ": keepalive\n\n"
                yield _sse("done", batch.status())
            finally:
                unsubscribe()
                if not finished.done():
                    finished.cancel()

        return StreamingResponse(stream(), media_type="text/event-stream")

    @app.get("/users/{user_id}/batches/active", response_model=List[BatchProgress])
    async def active_batches(user_id: str):
        _user(user_id)
        registry.cleanup()
        return [b.progress() for b in registry.active_for_user(user_id)]

    # ---------------- Assets ----------------
    @app.get("/users/{user_id}/assets", response_model=List[Asset])
    def list_assets(
        user_id: str,
        search: Optional[str] = Query(default=None),
        category: Optional[str] = Query(default=None),
    ):
        return store.list_assets(_user(user_id), search=search, category=category)

    @app.get("/users/{user_id}/assets/stats", response_model=InventoryStats)
    def inventory_stats(user_id: str):
        return store.inventory_stats(_user(user_id))

    @app.get("/users/{user_id}/assets/{asset_id}", response_model=Asset)
    def get_asset(user_id: str, asset_id: str):
        try:
            return store.get_asset(_user(user_id), asset_id)
        except AssetNotFound:
            raise HTTPException(status_code=404, detail="Asset not found")

    @app.patch("/users/{user_id}/assets/{asset_id}", response_model=Asset)
    def update_asset(user_id: str, asset_id: str, update: AssetUpdate):
        fields = update.model_dump(exclude_unset=True)
        if not fields:
            raise HTTPException(status_code=400, detail="No fields to update")
        try:
            return store.update_asset(_user(user_id), asset_id, fields)
        except AssetNotFound:
            raise HTTPException(status_code=404, detail="Asset not found")
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.delete("/users/{user_id}/assets/{asset_id}", response_model=DeleteReport)
    def delete_asset(user_id: str, asset_id: str):
        try:
            return store.delete_asset(_user(user_id), asset_id)
        except AssetNotFound:
            raise HTTPException(status_code=404, detail="Asset not found")

    return app
