"""
Listing ingest orchestrator.

Runs one PipelineRun through: compress -> upload -> (group) -> (enhance) ->
analyse -> review. Quick mode skips grouping and treats every photo as one
product. The run is an explicit session object owned by one task; reset()
cancels that task and bumps the run's generation so late results are never
applied.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial

from analyser import analyse_group, default_fields
from compressor import RawPhoto, UploadPayload, compress_all, is_image, make_preview
from config import Settings
from enhancer import apply_cover, enhance_cover
from errors import CompressionError, UploadError
from grouper import request_groups, resolve_groups
from models import ImageVariants, ItemType, PhotoGroup, ProductDraft, UploadedAsset
from result import Err
from review import ReviewCursor
from services import ServiceClient
from uploader import bounded_gather, upload_all

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    IDLE = "idle"
    PHOTOS = "photos"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    GROUPING = "grouping"
    ENHANCING = "enhancing"
    ANALYSING = "analysing"
    REVIEWING = "reviewing"


class Mode(str, Enum):
    QUICK = "quick"
    BULK = "bulk"


class RunAbandoned(Exception):
    """The run was reset while this invocation was in flight."""


# ===== Metrics =====


@dataclass
class RunMetrics:
    """Per-run metrics collected by the orchestrator."""

    # Stage timing (seconds)
    compress_time: float = 0.0
    upload_time: float = 0.0
    group_time: float = 0.0
    enhance_time: float = 0.0
    analyse_time: float = 0.0
    total_time: float = 0.0
    # Counts
    photos_compressed: int = 0
    bytes_before: int = 0
    bytes_after: int = 0
    grouping_fallback: bool = False
    enhancements_ok: int = 0
    enhancements_failed: int = 0
    analyses_ok: int = 0
    analyses_failed: int = 0


# ===== Run state =====


def _new_run_id(mode: "Mode") -> str:
    return f"{mode.value}-{uuid.uuid4().hex[:12]}"


@dataclass
class PipelineRun:
    """Everything one ingest run owns, from selected photos to the review cursor."""

    mode: Mode = Mode.BULK
    enhance_covers: bool = False
    category: ItemType | None = None  # operator override passed to analysis
    run_id: str = ""
    stage: Stage = Stage.IDLE
    photos: list[RawPhoto] = field(default_factory=list)
    assets: list[UploadedAsset] = field(default_factory=list)
    groups: list[PhotoGroup] = field(default_factory=list)
    drafts: list[ProductDraft] = field(default_factory=list)
    cursor: ReviewCursor | None = None
    error: str | None = None
    generation: int = 0
    metrics: RunMetrics = field(default_factory=RunMetrics)
    task: asyncio.Task | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.run_id:
            self.run_id = _new_run_id(self.mode)

    def add_photos(self, photos: list[RawPhoto]) -> int:
        """Add image files to the selection (others are ignored). Returns how many were added."""
        added = 0
        for photo in photos:
            if not is_image(photo.content_type):
                logger.info(f"  Skipping non-image file {photo.filename} ({photo.content_type})")
                continue
            if photo.preview is None:
                photo.preview = make_preview(photo.source_bytes)
            self.photos.append(photo)
            added += 1
        if self.photos and self.stage == Stage.IDLE:
            self.stage = Stage.PHOTOS
        return added

    def remove_photo(self, index: int) -> RawPhoto:
        photo = self.photos.pop(index)
        photo.release()
        if not self.photos and self.stage == Stage.PHOTOS:
            self.stage = Stage.IDLE
        return photo

    def is_current(self, generation: int) -> bool:
        return self.generation == generation

    def reset(self) -> None:
        """Abandon everything: cancel in-flight work, release previews, clear state."""
        if self.task is not None and not self.task.done() and self.task is not _current_task():
            self.task.cancel()
        self.task = None

        for photo in self.photos:
            photo.release()
        # Fresh containers: callers holding the old drafts/cursor keep their view
        self.photos = []
        self.assets = []
        self.groups = []
        self.drafts = []
        self.cursor = None
        self.error = None
        self.stage = Stage.IDLE
        self.metrics = RunMetrics()
        self.generation += 1
        self.run_id = _new_run_id(self.mode)
        logger.info(f"Run reset (generation {self.generation})")


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


# ===== Orchestrator =====


class Pipeline:
    def __init__(self, client: ServiceClient, settings: Settings):
        self._client = client
        self._settings = settings

    def start(self, run: PipelineRun) -> asyncio.Task:
        """Schedule execute() as the run's owning task."""
        if run.task is not None and not run.task.done():
            raise RuntimeError(f"Run {run.run_id} is already in progress")
        run.task = asyncio.create_task(self.execute(run))
        return run.task

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Drive the run to the review stage. Fatal errors send it back to PHOTOS."""
        if not run.photos:
            raise ValueError("No photos selected")

        generation = run.generation
        metrics = run.metrics
        run.error = None
        t_start = time.monotonic()
        logger.info(f"Run {run.run_id}: {len(run.photos)} photos, mode={run.mode.value}, enhance={run.enhance_covers}")

        try:
            if not self._client.has_session:
                raise UploadError("You must be logged in to upload photos")

            payloads = await self._compress(run, generation, metrics)
            assets = await self._upload(run, generation, metrics, payloads)

            if run.mode == Mode.QUICK:
                drafts = await self._quick(run, generation, metrics, assets)
            else:
                drafts = await self._bulk(run, generation, metrics, assets)
        except (CompressionError, UploadError) as e:
            if run.is_current(generation):
                logger.error(f"Run {run.run_id} aborted: {e}", exc_info=e)
                run.stage = Stage.PHOTOS
                run.error = str(e)
                run.assets = []
                run.groups = []
            return run
        except RunAbandoned:
            logger.info(f"  Run reset during processing, discarding results (generation {generation})")
            return run
        except Exception as e:
            if run.is_current(generation):
                logger.error(f"Run {run.run_id} failed during {run.stage.value}: {e}", exc_info=e)
                run.stage = Stage.PHOTOS
                run.error = f"Processing failed: {e}"
                run.assets = []
                run.groups = []
            return run

        metrics.total_time = time.monotonic() - t_start
        self._check(run, generation)
        run.drafts = drafts
        run.cursor = ReviewCursor(drafts, self._client.create_scheduled_listing, self._settings.timezone, on_done=run.reset)
        run.stage = Stage.REVIEWING
        logger.info(f"Run {run.run_id}: ready to review {len(drafts)} products ({metrics.total_time:.2f}s)")
        return run

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check(run: PipelineRun, generation: int) -> None:
        if not run.is_current(generation):
            raise RunAbandoned()

    def _enter(self, run: PipelineRun, generation: int, stage: Stage) -> None:
        self._check(run, generation)
        run.stage = stage

    async def _compress(self, run: PipelineRun, generation: int, metrics: RunMetrics) -> list[UploadPayload]:
        self._enter(run, generation, Stage.COMPRESSING)
        t0 = time.monotonic()
        payloads = await compress_all(list(run.photos), self._settings)
        metrics.compress_time = time.monotonic() - t0
        metrics.photos_compressed = sum(1 for p in payloads if p.compressed)
        metrics.bytes_before = sum(p.size for p in run.photos)
        metrics.bytes_after = sum(len(p.content) for p in payloads)
        return payloads

    async def _upload(
        self, run: PipelineRun, generation: int, metrics: RunMetrics, payloads: list[UploadPayload]
    ) -> list[UploadedAsset]:
        self._enter(run, generation, Stage.UPLOADING)
        t0 = time.monotonic()
        assets = await upload_all(payloads, self._client.upload, run.run_id, self._settings.upload_concurrency)
        metrics.upload_time = time.monotonic() - t0
        self._check(run, generation)
        run.assets = assets
        return assets

    async def _enhance(
        self, run: PipelineRun, generation: int, metrics: RunMetrics, label: str, images: list[ImageVariants]
    ) -> list[ImageVariants]:
        """Enhance images[0]; on failure keep the original cover."""
        result = await enhance_cover(images[0].url, self._client.enhance, f"{run.run_id}-{label}")
        self._check(run, generation)
        if isinstance(result, Err):
            metrics.enhancements_failed += 1
            logger.warning(f"  Cover enhancement failed for {label}, keeping original: {result.error}")
            return images
        metrics.enhancements_ok += 1
        logger.info(f"  Enhanced cover for {label}")
        return apply_cover(images, result.value)

    async def _analyse(
        self, run: PipelineRun, generation: int, metrics: RunMetrics, group: PhotoGroup, images: list[ImageVariants]
    ) -> ProductDraft:
        result = await analyse_group([img.url for img in images], self._client.analyze, group.suggested_name, run.category)
        self._check(run, generation)

        if isinstance(result, Err):
            metrics.analyses_failed += 1
            logger.warning(f"  Analysis failed for {group.id}, using defaults: {result.error}")
            form = default_fields(group.suggested_name)
            if run.category:
                form.item_type = run.category
            analysed = False
        else:
            metrics.analyses_ok += 1
            form = result.value
            analysed = True
            logger.info(f"  Analysed {group.id}: {form.title} ({form.item_type.value})")

        return ProductDraft(
            group_id=group.id,
            suggested_name=group.suggested_name,
            images=images,
            form=form,
            analysed=analysed,
        )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def _quick(
        self, run: PipelineRun, generation: int, metrics: RunMetrics, assets: list[UploadedAsset]
    ) -> list[ProductDraft]:
        """Single product: every uploaded photo belongs to one implicit group."""
        group = PhotoGroup(id="quick", photo_indexes=list(range(len(assets))), suggested_name="Product 1")
        run.groups = [group]
        images: list[ImageVariants] = list(assets)

        if run.enhance_covers:
            self._enter(run, generation, Stage.ENHANCING)
            t0 = time.monotonic()
            images = await self._enhance(run, generation, metrics, group.id, images)
            metrics.enhance_time = time.monotonic() - t0

        self._enter(run, generation, Stage.ANALYSING)
        t0 = time.monotonic()
        draft = await self._analyse(run, generation, metrics, group, images)
        metrics.analyse_time = time.monotonic() - t0
        return [draft]

    async def _bulk(
        self, run: PipelineRun, generation: int, metrics: RunMetrics, assets: list[UploadedAsset]
    ) -> list[ProductDraft]:
        self._enter(run, generation, Stage.GROUPING)
        logger.info(f"Grouping {len(assets)} photos...")
        t0 = time.monotonic()
        result = await request_groups([a.url for a in assets], self._client.group)
        self._check(run, generation)
        metrics.grouping_fallback = isinstance(result, Err) or not result.value
        groups = resolve_groups(result, len(assets))
        metrics.group_time = time.monotonic() - t0
        run.groups = groups
        logger.info(f"  Grouped into {len(groups)} products")

        group_images: list[list[ImageVariants]] = [[assets[i] for i in g.photo_indexes] for g in groups]
        concurrency = self._settings.analysis_concurrency

        if run.enhance_covers:
            self._enter(run, generation, Stage.ENHANCING)
            logger.info(f"Enhancing covers for {len(groups)} products...")
            t0 = time.monotonic()
            group_images = await bounded_gather(
                [partial(self._enhance, run, generation, metrics, g.id, imgs) for g, imgs in zip(groups, group_images)],
                concurrency,
            )
            metrics.enhance_time = time.monotonic() - t0

        self._enter(run, generation, Stage.ANALYSING)
        logger.info(f"Analysing {len(groups)} products...")
        t0 = time.monotonic()
        drafts = await bounded_gather(
            [partial(self._analyse, run, generation, metrics, g, imgs) for g, imgs in zip(groups, group_images)],
            concurrency,
        )
        metrics.analyse_time = time.monotonic() - t0
        return drafts
