"""
FastAPI session API for the listing ingest pipeline.

Runs live in memory on app.state, one PipelineRun per id:
- POST   /api/runs                           -> upload photos, start a run
- GET    /api/runs/{run_id}                  -> stage, groups, drafts, cursor
- DELETE /api/runs/{run_id}                  -> reset and forget the run (also done after the last save/skip)
- PATCH  /api/runs/{run_id}/drafts/{i}       -> edit fields, assignment, category
- POST   /api/runs/{run_id}/drafts/{i}/cover/{j}
- POST   /api/runs/{run_id}/drafts/{i}/save
- POST   /api/runs/{run_id}/drafts/{i}/skip
- POST   /api/runs/{run_id}/cursor/{j}       -> jump without committing
"""

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse, Response
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

import taxonomy
from compressor import RawPhoto
from config import Settings
from errors import CursorError, DraftIncomplete, PersistError
from models import DraftStatus, ImageVariants, ItemType, ListingFields, PhotoGroup, ProductDraft, normalize_item_type
from pipeline import Mode, Pipeline, PipelineRun, Stage
from review import Done, ReviewCursor
from services import ServiceClient

logger = logging.getLogger("server")

ClientFactory = Callable[[Settings, str], ServiceClient]

# camelCase patch keys -> ListingFields attribute names
_FIELD_NAMES = {to_camel(name): name for name in ListingFields.model_fields}


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ApiModel(BaseModel):
    """camelCase on the wire, like the nested form and image models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DraftView(ApiModel):
    """One product draft as shown on the review screen."""

    index: int
    group_id: str
    suggested_name: str
    analysed: bool
    status: DraftStatus
    listing_id: str | None
    last_error: str | None
    target_user_id: str
    scheduled_date: str
    scheduled_time: str
    marketplace_category: str
    visible_fields: dict[str, str]
    images: list[ImageVariants]
    form: ListingFields


class CursorView(ApiModel):
    done: bool
    index: int | None


class RunView(ApiModel):
    run_id: str
    mode: Mode
    stage: Stage
    enhance_covers: bool
    category: ItemType | None
    photo_count: int
    error: str | None
    groups: list[PhotoGroup]
    drafts: list[DraftView]
    cursor: CursorView | None


class ReviewResult(ApiModel):
    """Outcome of save/skip: the committed draft and where the cursor went."""

    draft: DraftView
    cursor: CursorView


class DraftPatch(ApiModel):
    fields: dict[str, Any] | None = None
    item_type: str | None = None
    target_user_id: str | None = None
    scheduled_date: str | None = None
    scheduled_time: str | None = None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def _draft_view(index: int, draft: ProductDraft) -> DraftView:
    return DraftView(
        index=index,
        group_id=draft.group_id,
        suggested_name=draft.suggested_name,
        analysed=draft.analysed,
        status=draft.status,
        listing_id=draft.listing_id,
        last_error=draft.last_error,
        target_user_id=draft.target_user_id,
        scheduled_date=draft.scheduled_date,
        scheduled_time=draft.scheduled_time,
        marketplace_category=taxonomy.marketplace_category(draft.form.item_type),
        visible_fields={to_camel(k): v for k, v in taxonomy.visible_fields(draft.form).items()},
        images=draft.images,
        form=draft.form,
    )


def _cursor_view(cursor: ReviewCursor) -> CursorView:
    if isinstance(cursor.state, Done):
        return CursorView(done=True, index=None)
    return CursorView(done=False, index=cursor.state.index)


def _run_view(run: PipelineRun) -> RunView:
    return RunView(
        run_id=run.run_id,
        mode=run.mode,
        stage=run.stage,
        enhance_covers=run.enhance_covers,
        category=run.category,
        photo_count=len(run.photos),
        error=run.error,
        groups=run.groups,
        drafts=[_draft_view(i, d) for i, d in enumerate(run.drafts)],
        cursor=_cursor_view(run.cursor) if run.cursor else None,
    )


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------


@dataclass
class RunSession:
    run: PipelineRun
    client: ServiceClient


def _default_client(settings: Settings, access_token: str) -> ServiceClient:
    return ServiceClient(settings, access_token=access_token)


def _bearer(authorization: str | None, fallback: str) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return fallback


def _session(request: Request, run_id: str) -> RunSession:
    session = request.app.state.sessions.get(run_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return session


def _cursor(request: Request, run_id: str) -> ReviewCursor:
    run = _session(request, run_id).run
    if run.stage != Stage.REVIEWING or run.cursor is None:
        raise HTTPException(status_code=409, detail=f"Run is not in review (stage: {run.stage.value})")
    return run.cursor


async def _close_session(session: RunSession) -> None:
    session.run.reset()
    await session.client.aclose()


async def _forget_if_done(request: Request, run_id: str, cursor: ReviewCursor) -> None:
    # The cursor already reset the run on Done; only the registry entry and client remain.
    if not cursor.done:
        return
    session = request.app.state.sessions.pop(run_id, None)
    if session is not None:
        await session.client.aclose()
        logger.info("Run %s finished review and was closed", run_id)


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, client_factory: ClientFactory | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        sessions: dict[str, RunSession] = app.state.sessions
        for session in list(sessions.values()):
            await _close_session(session)
        sessions.clear()

    app = FastAPI(
        title="Listing Ingest API",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.client_factory = client_factory or _default_client
    app.state.sessions = {}

    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.exception_handler(DraftIncomplete)
    async def draft_incomplete(request: Request, exc: DraftIncomplete):
        return ORJSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(PersistError)
    async def persist_failed(request: Request, exc: PersistError):
        return ORJSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(CursorError)
    async def cursor_conflict(request: Request, exc: CursorError):
        return ORJSONResponse(status_code=409, content={"detail": str(exc)})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/runs", response_model=RunView, status_code=202)
    async def start_run(
        request: Request,
        photos: list[UploadFile] = File(...),
        mode: Mode = Form(Mode.BULK),
        enhance: bool = Form(False),
        category: str | None = Form(None),
        authorization: str | None = Header(None),
    ):
        """Accept the operator's photos and start processing in the background."""
        item_type = None
        if category:
            item_type = normalize_item_type(category)
            if item_type is None:
                raise HTTPException(status_code=422, detail=f"Unknown category '{category}'")

        run = PipelineRun(mode=mode, enhance_covers=enhance, category=item_type)
        selected = [
            RawPhoto(
                filename=f.filename or f"photo-{i + 1}",
                source_bytes=await f.read(),
                content_type=f.content_type or "application/octet-stream",
            )
            for i, f in enumerate(photos)
        ]
        run.add_photos(selected)
        if not run.photos:
            raise HTTPException(status_code=422, detail="No image files in upload")

        settings: Settings = app.state.settings
        client = app.state.client_factory(settings, _bearer(authorization, settings.access_token))
        app.state.sessions[run.run_id] = RunSession(run=run, client=client)
        Pipeline(client, settings).start(run)
        logger.info("Started run %s with %d photos", run.run_id, len(run.photos))
        return _run_view(run)

    @app.get("/api/runs/{run_id}", response_model=RunView)
    async def get_run(request: Request, run_id: str):
        return _run_view(_session(request, run_id).run)

    @app.delete("/api/runs/{run_id}", status_code=204)
    async def delete_run(request: Request, run_id: str):
        """Reset the run (cancelling any in-flight work) and forget it."""
        session = _session(request, run_id)
        del request.app.state.sessions[run_id]
        await _close_session(session)
        return Response(status_code=204)

    @app.patch("/api/runs/{run_id}/drafts/{index}", response_model=DraftView)
    async def patch_draft(request: Request, run_id: str, index: int, patch: DraftPatch):
        """Validate the whole patch, then apply it; a rejected patch changes nothing."""
        cursor = _cursor(request, run_id)
        changes = {_FIELD_NAMES.get(k, k): v for k, v in (patch.fields or {}).items()}
        if patch.item_type is not None:
            item_type = normalize_item_type(patch.item_type)
            if item_type is None:
                raise HTTPException(status_code=422, detail=f"Unknown item type '{patch.item_type}'")
            changes["item_type"] = item_type
        if changes:
            try:
                cursor.update_fields(index, **changes)
            except (ValueError, ValidationError) as e:
                raise HTTPException(status_code=422, detail=str(e))
        cursor.assign(
            index,
            target_user_id=patch.target_user_id,
            scheduled_date=patch.scheduled_date,
            scheduled_time=patch.scheduled_time,
        )
        return _draft_view(index, cursor.drafts[index])

    @app.post("/api/runs/{run_id}/drafts/{index}/cover/{image_index}", response_model=DraftView)
    async def set_cover(request: Request, run_id: str, index: int, image_index: int):
        cursor = _cursor(request, run_id)
        cursor.set_cover(index, image_index)
        return _draft_view(index, cursor.drafts[index])

    @app.post("/api/runs/{run_id}/drafts/{index}/save", response_model=ReviewResult)
    async def save_draft(request: Request, run_id: str, index: int):
        """Persist the draft under review. The run is reset and forgotten once the last draft is committed."""
        cursor = _cursor(request, run_id)
        draft = cursor.drafts[index] if 0 <= index < len(cursor.drafts) else None
        await cursor.save(index)
        view = ReviewResult(draft=_draft_view(index, draft), cursor=_cursor_view(cursor))
        await _forget_if_done(request, run_id, cursor)
        return view

    @app.post("/api/runs/{run_id}/drafts/{index}/skip", response_model=ReviewResult)
    async def skip_draft(request: Request, run_id: str, index: int):
        cursor = _cursor(request, run_id)
        draft = cursor.drafts[index] if 0 <= index < len(cursor.drafts) else None
        cursor.skip(index)
        view = ReviewResult(draft=_draft_view(index, draft), cursor=_cursor_view(cursor))
        await _forget_if_done(request, run_id, cursor)
        return view

    @app.post("/api/runs/{run_id}/cursor/{index}", response_model=CursorView)
    async def jump(request: Request, run_id: str, index: int):
        cursor = _cursor(request, run_id)
        cursor.jump_to(index)
        return _cursor_view(cursor)


app = create_app()
