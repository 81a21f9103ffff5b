"""
FastAPI Backend — Sim Metadata API v1.

Thin HTTP layer over sim_runtime.SimMetadataService plus the bankroll
session CRUD.

Endpoints:
  GET  /api/files/folders              — top-level folders
  GET  /api/files/foldersWithMetadata  — cached aggregated snapshot
  GET  /api/files/{folder}/metadata    — one folder, parsed + tagged
  GET  /api/files/listJSONs/{folder}   — file names inside a folder
  GET  /api/files/{folder}/{file}      — raw file text
  GET  /api/files/{folder}/rng/{file}  — parsed .rng solver output
  POST /api/files/index/rebuild        — rebuild the precomputed index
  POST /api/gametrees                  — store an uploaded game tree
  *    /api/bankroll                   — bankroll session CRUD
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

env_path = os.path.join(os.path.dirname(__file__), ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from sim_kernel.hashing import snapshot_hash
from sim_runtime import (
    AggregationError,
    AggregationTimeoutError,
    FilesystemObjectStore,
    GameTreeUpload,
    IndexCorruptError,
    IndexNotBuiltError,
    ObjectNotFoundError,
    ObjectStoreError,
    SimMetadataService,
    load_settings,
)

from backend.bankroll_repository import (
    BankrollRepository,
    BankrollSessionInput,
    BankrollValidationError,
)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

SETTINGS = load_settings()

logging.basicConfig(
    level=SETTINGS.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Sim Metadata API",
    version="1.0.0",
    description="Solver-output folder metadata, tagging and bankroll tracking",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        SETTINGS.frontend_url,
        "https://www.holdemtools.com",
        "https://holdemtools.com",
        "http://localhost:5173",
        "https://localhost:5173",
    ],
    allow_origin_regex=r"https://([A-Za-z0-9-]+\.)*vercel\.app",
    allow_methods=["*"],
    allow_headers=["*"],
)

# One service (and therefore one snapshot cache) per process.
_SERVICE = SimMetadataService.from_settings(
    FilesystemObjectStore(SETTINGS.storage_root), SETTINGS,
)
logger.info(
    f"[Backend] Serving {SETTINGS.storage_root!r} with "
    f"{SETTINGS.aggregation_source} aggregation source"
)


def get_service() -> SimMetadataService:
    return _SERVICE


def get_bankroll_repo() -> BankrollRepository:
    if not SETTINGS.database_url:
        raise HTTPException(
            status_code=500,
            detail="DATABASE_URL not configured",
        )
    return BankrollRepository(SETTINGS.database_url)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class GameTreeUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder: str = ""
    line: List[str] = []
    acting_pos: str = Field("", alias="actingPos")
    is_icm: bool = Field(False, alias="isICM")
    text: str = ""
    uid: Optional[str] = None
    alive_positions: List[str] = Field([], alias="alivePositions")


class BankrollSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    type: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    hours: Optional[float] = None
    location: Optional[str] = None
    game: Optional[str] = None
    blinds: Optional[str] = None
    buy_in: Optional[Decimal] = Field(None, alias="buyIn")
    cash_out: Optional[Decimal] = Field(None, alias="cashOut")
    profit: Optional[Decimal] = None

    def to_input(self) -> BankrollSessionInput:
        return BankrollSessionInput(**self.model_dump())


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ObjectNotFoundError):
        return HTTPException(status_code=404, detail=f"File not found: {exc.path}")
    if isinstance(exc, IndexNotBuiltError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, IndexCorruptError):
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, AggregationTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, ObjectStoreError):
        logger.error(f"[Backend] Storage failure: {exc}")
        return HTTPException(status_code=502, detail="Storage unavailable")
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error(f"[Backend] Aggregation failed: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


_HANDLED = (AggregationError, ObjectStoreError, ValueError)

# ---------------------------------------------------------------------------
# Files / metadata
# ---------------------------------------------------------------------------


@app.get("/api/files/folders")
async def get_folder_list(service: SimMetadataService = Depends(get_service)) -> List[str]:
    try:
        return await service.list_folders()
    except _HANDLED as exc:
        raise _http_error(exc)


@app.get("/api/files/foldersWithMetadata")
async def get_folders_with_metadata(
    response: Response,
    include_missing: bool = Query(False, alias="includeMissing"),
    service: SimMetadataService = Depends(get_service),
) -> List[Dict[str, Any]]:
    """
    Every folder with its parsed metadata, tags and seats, ordered by
    folder name. Served from the snapshot cache while fresh.
    """
    try:
        snapshot = await service.get_aggregated_snapshot(include_missing)
    except _HANDLED as exc:
        raise _http_error(exc)
    response.headers["ETag"] = f'"{snapshot_hash(snapshot.entries)}"'
    return snapshot.to_list()


@app.post("/api/files/index/rebuild")
async def rebuild_index(service: SimMetadataService = Depends(get_service)):
    try:
        count = await service.rebuild_index()
    except _HANDLED as exc:
        raise _http_error(exc)
    return {"ok": True, "entries": count}


@app.get("/api/files/listJSONs/{folder}")
async def files_in_folder(folder: str, service: SimMetadataService = Depends(get_service)) -> List[str]:
    try:
        return await service.list_folder_files(folder)
    except _HANDLED as exc:
        raise _http_error(exc)


@app.get("/api/files/{folder}/metadata")
async def get_folder_metadata(folder: str, service: SimMetadataService = Depends(get_service)):
    try:
        meta = await service.get_folder_metadata(folder)
    except _HANDLED as exc:
        raise _http_error(exc)
    if meta is None:
        raise HTTPException(
            status_code=404,
            detail=f"metadata.json not found in folder '{folder}'.",
        )
    return meta.to_dict()


@app.get("/api/files/{folder}/rng/{file_name}")
async def get_rng_file(folder: str, file_name: str, service: SimMetadataService = Depends(get_service)):
    try:
        hands = await service.parse_rng_file(folder, file_name)
    except _HANDLED as exc:
        raise _http_error(exc)
    return {hand: value.to_dict() for hand, value in hands.items()}


@app.get("/api/files/{folder}/{file_name}", response_class=PlainTextResponse)
async def grab_data(folder: str, file_name: str, service: SimMetadataService = Depends(get_service)):
    try:
        return await service.read_file(folder, file_name)
    except _HANDLED as exc:
        raise _http_error(exc)


# ---------------------------------------------------------------------------
# Game trees
# ---------------------------------------------------------------------------


@app.post("/api/gametrees")
async def upload_game_tree(req: GameTreeUploadRequest, service: SimMetadataService = Depends(get_service)):
    upload = GameTreeUpload(
        text=req.text,
        folder=req.folder,
        line=req.line,
        acting_pos=req.acting_pos,
        is_icm=req.is_icm,
        uid=req.uid,
        alive_positions=req.alive_positions,
    )
    try:
        path = await service.upload_game_tree(upload)
    except _HANDLED as exc:
        raise _http_error(exc)
    return {"ok": True, "path": path}


# ---------------------------------------------------------------------------
# Bankroll
# ---------------------------------------------------------------------------


@app.get("/api/bankroll")
def list_bankroll_sessions(
    user_id: str = Query("", alias="userId"),
    repo: BankrollRepository = Depends(get_bankroll_repo),
):
    if not user_id.strip():
        raise HTTPException(status_code=400, detail="userId is required.")
    return [s.to_dict() for s in repo.list_sessions(user_id)]


@app.get("/api/bankroll/{session_id}")
def get_bankroll_session(session_id: uuid.UUID, repo: BankrollRepository = Depends(get_bankroll_repo)):
    session = repo.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@app.post("/api/bankroll")
def create_bankroll_session(req: BankrollSessionRequest, repo: BankrollRepository = Depends(get_bankroll_repo)):
    try:
        session = repo.create_session(req.to_input())
    except BankrollValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return session.to_dict()


@app.put("/api/bankroll/{session_id}")
def update_bankroll_session(
    session_id: uuid.UUID,
    req: BankrollSessionRequest,
    repo: BankrollRepository = Depends(get_bankroll_repo),
):
    try:
        session = repo.update_session(session_id, req.to_input())
    except BankrollValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@app.delete("/api/bankroll/{session_id}", status_code=204)
def delete_bankroll_session(session_id: uuid.UUID, repo: BankrollRepository = Depends(get_bankroll_repo)):
    if not repo.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.get("/health")
def health(service: SimMetadataService = Depends(get_service)):
    metrics = service.last_metrics
    return {
        "status": "ok",
        "version": "1.0.0",
        "aggregation_source": service.source_kind,
        "last_aggregation": metrics.to_dict() if metrics else None,
    }
