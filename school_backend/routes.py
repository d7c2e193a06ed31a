"""
HTTP routes for the school backend API.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile

from school_backend.db import (
    EVALUATIONS,
    MESSAGES,
    MODULES,
    POSTS,
    DbClient,
    EvaluationRecord,
    ModuleRecord,
    PostRecord,
)
from school_backend.dependencies import (
    get_db_client,
    get_delivery_router,
    get_storage_client,
)
from school_backend.presence import DeliveryRouter
from school_backend.schemas import (
    EvaluationIn,
    EvaluationOut,
    HealthResponse,
    MessageIn,
    MessageOut,
    ModuleIn,
    ModuleOut,
    PostIn,
    PostOut,
    StatusResponse,
    UploadResponse,
)
from school_backend.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()

NEWEST_FIRST = [("createdAt", -1)]


@router.get("/health", response_model=HealthResponse)
async def health(delivery: DeliveryRouter = Depends(get_delivery_router)):
    return HealthResponse(status="ok", online=len(delivery.registry))


# ===== POSTS =====
@router.get("/posts", response_model=list[PostOut])
def list_posts(db: DbClient = Depends(get_db_client)):
    return db.find(POSTS, sort=NEWEST_FIRST)


@router.post("/uploadPost", response_model=StatusResponse)
def upload_post(payload: PostIn, db: DbClient = Depends(get_db_client)):
    record = PostRecord(
        title=payload.title, content=payload.content, image_url=payload.imageUrl
    )
    post_id = db.insert_one(POSTS, record.as_document())
    return StatusResponse(status="ok", id=post_id)


# ===== MESSAGES =====
@router.get("/messages", response_model=list[MessageOut])
def list_messages(
    user: Optional[str] = Query(None, description="Only messages sent or received by this user"),
    peer: Optional[str] = Query(None, description="Narrow to the conversation with this user"),
    limit: int = Query(500, ge=1, le=5000),
    db: DbClient = Depends(get_db_client),
):
    """
    Chat history, oldest first. With ``user`` and ``peer`` this is the
    conversation between the two.
    """
    filter: dict = {}
    if user and peer:
        filter = {
            "$or": [
                {"sender": user, "receiver": peer},
                {"sender": peer, "receiver": user},
            ]
        }
    elif user:
        filter = {"$or": [{"sender": user}, {"receiver": user}]}
    elif peer:
        raise HTTPException(status_code=400, detail="peer requires user")
    return db.find(MESSAGES, filter=filter, sort=[("timestamp", 1)], limit=limit)


@router.post("/sendMessage", response_model=StatusResponse)
async def send_message(
    payload: MessageIn, delivery: DeliveryRouter = Depends(get_delivery_router)
):
    """
    Store a chat message. Nothing is pushed to live connections; clients that
    want realtime delivery emit ``send_message`` on the websocket instead.
    """
    record = await delivery.persist_message(
        payload.sender, payload.receiver, payload.content
    )
    return StatusResponse(status="sent", id=record.id)


# ===== MODULES =====
@router.get("/modules", response_model=list[ModuleOut])
def list_modules(db: DbClient = Depends(get_db_client)):
    return db.find(MODULES, sort=NEWEST_FIRST)


@router.post("/uploadModule", response_model=StatusResponse)
def upload_module(payload: ModuleIn, db: DbClient = Depends(get_db_client)):
    record = ModuleRecord(
        title=payload.title,
        description=payload.description,
        file_url=payload.fileUrl,
    )
    module_id = db.insert_one(MODULES, record.as_document())
    return StatusResponse(status="ok", id=module_id)


@router.post("/uploadFile", response_model=UploadResponse)
async def upload_file(
    file: UploadFile = File(...),
    storage: StorageClient = Depends(get_storage_client),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    try:
        url = await asyncio.to_thread(storage.save, data, file.filename or "file")
    except StorageError as exc:
        logger.exception("Upload of %s failed", file.filename)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return UploadResponse(url=url)


@router.get("/files/{path:path}")
async def download_file(
    path: str, storage: StorageClient = Depends(get_storage_client)
):
    try:
        data = await asyncio.to_thread(storage.get_bytes, path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    except StorageError as exc:
        logger.exception("Download of %s failed", path)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# ===== EVALUATIONS =====
@router.post("/addEvaluation", response_model=StatusResponse)
def add_evaluation(payload: EvaluationIn, db: DbClient = Depends(get_db_client)):
    record = EvaluationRecord(
        student_id=payload.studentId,
        age=payload.age,
        gross_b=payload.grossB,
        gross_e=payload.grossE,
        fine_b=payload.fineB,
        fine_e=payload.fineE,
        social_b=payload.socialB,
        social_e=payload.socialE,
    )
    evaluation_id = db.insert_one(EVALUATIONS, record.as_document())
    return StatusResponse(status="ok", id=evaluation_id)


@router.get("/evaluations/", response_model=list[EvaluationOut])
def list_evaluations(db: DbClient = Depends(get_db_client)):
    return db.find(EVALUATIONS, sort=NEWEST_FIRST)


@router.get("/evaluations/{student_id}", response_model=list[EvaluationOut])
def list_student_evaluations(student_id: str, db: DbClient = Depends(get_db_client)):
    return db.find(EVALUATIONS, filter={"studentId": student_id}, sort=NEWEST_FIRST)
