"""Data tree endpoints: point reads and writes.

Every successful write is published to WebSocket subscribers before the
response is returned, so a client's own write is echoed back through its
subscriptions.
"""

from fastapi import APIRouter, HTTPException, Query
from loguru import logger

from backend.app.schemas.db import (
    PushRequest,
    PushResponse,
    SetRequest,
    UpdateRequest,
    ValueResponse,
)
from backend.app.services.broadcaster import publish
from backend.app.services.tree_store import tree_store
from threadline.keys import join_path, split_path

router = APIRouter(prefix="/db", tags=["db"])

_FORBIDDEN = set(".#$[]")


def _check_path(path: str, *, allow_root: bool = False) -> str:
    segments = split_path(path)
    if not segments and not allow_root:
        raise HTTPException(status_code=400, detail="Path must not be empty")
    for seg in segments:
        if _FORBIDDEN & set(seg):
            raise HTTPException(status_code=400, detail=f"Invalid path segment: {seg!r}")
    return "/".join(segments)


@router.get("", response_model=ValueResponse)
async def read_value(path: str = Query(default="")) -> dict:
    path = _check_path(path, allow_root=True)
    return {"path": path, "value": tree_store.get(path)}


@router.put("", response_model=ValueResponse)
async def set_value(data: SetRequest) -> dict:
    path = _check_path(data.path)
    written = await tree_store.set(path, data.value)
    await publish(written)
    logger.debug("SET {}", path)
    return {"path": path, "value": tree_store.get(path)}


@router.patch("", response_model=ValueResponse)
async def update_value(data: UpdateRequest) -> dict:
    path = _check_path(data.path, allow_root=True)
    for rel in data.fields:
        _check_path(join_path(path, rel))
    written = await tree_store.update(path, data.fields)
    await publish(written)
    logger.debug("UPDATE {} ({} field(s))", path, len(data.fields))
    return {"path": path, "value": tree_store.get(path)}


@router.post("/push", response_model=PushResponse, status_code=201)
async def push_value(data: PushRequest) -> dict:
    path = _check_path(data.path)
    if data.value is None:
        raise HTTPException(status_code=400, detail="Cannot push a null value")
    key, written = await tree_store.push(path, data.value)
    await publish(written)
    logger.debug("PUSH {}/{}", path, key)
    return {"path": path, "key": key}
