"""FastAPI 入口，暴露对话树的提问、历史与快照接口。"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatgraph.config import (
    require_memgraph_host,
    require_memgraph_port,
    storage_backend,
)
from chatgraph.errors import IntegrityError, NotFoundError, StoreError
from chatgraph.ids import is_message_id, new_message_id
from chatgraph.models import (
    AskPayload,
    AttachTopicPayload,
    Branch,
    CreateMessagePayload,
    Message,
    MessageIdView,
    ReplayPayload,
    SnapshotResult,
)
from chatgraph.services.branch_generator import BranchGenerator
from chatgraph.services.completion_client import CompletionClient, ProviderSettings
from chatgraph.services.history import HistoryResolver
from chatgraph.services.snapshot_engine import SnapshotEngine
from chatgraph.storage.ports import ConversationStoragePort

app = FastAPI(title="Chat Graph API", version="0.1.0")

logger = logging.getLogger(__name__)


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.warning("message not found: %s", exc.message_id)
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(IntegrityError)
async def _integrity_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def _store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("storage failure: %s", exc)
    return JSONResponse(status_code=503, content={"detail": f"storage unavailable: {exc}"})


@app.exception_handler(ValidationError)
async def _validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


def _require_message_id(message_id: str) -> str:
    if not is_message_id(message_id):
        raise HTTPException(status_code=422, detail=f"malformed message id: {message_id}")
    return message_id


@lru_cache(maxsize=1)
def get_graph_storage() -> ConversationStoragePort:  # pragma: no cover
    """Graph storage 单例，避免重复建立连接。"""
    try:
        backend = storage_backend()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if backend == "memory":
        from chatgraph.storage.memory_storage import InMemoryStorage

        return InMemoryStorage()
    from chatgraph.storage.memgraph_storage import MemgraphStorage

    try:
        return MemgraphStorage(host=require_memgraph_host(), port=require_memgraph_port())
    except (RuntimeError, ValueError, StoreError) as exc:
        raise HTTPException(status_code=503, detail=f"memgraph unavailable: {exc}") from exc


@lru_cache(maxsize=1)
def get_completion_client() -> CompletionClient:  # pragma: no cover
    return CompletionClient(ProviderSettings.from_env())


def get_history_resolver(
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> HistoryResolver:
    return HistoryResolver(storage)


def get_branch_generator(
    storage: ConversationStoragePort = Depends(get_graph_storage),
    client: CompletionClient = Depends(get_completion_client),
) -> BranchGenerator:
    return BranchGenerator(storage, client)


def get_snapshot_engine(
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> SnapshotEngine:
    return SnapshotEngine(storage)


@app.get("/api/v1/msgid", response_model=MessageIdView)
async def new_message_id_endpoint() -> MessageIdView:
    return MessageIdView(id=new_message_id())


@app.post("/api/v1/messages", response_model=Message, status_code=201)
async def create_message_endpoint(
    payload: CreateMessagePayload,
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> Message:
    if payload.parent_id is not None:
        _require_message_id(payload.parent_id)
    message = Message(
        id=new_message_id(),
        role=payload.role,
        content=payload.content,
        tool_calls=payload.tool_calls,
        tool_call_id=payload.tool_call_id,
    )
    return storage.create_message(message, parent_id=payload.parent_id)


@app.get("/api/v1/messages/{message_id}", response_model=Message)
async def get_message_endpoint(
    message_id: str,
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> Message:
    message = storage.get_message(_require_message_id(message_id))
    if message is None:
        raise NotFoundError(message_id)
    return message


@app.get("/api/v1/messages/{message_id}/history", response_model=List[Message])
async def get_history_endpoint(
    message_id: str,
    resolver: HistoryResolver = Depends(get_history_resolver),
) -> list[Message]:
    return resolver.resolve(_require_message_id(message_id))


@app.get("/api/v1/messages/{message_id}/branches", response_model=List[Branch])
async def list_branches_endpoint(
    message_id: str,
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> list[Branch]:
    return storage.list_children(_require_message_id(message_id))


@app.post("/api/v1/messages/{message_id}/ask", response_model=List[Branch])
async def ask_endpoint(
    message_id: str,
    payload: AskPayload,
    generator: BranchGenerator = Depends(get_branch_generator),
) -> list[Branch]:
    try:
        return await generator.generate(_require_message_id(message_id), payload.model)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/api/v1/messages/{message_id}/snapshot", response_model=Optional[SnapshotResult])
async def snapshot_endpoint(
    message_id: str,
    engine: SnapshotEngine = Depends(get_snapshot_engine),
) -> SnapshotResult | None:
    return engine.snapshot(_require_message_id(message_id))


@app.get("/api/v1/messages/{message_id}/snapshots", response_model=List[SnapshotResult])
async def list_snapshots_endpoint(
    message_id: str,
    limit: int = Query(1, ge=1, le=100),
    engine: SnapshotEngine = Depends(get_snapshot_engine),
) -> list[SnapshotResult]:
    return engine.snapshots(_require_message_id(message_id), limit=limit)


@app.post("/api/v1/roots/{root_id}/topic", status_code=204)
async def attach_topic_endpoint(
    root_id: str,
    payload: AttachTopicPayload,
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> Response:
    storage.attach_topic(
        root_id=_require_message_id(root_id), topic=payload.topic, tags=payload.tags
    )
    return Response(status_code=204)


@app.post("/api/v1/replay", status_code=204)
async def replay_endpoint(
    payload: ReplayPayload,
    storage: ConversationStoragePort = Depends(get_graph_storage),
) -> Response:
    try:
        storage.run_replay_script(payload.cypher)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return Response(status_code=204)
