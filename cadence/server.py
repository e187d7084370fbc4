"""FastAPI server for Cadence."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from cadence.config import load_config, notebooks_dir
from cadence.engine.engine import ExecutionEngine, RunEvent
from cadence.engine.handlers import registered_types
from cadence.errors import CadenceError, ConflictError, NotFoundError, StateError
from cadence.notebook.store import get_store
from cadence.runtime import build_critic, build_engine, build_gate, build_invoker

logger = logging.getLogger("cadence.server")

app = FastAPI(title="Cadence", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Streamed runs outlive a disconnected client; hold them until they finish.
_background_tasks: set[asyncio.Task[None]] = set()

_ERROR_STATUS: dict[type[CadenceError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    StateError: 400,
}


@app.exception_handler(CadenceError)
async def _cadence_error(request: Request, exc: CadenceError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), 400)
    logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.message, "code": exc.code})


@app.exception_handler(ValueError)
async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "code": "BAD_REQUEST"})


def _owner(x_user_id: str | None = Header(default=None)) -> str:
    return x_user_id or load_config().default_owner


def _engine() -> ExecutionEngine:
    config = load_config()
    store = get_store(notebooks_dir())
    return build_engine(store, config, invoker=build_invoker(config), critic=build_critic(config))


@app.get("/api/health")
async def health() -> dict[str, Any]:
    return {"ok": True, "cell_types": registered_types()}


# --- Notebooks ---


class CreateNotebookRequest(BaseModel):
    title: str = "Untitled Notebook"
    description: str = ""


@app.post("/api/notebooks")
async def create_notebook(request: CreateNotebookRequest, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    notebook = store.create_notebook(owner, title=request.title, description=request.description)
    return notebook.model_dump(mode="json")


@app.get("/api/notebooks")
async def list_notebooks(owner: str = Depends(_owner)) -> list[dict[str, Any]]:
    store = get_store(notebooks_dir())
    return [
        {"id": nb.id, "title": nb.title, "status": nb.status, "cells": len(nb.cells), "updated_at": nb.updated_at}
        for nb in store.list_notebooks(owner)
    ]


@app.get("/api/notebooks/{notebook_id}")
async def get_notebook(notebook_id: str, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    return store.load_notebook(notebook_id, owner).model_dump(mode="json")


@app.delete("/api/notebooks/{notebook_id}")
async def delete_notebook(notebook_id: str, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    store.delete_notebook(notebook_id, owner)
    return {"ok": True, "deleted_id": notebook_id}


@app.get("/api/notebooks/{notebook_id}/runs")
async def list_runs(notebook_id: str, owner: str = Depends(_owner)) -> list[dict[str, Any]]:
    store = get_store(notebooks_dir())
    notebook = store.load_notebook(notebook_id, owner)
    return [run.model_dump(mode="json") for run in reversed(notebook.runs)]


# --- Cells ---


class AddCellRequest(BaseModel):
    cell_type: str = "command"
    title: str = ""
    content: str = ""
    dependencies: list[str] = Field(default_factory=list)
    insert_at: int | None = None


class UpdateCellRequest(BaseModel):
    cell_type: str | None = None
    title: str | None = None
    content: str | None = None
    dependencies: list[str] | None = None


class ReorderRequest(BaseModel):
    cell_order: list[str]


@app.post("/api/notebooks/{notebook_id}/cells")
async def add_cell(notebook_id: str, request: AddCellRequest, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    cell = store.add_cell(
        notebook_id,
        owner,
        cell_type=request.cell_type,
        title=request.title,
        content=request.content,
        dependencies=request.dependencies,
        insert_at=request.insert_at,
    )
    return cell.model_dump(mode="json")


@app.patch("/api/notebooks/{notebook_id}/cells/{cell_id}")
async def update_cell(
    notebook_id: str, cell_id: str, request: UpdateCellRequest, owner: str = Depends(_owner)
) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    cell = store.update_cell(notebook_id, cell_id, owner, **request.model_dump(exclude_none=True))
    return cell.model_dump(mode="json")


@app.delete("/api/notebooks/{notebook_id}/cells/{cell_id}")
async def delete_cell(notebook_id: str, cell_id: str, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    store.delete_cell(notebook_id, cell_id, owner)
    return {"ok": True, "deleted_id": cell_id}


@app.put("/api/notebooks/{notebook_id}/cells/order")
async def reorder_cells(notebook_id: str, request: ReorderRequest, owner: str = Depends(_owner)) -> list[dict[str, Any]]:
    store = get_store(notebooks_dir())
    cells = store.reorder_cells(notebook_id, request.cell_order, owner)
    return [cell.model_dump(mode="json") for cell in cells]


# --- Execution ---


class RunRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)
    start_from_cell: int = 0
    stop_on_error: bool | None = None


class RunCellRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(BaseModel):
    cell_id: str
    feedback: str | None = None


@app.post("/api/notebooks/{notebook_id}/run")
async def run_notebook(notebook_id: str, request: RunRequest, owner: str = Depends(_owner)) -> dict[str, Any]:
    logger.info("POST /run notebook=%s start_from_cell=%d", notebook_id, request.start_from_cell)
    result = await _engine().run(
        notebook_id,
        owner,
        variables=request.variables,
        start_from_cell=request.start_from_cell,
        stop_on_error=request.stop_on_error,
        trigger="api",
    )
    return result.model_dump(mode="json")


@app.post("/api/notebooks/{notebook_id}/run/stream")
async def run_notebook_stream(notebook_id: str, request: RunRequest, owner: str = Depends(_owner)) -> EventSourceResponse:
    logger.info("POST /run/stream notebook=%s start_from_cell=%d", notebook_id, request.start_from_cell)
    engine = _engine()
    queue: asyncio.Queue[RunEvent | None] = asyncio.Queue()

    async def _run() -> None:
        try:
            await engine.run(
                notebook_id,
                owner,
                variables=request.variables,
                start_from_cell=request.start_from_cell,
                stop_on_error=request.stop_on_error,
                trigger="api",
                on_event=queue.put,
            )
        except CadenceError as e:
            await queue.put(RunEvent("error", {"code": e.code, "message": e.message}))
        except Exception:
            logger.exception("Error in run stream")
            await queue.put(RunEvent("error", {"code": "STREAM_ERROR", "message": "Internal server error"}))
        finally:
            await queue.put(None)

    async def _event_stream() -> AsyncGenerator[dict[str, str]]:
        task = asyncio.create_task(_run())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        while True:
            event = await queue.get()
            if event is None:
                break
            logger.info("SSE >> %s", event.event)
            yield {"event": event.event, "data": json.dumps(event.data, default=str)}
        await task
        logger.info("Run SSE stream complete")

    return EventSourceResponse(_event_stream())


@app.post("/api/notebooks/{notebook_id}/cells/{cell_id}/run")
async def run_cell(
    notebook_id: str, cell_id: str, request: RunCellRequest, owner: str = Depends(_owner)
) -> dict[str, Any]:
    result = await _engine().run_cell(notebook_id, cell_id, owner, variables=request.variables)
    return result.model_dump(mode="json")


@app.post("/api/notebooks/{notebook_id}/approve")
async def approve(notebook_id: str, request: DecisionRequest, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    decision = build_gate(store).approve(notebook_id, request.cell_id, owner, feedback=request.feedback)
    return decision.model_dump(mode="json")


@app.post("/api/notebooks/{notebook_id}/reject")
async def reject(notebook_id: str, request: DecisionRequest, owner: str = Depends(_owner)) -> dict[str, Any]:
    store = get_store(notebooks_dir())
    decision = build_gate(store).reject(notebook_id, request.cell_id, owner, feedback=request.feedback)
    return decision.model_dump(mode="json")


@app.post("/api/notebooks/{notebook_id}/reset")
async def reset(notebook_id: str, force: bool = False, owner: str = Depends(_owner)) -> dict[str, Any]:
    notebook = _engine().reset(notebook_id, owner, force=force)
    return notebook.model_dump(mode="json")


@app.post("/api/notebooks/{notebook_id}/cancel")
async def cancel(notebook_id: str, owner: str = Depends(_owner)) -> dict[str, Any]:
    _engine().cancel(notebook_id, owner)
    return {"ok": True}
