"""Tests for the notebook and run API endpoints."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeInvoker
from httpx import ASGITransport, AsyncClient

import cadence.server
from cadence.config import CadenceConfig
from cadence.notebook.notebook import NotebookStatus
from cadence.notebook.store import NotebookStore, reset_store
from cadence.server import _background_tasks, app

HEADERS = {"X-User-Id": "alice"}


@pytest.fixture
def _store(tmp_path: Path) -> Generator[NotebookStore]:
    """Provide a fresh NotebookStore and a scripted invoker behind the API."""
    store = NotebookStore(tmp_path)
    with (
        patch("cadence.server.get_store", return_value=store),
        patch("cadence.server.load_config", return_value=CadenceConfig()),
        patch("cadence.server.build_invoker", return_value=FakeInvoker(failures={"bad": "boom"})),
    ):
        yield store
    reset_store()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient]:
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test", headers=HEADERS) as c:
        yield c


async def _notebook_with(client: AsyncClient, *cells: tuple[str, str]) -> str:
    resp = await client.post("/api/notebooks", json={"title": "Ops"})
    assert resp.status_code == 200
    nb_id: str = resp.json()["id"]
    for cell_type, title in cells:
        resp = await client.post(
            f"/api/notebooks/{nb_id}/cells", json={"cell_type": cell_type, "title": title, "content": title}
        )
        assert resp.status_code == 200
    return nb_id


async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert "approve" in resp.json()["cell_types"]


async def test_create_and_list_notebooks(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"))

    resp = await client.get("/api/notebooks")
    assert resp.status_code == 200
    assert resp.json()[0]["id"] == nb_id
    assert resp.json()[0]["cells"] == 1

    other = await client.get("/api/notebooks", headers={"X-User-Id": "bob"})
    assert other.json() == []
    missing = await client.get(f"/api/notebooks/{nb_id}", headers={"X-User-Id": "bob"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


async def test_cell_editing(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"), ("command", "b"))
    cells = _store.load_cells(nb_id)

    resp = await client.patch(f"/api/notebooks/{nb_id}/cells/{cells[1].id}", json={"title": "renamed"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "renamed"

    resp = await client.put(f"/api/notebooks/{nb_id}/cells/order", json={"cell_order": [cells[1].id, cells[0].id]})
    assert resp.status_code == 200
    assert [c["title"] for c in resp.json()] == ["renamed", "a"]

    resp = await client.delete(f"/api/notebooks/{nb_id}/cells/{cells[0].id}")
    assert resp.status_code == 200
    assert [c.title for c in _store.load_cells(nb_id)] == ["renamed"]

    resp = await client.patch(f"/api/notebooks/{nb_id}/cells/{cells[1].id}", json={"dependencies": [cells[1].id]})
    assert resp.status_code == 400


async def test_run_and_history(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"), ("command", "b"))

    resp = await client.post(f"/api/notebooks/{nb_id}/run", json={"variables": {"topic": "q3"}})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["cells_completed"] == 2
    assert body["variables"]["topic"] == "q3"

    runs = await client.get(f"/api/notebooks/{nb_id}/runs")
    assert runs.json()[0]["run_number"] == 1
    assert runs.json()[0]["trigger"] == "api"


async def test_failed_run_reports_error(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "bad"), ("command", "b"))

    resp = await client.post(f"/api/notebooks/{nb_id}/run", json={})
    assert resp.json()["status"] == "failed"
    assert resp.json()["error"] == "boom"

    resp = await client.post(f"/api/notebooks/{nb_id}/run", json={"stop_on_error": False})
    assert resp.json()["status"] == "partial"


async def test_approval_flow(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"), ("approve", "gate"), ("command", "c"))
    gate_id = _store.load_cells(nb_id)[1].id

    resp = await client.post(f"/api/notebooks/{nb_id}/run", json={})
    assert resp.json()["status"] == "paused"
    assert resp.json()["paused_at_cell_id"] == gate_id

    conflict = await client.post(f"/api/notebooks/{nb_id}/run", json={})
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "CONFLICT"

    resp = await client.post(f"/api/notebooks/{nb_id}/approve", json={"cell_id": gate_id, "feedback": "ok"})
    assert resp.status_code == 200
    assert resp.json()["continue_from"] == 2

    again = await client.post(f"/api/notebooks/{nb_id}/approve", json={"cell_id": gate_id})
    assert again.status_code == 400
    assert again.json()["code"] == "INVALID_STATE"

    resp = await client.post(f"/api/notebooks/{nb_id}/run", json={"start_from_cell": 2})
    assert resp.json()["status"] == "completed"
    assert _store.load_notebook(nb_id).status == NotebookStatus.COMPLETED


async def test_reject_then_reset(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("approve", "gate"), ("command", "b"))
    gate_id = _store.load_cells(nb_id)[0].id
    await client.post(f"/api/notebooks/{nb_id}/run", json={})

    resp = await client.post(f"/api/notebooks/{nb_id}/reject", json={"cell_id": gate_id, "feedback": "no"})
    assert resp.json()["notebook_status"] == "failed"

    refused = await client.post(f"/api/notebooks/{nb_id}/run", json={})
    assert refused.status_code == 400

    resp = await client.post(f"/api/notebooks/{nb_id}/reset")
    assert resp.status_code == 200
    assert resp.json()["status"] == "idle"


async def test_run_single_cell(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"))
    cell_id = _store.load_cells(nb_id)[0].id

    resp = await client.post(f"/api/notebooks/{nb_id}/cells/{cell_id}/run", json={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    missing = await client.post(f"/api/notebooks/{nb_id}/cells/cell_missing/run", json={})
    assert missing.status_code == 404


async def test_cancel_idle_notebook(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"))

    resp = await client.post(f"/api/notebooks/{nb_id}/cancel")
    assert resp.status_code == 400


async def test_run_stream_emits_events(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"))

    resp = await client.post(f"/api/notebooks/{nb_id}/run/stream", json={})
    assert resp.status_code == 200
    assert "event: run_started" in resp.text
    assert "event: cell_finished" in resp.text
    assert "event: run_finished" in resp.text
    assert not _background_tasks

    missing = await client.post("/api/notebooks/nb_missing/run/stream", json={})
    assert "event: error" in missing.text
    assert "NOT_FOUND" in missing.text


async def test_stream_run_task_is_held_until_done(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client, ("command", "a"))
    held: list[int] = []
    invoker = cadence.server.build_invoker(CadenceConfig())
    invoker.before_call = lambda cell: held.append(len(_background_tasks))

    resp = await client.post(f"/api/notebooks/{nb_id}/run/stream", json={})

    assert resp.status_code == 200
    assert held == [1]
    assert not _background_tasks


async def test_delete_notebook(client: AsyncClient, _store: NotebookStore) -> None:
    nb_id = await _notebook_with(client)

    resp = await client.delete(f"/api/notebooks/{nb_id}")
    assert resp.status_code == 200
    assert (await client.get(f"/api/notebooks/{nb_id}")).status_code == 404
