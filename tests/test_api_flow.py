from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi.testclient import TestClient

from batch_ingest_api.app.chain import InlineSubtaskChain, SubtaskChain
from batch_ingest_api.app.fast_store import RedisTaskStateStore
from batch_ingest_api.main import create_app

from conftest import (
    ADMIN_HEADERS,
    OTHER_ADMIN_HEADERS,
    InMemoryBatchLogStorage,
    InMemoryCatalogStore,
    RecordingChain,
    ScriptedLLM,
    make_settings,
)


@contextmanager
def _client(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
    *,
    chain: SubtaskChain | None = None,
    **overrides: Any,
) -> Iterator[TestClient]:
    app = create_app(
        settings_override=make_settings(**overrides),
        store=store,
        logs=batch_logs,
        catalog=catalog,
        llm_adapter=llm,
        chain=chain or InlineSubtaskChain(store),
    )
    with TestClient(app) as client:
        yield client


def _resources(*names: str) -> list[dict[str, str]]:
    return [{"name": name, "link": f"https://example.com/{index}"} for index, name in enumerate(names, 1)]


def test_routes_require_gateway_identity(client: TestClient) -> None:
    response = client.post("/batch-upload/submit", json={"resources": _resources("a")})

    assert response.status_code == 401
    assert response.json() == {"detail": "Missing caller identity", "errors": []}


def test_routes_require_admin_role(client: TestClient) -> None:
    headers = {"X-User-Id": "user-9", "X-User-Role": "user"}

    assert client.get("/batch-upload/logs", headers=headers).status_code == 403
    assert client.post("/batch-upload/parse-text", json={"text": "x"}, headers=headers).status_code == 403


def test_three_items_in_batches_of_two_complete(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
) -> None:
    with _client(store, batch_logs, catalog, llm, batch_size=2) as client:
        response = client.post(
            "/batch-upload/submit",
            json={"title": "Three", "resources": _resources("Alpha Tool", "Beta Tool", "Gamma Tool")},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_batches"] == 2
        assert body["batch_size"] == 2
        assert [entry["size"] for entry in body["batches"]] == [2, 1]

        task = store.get_main_task(body["task_uuid"])
        assert task.status == "completed"
        assert task.completed_batches == 2
        assert task.success_count == 3
        assert {row.title for row in catalog.resources.values()} == {"Alpha Tool", "Beta Tool", "Gamma Tool"}


def test_item_timeout_fails_only_that_item(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
) -> None:
    gate = threading.Event()
    catalog.blocked_titles["Slow One"] = gate
    try:
        with _client(
            store, batch_logs, catalog, llm, batch_size=3, resource_timeout_s=0.3, ai_timeout_s=0.2
        ) as client:
            task_uuid = client.post(
                "/batch-upload/submit",
                json={"resources": _resources("Fast One", "Slow One", "Fast Two")},
                headers=ADMIN_HEADERS,
            ).json()["task_uuid"]
            progress = client.get(f"/batch-upload/progress/{task_uuid}", headers=ADMIN_HEADERS).json()
    finally:
        gate.set()

    results = {row["name"]: row for row in progress["details"]["results"]}
    assert results["Slow One"]["success"] is False
    assert "timed out" in results["Slow One"]["error"]
    assert results["Fast One"]["success"] is True
    assert results["Fast Two"]["success"] is True


def test_progress_after_retirement_matches_final_record(
    client: TestClient, store: RedisTaskStateStore, batch_logs: InMemoryBatchLogStorage
) -> None:
    task_uuid = client.post(
        "/batch-upload/submit", json={"resources": _resources("One", "Two")}, headers=ADMIN_HEADERS
    ).json()["task_uuid"]
    assert store.get_progress(task_uuid) is None

    body = client.get(f"/batch-upload/progress/{task_uuid}", headers=ADMIN_HEADERS).json()

    final = batch_logs.get_batch_log(task_uuid)
    assert body["source"] == "durable"
    assert body["task_info"]["status"] == "completed"
    assert body["progress"]["total_count"] == final.total_count == 2
    assert body["progress"]["success_count"] == final.success_count == 2
    assert body["progress"]["failed_count"] == final.failed_count == 0
    assert body["progress"]["progress_percentage"] == 100
    assert body["details"]["summary"]["success"] == 2


def test_review_failure_leaves_resource_pending_and_item_successful(
    store: RedisTaskStateStore, batch_logs: InMemoryBatchLogStorage, catalog: InMemoryCatalogStore
) -> None:
    def review(_prompt: str) -> dict[str, Any]:
        raise RuntimeError("moderation provider down")

    llm = ScriptedLLM(review=review)
    with _client(store, batch_logs, catalog, llm) as client:
        task_uuid = client.post(
            "/batch-upload/submit", json={"resources": _resources("Handy Tool")}, headers=ADMIN_HEADERS
        ).json()["task_uuid"]
        client.app.state.services.reviewer.shutdown(wait=True)

    [result] = batch_logs.get_batch_log(task_uuid).details["results"]
    assert result["success"] is True
    resource = catalog.get_resource(result["uuid"])
    assert resource.status == "pending"
    assert resource.ai_risk_score == 50
    assert resource.auto_approved is False
    assert [entry["stage"] for entry in store.list_dead_letters()] == ["score"]


def test_invalid_submission_lists_every_problem(client: TestClient, batch_logs: InMemoryBatchLogStorage) -> None:
    response = client.post(
        "/batch-upload/submit",
        json={"resources": [{"name": "ok", "link": "ftp://example.com"}, {"link": "https://x.org"}]},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 422
    assert response.json() == {
        "detail": "2 invalid resource entries",
        "errors": [
            "resource #1: link must be an absolute http(s) URL",
            "resource #2: name is required",
        ],
    }
    assert batch_logs.count_batch_logs("admin-1") == 0


def test_progress_is_private_to_its_owner(client: TestClient) -> None:
    task_uuid = client.post(
        "/batch-upload/submit", json={"resources": _resources("One")}, headers=ADMIN_HEADERS
    ).json()["task_uuid"]

    assert client.get(f"/batch-upload/progress/{task_uuid}", headers=OTHER_ADMIN_HEADERS).status_code == 403
    assert client.get(f"/batch-upload/logs/{task_uuid}", headers=OTHER_ADMIN_HEADERS).status_code == 403
    missing = client.get("/batch-upload/progress/unknown-task", headers=ADMIN_HEADERS)
    assert missing.status_code == 404


def test_logs_listing_detail_and_clear(client: TestClient) -> None:
    uuids = [
        client.post(
            "/batch-upload/submit", json={"resources": _resources(f"Item {index}")}, headers=ADMIN_HEADERS
        ).json()["task_uuid"]
        for index in range(3)
    ]

    listing = client.get("/batch-upload/logs", params={"limit": 2}, headers=ADMIN_HEADERS).json()
    assert [entry["uuid"] for entry in listing["logs"]] == [uuids[2], uuids[1]]
    assert listing["pagination"]["total"] == 3
    assert listing["pagination"]["has_next"] is True

    detail = client.get(f"/batch-upload/logs/{uuids[0]}", headers=ADMIN_HEADERS).json()
    assert detail["log"]["status"] == "completed"
    assert detail["log"]["details"]["summary"]["total"] == 1

    assert client.get("/batch-upload/logs", params={"limit": 101}, headers=ADMIN_HEADERS).status_code == 422
    assert client.delete("/batch-upload/logs", headers=ADMIN_HEADERS).json() == {"deleted": 3}
    assert client.get("/batch-upload/logs", headers=ADMIN_HEADERS).json()["logs"] == []


def test_parse_text_route(client: TestClient) -> None:
    response = client.post(
        "/batch-upload/parse-text",
        json={"text": "Cool Tool - https://example.com/tool\nNice Film - https://example.com/film"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_resources"] == 2
    assert body["stats"]["method"] == "regex"

    empty = client.post("/batch-upload/parse-text", json={"text": " "}, headers=ADMIN_HEADERS)
    assert empty.status_code == 422


def test_internal_route_checks_token_and_runs_subtask(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
) -> None:
    chain = RecordingChain(store)
    with _client(store, batch_logs, catalog, llm, chain=chain, internal_token="secret") as client:
        client.post("/batch-upload/submit", json={"resources": _resources("One", "Two")}, headers=ADMIN_HEADERS)
        first = chain.dispatched[0]
        path = "/internal/batch-upload/process-subtask"

        assert client.post(path, json={"subtask_uuid": first}).status_code == 401
        assert client.post(path, json={"subtask_uuid": first}, headers={"X-Internal-Token": "nope"}).status_code == 401
        assert client.post(path, json={"subtask_uuid": ""}, headers={"X-Internal-Token": "secret"}).status_code == 422

        response = client.post(path, json={"subtask_uuid": first}, headers={"X-Internal-Token": "secret"})
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["success_count"] == 1
        assert len(chain.dispatched) == 2

        repeat = client.post(path, json={"subtask_uuid": first}, headers={"X-Internal-Token": "secret"})
        assert repeat.json()["skipped"] is True

        missing = client.post(path, json={"subtask_uuid": "gone"}, headers={"X-Internal-Token": "secret"})
        assert missing.status_code == 404


def test_internal_route_is_closed_without_configured_token(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
) -> None:
    chain = RecordingChain(store)
    with _client(store, batch_logs, catalog, llm, chain=chain) as client:
        task_uuid = client.post(
            "/batch-upload/submit",
            json={"resources": _resources("One", "Two", "Three")},
            headers=ADMIN_HEADERS,
        ).json()["task_uuid"]
        last = store.list_subtasks(task_uuid)[-1]
        path = "/internal/batch-upload/process-subtask"

        anonymous = client.post(path, json={"subtask_uuid": last.uuid})
        guessed = client.post(path, json={"subtask_uuid": last.uuid}, headers={"X-Internal-Token": ""})

        assert anonymous.status_code == 401
        assert anonymous.json()["detail"] == "Internal route is disabled: no internal token configured"
        assert guessed.status_code == 401
        assert store.get_subtask(last.uuid).status == "pending"
        assert catalog.resources == {}


def test_recover_route(
    store: RedisTaskStateStore,
    batch_logs: InMemoryBatchLogStorage,
    catalog: InMemoryCatalogStore,
    llm: ScriptedLLM,
) -> None:
    chain = RecordingChain(store)
    with _client(store, batch_logs, catalog, llm, chain=chain) as client:
        task_uuid = client.post(
            "/batch-upload/submit", json={"resources": _resources("One", "Two")}, headers=ADMIN_HEADERS
        ).json()["task_uuid"]

        swept = client.post("/batch-upload/recover", json={}, headers=ADMIN_HEADERS)
        assert swept.status_code == 200
        assert [action["action"] for action in swept.json()["actions"]] == ["skipped"]

        forced = client.post("/batch-upload/recover", json={"task_uuid": task_uuid}, headers=ADMIN_HEADERS)
        assert [action["action"] for action in forced.json()["actions"]] == ["retriggered"]

        other = client.post("/batch-upload/recover", json={"task_uuid": task_uuid}, headers=OTHER_ADMIN_HEADERS)
        assert other.status_code == 403
        invalid = client.post("/batch-upload/recover", json={"task_uuid": "bad id!"}, headers=ADMIN_HEADERS)
        assert invalid.status_code == 422
