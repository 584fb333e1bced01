"""Tests for the httpx clients of both remote systems.

Uses httpx.MockTransport so requests never leave the process.

Tests cover:
- Source: record projection, auth params, write-back body, 404 handling
- Target: custom-field translation, search query, create/update bodies,
  retry on 503, parent task ids
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.app.core.retry import RemoteCallError, RetryPolicy
from src.app.sync.clients import HttpSourceClient, HttpTargetClient
from src.app.sync.schemas import EntityKind, TargetRecordWrite

FAST_POLICY = RetryPolicy(max_attempts=2, base_delay=0.001, max_delay=0.001, timeout=5.0)

FOLDER_IDS = {"quote": "F-QUOTES", "work_order": "F-ORDERS"}
CUSTOM_FIELD_IDS = {
    "source_id": "CF-SRC",
    "target_install_date": "CF-DATE",
    "project_manager": "CF-PM",
    "customer": "CF-CUST",
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _task(task_id: str = "T100", **overrides) -> dict:
    task = {
        "id": task_id,
        "title": "WO #1042: Storefront signage",
        "customFields": [
            {"id": "CF-SRC", "value": "42"},
            {"id": "CF-DATE", "value": "2024-12-15"},
            {"id": "CF-OTHER", "value": "ignored"},
        ],
        "responsibleIds": ["KUAAAA"],
        "dates": {"type": "Milestone", "due": "2024-12-15"},
        "customStatusId": "ST-APPROVED",
    }
    task.update(overrides)
    return task


# ── Source Client ────────────────────────────────────────────────────────────


class TestHttpSourceClient:
    """Source REST API client."""

    @pytest.mark.asyncio
    async def test_get_work_order(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "id": 42,
                    "title": "Storefront signage",
                    "txnNumber": 1042,
                    "dueDate": "2024-12-15",
                    "workflowState": "Approved",
                    "projectManagerId": "u-alice",
                    "customer": {"name": "Acme Hardware"},
                },
            )

        async with _client(handler) as http:
            client = HttpSourceClient(http, "https://source.test/api/", "acct-1", "tok", FAST_POLICY)
            record = await client.get_record(EntityKind.work_order, "42")

        assert requests[0].url.path == "/api/sales_orders/42"
        assert requests[0].url.params["account_id"] == "acct-1"
        assert requests[0].url.params["authToken"] == "tok"
        assert record.id == "42"
        assert record.title == "Storefront signage"
        assert record.get("txn_number") == 1042
        assert record.get("status") == "Approved"
        assert record.get("project_manager_id") == "u-alice"
        assert record.get("customer_name") == "Acme Hardware"
        assert record.get("estimator_id") is None

    @pytest.mark.asyncio
    async def test_update_fields_wraps_body(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert request.url.path == "/quotes/7"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        async with _client(handler) as http:
            client = HttpSourceClient(http, "https://source.test", "acct-1", "tok", FAST_POLICY)
            await client.update_fields(EntityKind.quote, "7", {"due_date": "2025-01-10"})

        assert bodies == [{"quote": {"dueDate": "2025-01-10"}}]

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self):
        async with _client(lambda request: httpx.Response(200, json={})) as http:
            client = HttpSourceClient(http, "https://source.test", "acct-1", "tok", FAST_POLICY)
            with pytest.raises(ValueError, match="invalid source fields"):
                await client.update_fields(EntityKind.quote, "7", {"colour": "red"})

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            return httpx.Response(404, text="Record not found")

        async with _client(handler) as http:
            client = HttpSourceClient(http, "https://source.test", "acct-1", "tok", FAST_POLICY)
            with pytest.raises(RemoteCallError) as exc_info:
                await client.get_record(EntityKind.quote, "999")

        assert calls["count"] == 1
        assert exc_info.value.status_code == 404
        assert "tok" not in str(exc_info.value)


# ── Target Client ────────────────────────────────────────────────────────────


class TestHttpTargetClient:
    """Target task API client."""

    def _target(self, http: httpx.AsyncClient) -> HttpTargetClient:
        return HttpTargetClient(
            http,
            "https://target.test/api/v4",
            token="bearer-tok",
            folder_ids=FOLDER_IDS,
            custom_field_ids=CUSTOM_FIELD_IDS,
            policy=FAST_POLICY,
        )

    @pytest.mark.asyncio
    async def test_find_by_source_id(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"data": [_task()]})

        async with _client(handler) as http:
            records = await self._target(http).find_by_source_id(EntityKind.work_order, "42")

        request = requests[0]
        assert request.url.path == "/api/v4/folders/F-ORDERS/tasks"
        assert request.headers["Authorization"] == "Bearer bearer-tok"
        assert json.loads(request.url.params["customFields"]) == [
            {"id": "CF-SRC", "comparator": "EqualTo", "value": "42"}
        ]

        assert len(records) == 1
        record = records[0]
        assert record.id == "T100"
        assert record.get("source_id") == "42"
        assert record.get("target_install_date") == "2024-12-15"
        assert record.get("responsible_ids") == ["KUAAAA"]
        assert record.get("status_id") == "ST-APPROVED"
        assert "CF-OTHER" not in record.fields

    @pytest.mark.asyncio
    async def test_create_translates_fields(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/v4/folders/F-QUOTES/tasks"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"data": [_task("T200")]})

        write = TargetRecordWrite(
            title="Q #7: Sign",
            due_date="2025-01-10",
            status_id="ST-APPROVED",
            fields={"source_id": "7", "customer": None, "unmapped": "x"},
            add_responsibles=["KUAAAA"],
        )
        async with _client(handler) as http:
            record = await self._target(http).create_record(EntityKind.quote, write)

        body = bodies[0]
        assert record.id == "T200"
        assert body["title"] == "Q #7: Sign"
        assert body["dates"] == {"type": "Milestone", "due": "2025-01-10"}
        assert body["customStatus"] == "ST-APPROVED"
        assert body["responsibles"] == ["KUAAAA"]
        assert body["customFields"] == [{"id": "CF-SRC", "value": "7"}, {"id": "CF-CUST", "value": ""}]

    @pytest.mark.asyncio
    async def test_update_sends_responsible_delta(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert request.url.path == "/api/v4/tasks/T100"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"data": [_task()]})

        write = TargetRecordWrite(add_responsibles=["KUBBBB"], remove_responsibles=["KUAAAA"])
        async with _client(handler) as http:
            await self._target(http).update_record(EntityKind.work_order, "T100", write)

        body = bodies[0]
        assert body["addResponsibles"] == ["KUBBBB"]
        assert body["removeResponsibles"] == ["KUAAAA"]
        assert "responsibles" not in body

    @pytest.mark.asyncio
    async def test_retries_on_503(self):
        statuses = [503, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            status = statuses.pop(0)
            if status != 200:
                return httpx.Response(status, text="busy")
            return httpx.Response(200, json={"data": [_task()]})

        async with _client(handler) as http:
            record = await self._target(http).get_record(EntityKind.work_order, "T100")

        assert record.id == "T100"
        assert statuses == []

    @pytest.mark.asyncio
    async def test_get_record_reads_parent_ids(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v4/tasks/T200"
            return httpx.Response(200, json={"data": [_task("T200", title="Install crew", superTaskIds=["T100"])]})

        async with _client(handler) as http:
            record = await self._target(http).get_record(EntityKind.work_order, "T200")

        assert record.title == "Install crew"
        assert record.get("parent_ids") == ["T100"]
        assert record.get("source_id") == "42"

    @pytest.mark.asyncio
    async def test_missing_folder_configuration(self):
        async with _client(lambda request: httpx.Response(200, json={"data": []})) as http:
            client = HttpTargetClient(http, "https://target.test", "tok", {}, CUSTOM_FIELD_IDS, FAST_POLICY)
            with pytest.raises(ValueError, match="TARGET_FOLDER_IDS"):
                await client.find_by_source_id(EntityKind.quote, "7")
