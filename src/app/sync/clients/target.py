"""Async HTTP client for the target system's task API.

Tasks are filed in one folder per entity kind and carry custom fields
addressed by id. This client translates between those ids and the logical
field names used by the mapping table, so nothing above it deals with
custom-field ids. Responses are wrapped as ``{"data": [...]}``.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from src.app.core.retry import RetryPolicy, call_with_retry
from src.app.sync.clients.base import RemoteApiError, TargetClient
from src.app.sync.field_mapping import PARENT_IDS_FIELD, SOURCE_ID_FIELD
from src.app.sync.schemas import CanonicalRecord, EntityKind, SystemSide, TargetRecordWrite

logger = structlog.get_logger(__name__)

TASK_FIELDS = '["customFields","responsibleIds","superTaskIds"]'


class HttpTargetClient(TargetClient):
    """Target system client over a shared httpx.AsyncClient.

    Args:
        http: Shared async HTTP client (owned by the caller).
        base_url: API root.
        token: Bearer token.
        folder_ids: Folder holding the tasks of each entity kind.
        custom_field_ids: Custom field id per logical field name.
        policy: Retry policy for every call.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        token: str,
        folder_ids: dict[str, str],
        custom_field_ids: dict[str, str],
        policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        self._folder_ids = folder_ids
        self._field_ids = custom_field_ids
        self._field_names = {field_id: name for name, field_id in custom_field_ids.items()}
        self._policy = policy

    # ── Translation ─────────────────────────────────────────────────────

    def _folder(self, kind: EntityKind) -> str:
        folder_id = self._folder_ids.get(kind.value)
        if not folder_id:
            raise ValueError(f"no target folder configured for {kind.value}: TARGET_FOLDER_IDS is required")
        return folder_id

    def record_from_task(self, kind: EntityKind, task: dict[str, Any]) -> CanonicalRecord:
        """Project a task payload onto a CanonicalRecord with logical field names."""
        fields: dict[str, Any] = {}
        for custom_field in task.get("customFields", []):
            name = self._field_names.get(custom_field.get("id"))
            if name:
                fields[name] = custom_field.get("value")
        fields["responsible_ids"] = list(task.get("responsibleIds", []))
        fields["due_date"] = (task.get("dates") or {}).get("due")
        fields["status_id"] = task.get("customStatusId")
        fields[PARENT_IDS_FIELD] = list(task.get("superTaskIds", []))
        return CanonicalRecord(
            system=SystemSide.target,
            kind=kind,
            id=str(task["id"]),
            title=task.get("title"),
            fields=fields,
        )

    def _task_body(self, write: TargetRecordWrite, *, creating: bool) -> dict[str, Any]:
        custom_fields = []
        for name, value in write.fields.items():
            field_id = self._field_ids.get(name)
            if field_id is None:
                logger.debug("target.field_not_configured", field=name)
                continue
            custom_fields.append({"id": field_id, "value": "" if value is None else str(value)})

        body: dict[str, Any] = {"customFields": custom_fields}
        if write.title is not None:
            body["title"] = write.title
        if write.due_date:
            body["dates"] = {"type": "Milestone", "due": write.due_date}
        if write.status_id:
            body["customStatus"] = write.status_id
        if creating:
            if write.add_responsibles:
                body["responsibles"] = write.add_responsibles
        else:
            if write.add_responsibles:
                body["addResponsibles"] = write.add_responsibles
            if write.remove_responsibles:
                body["removeResponsibles"] = write.remove_responsibles
        return body

    # ── HTTP ────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        async def _send() -> list[dict[str, Any]]:
            response = await self._http.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=body,
                headers=self._headers,
            )
            if not response.is_success:
                raise RemoteApiError("target", operation, response.status_code, response.text)
            return response.json().get("data", [])

        return await call_with_retry(_send, self._policy, description=f"target.{operation}")

    async def find_by_source_id(self, kind: EntityKind, source_id: str) -> list[CanonicalRecord]:
        """Search the kind's folder on the identifying custom field."""
        field_id = self._field_ids.get(SOURCE_ID_FIELD)
        if not field_id:
            raise ValueError(f"no custom field id configured for {SOURCE_ID_FIELD}: TARGET_CUSTOM_FIELD_IDS is required")
        query = [{"id": field_id, "comparator": "EqualTo", "value": source_id}]
        tasks = await self._request(
            "GET",
            f"/folders/{self._folder(kind)}/tasks",
            "search_tasks",
            params={"customFields": json.dumps(query), "fields": TASK_FIELDS},
        )
        logger.debug("target.search_complete", kind=kind.value, source_id=source_id, matches=len(tasks))
        return [self.record_from_task(kind, task) for task in tasks]

    async def get_record(self, kind: EntityKind, target_id: str) -> CanonicalRecord:
        tasks = await self._request("GET", f"/tasks/{target_id}", "get_task")
        if not tasks:
            raise RemoteApiError("target", "get_task", 404, f"task {target_id} not found")
        return self.record_from_task(kind, tasks[0])

    async def create_record(self, kind: EntityKind, write: TargetRecordWrite) -> CanonicalRecord:
        tasks = await self._request(
            "POST",
            f"/folders/{self._folder(kind)}/tasks",
            "create_task",
            body=self._task_body(write, creating=True),
        )
        record = self.record_from_task(kind, tasks[0])
        logger.info("target.task_created", kind=kind.value, target_id=record.id)
        return record

    async def update_record(
        self, kind: EntityKind, target_id: str, write: TargetRecordWrite
    ) -> CanonicalRecord:
        tasks = await self._request(
            "PUT",
            f"/tasks/{target_id}",
            "update_task",
            body=self._task_body(write, creating=False),
        )
        logger.info("target.task_updated", kind=kind.value, target_id=target_id)
        return self.record_from_task(kind, tasks[0])
