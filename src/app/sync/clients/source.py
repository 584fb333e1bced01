"""Async HTTP client for the source system's REST API.

Quotes live under ``/quotes/{id}``; work orders are served by the
``/sales_orders/{id}`` resource. Authentication is by ``account_id`` and
``authToken`` query parameters. Every call goes through
``call_with_retry`` with the injected policy.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.app.core.retry import RetryPolicy, call_with_retry
from src.app.sync.clients.base import RemoteApiError, SourceClient
from src.app.sync.schemas import CanonicalRecord, EntityKind, SystemSide

logger = structlog.get_logger(__name__)

RESOURCE_PATHS: dict[EntityKind, str] = {
    EntityKind.quote: "quotes",
    EntityKind.work_order: "sales_orders",
}

# Canonical field -> source API attribute
FIELD_ATTRIBUTES: dict[str, str] = {
    "title": "title",
    "txn_number": "txnNumber",
    "due_date": "dueDate",
    "status": "workflowState",
    "project_manager_id": "projectManagerId",
    "primary_sales_rep_id": "primarySalesRepId",
    "estimator_id": "estimatorId",
    "install_address": "shippingAddress",
    "total": "totalPriceInDollars",
}

# Wrapper key for write-backs, per resource
UPDATE_ROOT_KEYS: dict[EntityKind, str] = {
    EntityKind.quote: "quote",
    EntityKind.work_order: "workOrder",
}


def record_from_payload(kind: EntityKind, data: dict[str, Any]) -> CanonicalRecord:
    """Project a source API payload onto a CanonicalRecord.

    Args:
        kind: Entity kind the payload was fetched as.
        data: Decoded JSON body.

    Returns:
        CanonicalRecord with snake_case field names.
    """
    fields = {name: data.get(attribute) for name, attribute in FIELD_ATTRIBUTES.items()}
    customer = data.get("customer")
    fields["customer_name"] = customer.get("name") if isinstance(customer, dict) else customer
    return CanonicalRecord(
        system=SystemSide.source,
        kind=kind,
        id=str(data["id"]),
        title=data.get("title"),
        fields=fields,
    )


class HttpSourceClient(SourceClient):
    """Source system client over a shared httpx.AsyncClient.

    Args:
        http: Shared async HTTP client (owned by the caller).
        base_url: API root, e.g. ``https://api.example.com/v1``.
        account_id: Account the token belongs to.
        auth_token: API token sent as a query parameter.
        policy: Retry policy for every call.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        account_id: str,
        auth_token: str,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._params = {"account_id": account_id, "authToken": auth_token}
        self._policy = policy

    def _url(self, kind: EntityKind, source_id: str) -> str:
        return f"{self._base_url}/{RESOURCE_PATHS[kind]}/{source_id}"

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        raise RemoteApiError("source", operation, response.status_code, response.text)

    async def get_record(self, kind: EntityKind, source_id: str) -> CanonicalRecord:
        """GET the record; returns it as a CanonicalRecord."""

        async def _get() -> dict[str, Any]:
            response = await self._http.get(
                self._url(kind, source_id),
                params=self._params,
                headers={"Accept": "application/json"},
            )
            self._raise_for_status(response, f"get_{kind.value}")
            return response.json()

        data = await call_with_retry(
            _get, self._policy, description=f"source.get_{kind.value}({source_id})"
        )
        logger.debug("source.record_fetched", kind=kind.value, source_id=source_id)
        return record_from_payload(kind, data)

    async def update_fields(self, kind: EntityKind, source_id: str, fields: dict[str, Any]) -> None:
        """PUT the given canonical fields, translated to API attributes.

        Raises:
            ValueError: A field has no API attribute.
        """
        unknown = [name for name in fields if name not in FIELD_ATTRIBUTES]
        if unknown:
            raise ValueError(f"invalid source fields for update: {', '.join(sorted(unknown))}")
        body = {UPDATE_ROOT_KEYS[kind]: {FIELD_ATTRIBUTES[name]: value for name, value in fields.items()}}

        async def _put() -> None:
            response = await self._http.put(
                self._url(kind, source_id),
                params=self._params,
                json=body,
                headers={"Accept": "application/json"},
            )
            self._raise_for_status(response, f"update_{kind.value}")

        await call_with_retry(
            _put, self._policy, description=f"source.update_{kind.value}({source_id})"
        )
        logger.info(
            "source.record_updated",
            kind=kind.value,
            source_id=source_id,
            fields=sorted(fields),
        )
