from __future__ import annotations

from typing import Any

import httpx

from agegate.core.config import settings
from agegate.core.logger import get_logger
from agegate.schemas.pos import CustomerUpdateResult, PosTransaction
from agegate.services.customer_fields import blank_fields_to_write, is_blank

logger = get_logger(component="PosService")


class PosApiError(Exception):
    """Non-success answer (or no answer) from the POS platform."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PosService:
    """
    Client for the POS platform's sale and customer endpoints.

    Only the handful of fields the verification pipeline consumes are mapped.
    When POS_MOCK_MODE is enabled, use PosServiceMock instead.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        writes_enabled: bool | None = None,
    ) -> None:
        self.http_client = http_client
        configured_url = base_url or (str(settings.pos_base_url) if settings.pos_base_url else None)
        self.base_url = configured_url.rstrip("/") if configured_url else None
        self.api_token = api_token if api_token is not None else settings.pos_api_token
        self.timeout = timeout if timeout is not None else settings.pos_timeout_seconds
        self.writes_enabled = settings.pos_writes_enabled if writes_enabled is None else writes_enabled

    async def get_transaction_by_id(self, transaction_id: str) -> PosTransaction | None:
        try:
            data = await self._request("GET", f"/sales/{transaction_id}")
        except PosApiError as exc:
            if exc.status == 404:
                return None
            raise
        return PosTransaction.from_api(_unwrap(data))

    async def get_customer_by_id(self, customer_id: str) -> dict[str, Any] | None:
        try:
            data = await self._request("GET", f"/customers/{customer_id}")
        except PosApiError as exc:
            if exc.status == 404:
                return None
            raise
        return _unwrap(data)

    async def list_open_transactions(
        self, *, register_id: str | None = None, outlet_id: str | None = None, limit: int = 50
    ) -> list[PosTransaction]:
        params: dict[str, Any] = {"status": "OPEN", "page_size": limit}
        if register_id:
            params["register_id"] = register_id
        if outlet_id:
            params["outlet_id"] = outlet_id
        data = await self._request("GET", "/sales", params=params)
        items = data.get("data", []) if isinstance(data, dict) else data
        transactions = [PosTransaction.from_api(item) for item in items or [] if isinstance(item, dict)]
        # Some registers ignore the filter query params.
        return [
            txn
            for txn in transactions
            if (not register_id or txn.register_id in (None, register_id))
            and (not outlet_id or txn.outlet_id in (None, outlet_id))
        ]

    async def update_customer_by_id(
        self, customer_id: str, fields: dict[str, Any], *, fill_blanks_only: bool = True
    ) -> CustomerUpdateResult:
        if not self.writes_enabled:
            logger.warning("POS writes disabled, skipping customer update", customer_id=customer_id)
            return CustomerUpdateResult(skipped="writes_disabled")

        try:
            if fill_blanks_only:
                current = await self.get_customer_by_id(customer_id)
                if current is None:
                    return CustomerUpdateResult(status=404, error="customer_not_found")
                to_write = blank_fields_to_write(current, fields)
            else:
                to_write = {key: value for key, value in fields.items() if not is_blank(value)}

            if not to_write:
                return CustomerUpdateResult(skipped="no_blank_fields")

            await self._request("PUT", f"/customers/{customer_id}", json=to_write)
        except PosApiError as exc:
            logger.warning(
                "POS customer update failed",
                customer_id=customer_id,
                status=exc.status,
                error=str(exc),
            )
            return CustomerUpdateResult(status=exc.status, error=str(exc))

        logger.info("POS customer updated", customer_id=customer_id, fields=sorted(to_write))
        return CustomerUpdateResult(updated=True, fields=sorted(to_write), status=200)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.base_url:
            raise PosApiError("POS_BASE_URL not configured")

        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            logger.error("POS request timeout", method=method, path=path, timeout=self.timeout)
            raise PosApiError("pos_timeout", status=408) from exc
        except httpx.HTTPError as exc:
            logger.error("POS request error", method=method, path=path, error=str(exc))
            raise PosApiError(f"pos_transport_error:{exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            if response.status_code != 404:
                logger.warning(
                    "POS returned error status",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                )
            raise PosApiError(f"pos_http_{response.status_code}", status=response.status_code)

        if not response.content:
            return {}
        return response.json()


def _unwrap(data: Any) -> dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        return data["data"]
    return data if isinstance(data, dict) else {}
