from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from pydantic import ValidationError

from adapters.base_adapter import StatusProvider
from models.order import StatusRecord

logger = logging.getLogger(__name__)

SIDESHIFT_BASE_URL = "https://sideshift.ai/api/v2"


class StatusProviderError(RuntimeError):
    """Raised when SideShift cannot return a usable status for an order."""

    def __init__(self, order_id: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"SideShift status for {order_id} unavailable: {message}")
        self.order_id = order_id
        self.status_code = status_code


class SideShiftAdapter(StatusProvider):
    """Reads shift status from the SideShift v2 REST API.

    Pass a shared ``httpx.AsyncClient`` to reuse connections across polls;
    otherwise a short-lived client is opened per request.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client_ip: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("SIDESHIFT_BASE_URL", SIDESHIFT_BASE_URL)).rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("SIDESHIFT_API_KEY", "")
        self.client_ip = client_ip if client_ip is not None else os.getenv("SIDESHIFT_CLIENT_IP")
        self.timeout = timeout
        self._client = client

    def _headers(self, user_ip: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-sideshift-secret"] = self.api_key
        ip = user_ip or self.client_ip
        if ip:
            headers["x-user-ip"] = ip
        return headers

    async def get_order_status(self, order_id: str, *, user_ip: str | None = None) -> StatusRecord:
        """GET /shifts/{order_id}.

        Raises:
            StatusProviderError: on transport errors, non-2xx responses,
                error payloads or bodies that do not carry a status.
        """
        url = f"{self.base_url}/shifts/{order_id}"
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=self._headers(user_ip), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url, headers=self._headers(user_ip))
        except httpx.HTTPError as exc:
            raise StatusProviderError(order_id, f"{type(exc).__name__}: {exc}") from exc

        payload = self._json_or_none(resp)

        if resp.is_error:
            raise StatusProviderError(
                order_id,
                self._error_message(payload) or f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        if not isinstance(payload, dict):
            raise StatusProviderError(order_id, "response body is not a JSON object", status_code=resp.status_code)

        message = self._error_message(payload)
        if message:
            raise StatusProviderError(order_id, message, status_code=resp.status_code)

        try:
            return StatusRecord.model_validate(payload)
        except ValidationError as exc:
            raise StatusProviderError(order_id, f"invalid status payload: {exc}") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    @staticmethod
    def _json_or_none(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            logger.debug("Non-JSON response from SideShift (status=%s)", resp.status_code)
            return None

    @staticmethod
    def _error_message(payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or "unknown error")
        if isinstance(error, str) and error:
            return error
        return None
