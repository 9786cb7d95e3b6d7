"""
Provisioning collaborator for the client voice-agent resource (Vapi assistants).

A client's paid status gates whether its assistant answers calls. Enabling
points the assistant's `serverUrl` at our voice webhook; disabling clears it.
Both calls are idempotent on the Vapi side.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import CollaboratorCallFailed
from app.shared.core.http import get_http_client

logger = structlog.get_logger()


class ProvisioningCollaborator(Protocol):
    async def create_resource(self, assistant: dict[str, Any]) -> str:
        """Create a resource and return its id."""

    async def enable_resource(self, resource_id: str) -> None:
        """Route live traffic to the resource."""

    async def disable_resource(self, resource_id: str) -> None:
        """Stop the resource from serving traffic."""


class VapiProvisioningClient:
    """Async wrapper for the Vapi assistant endpoints used by billing."""

    def __init__(self) -> None:
        settings = get_settings()
        self.api_key = settings.VAPI_API_KEY
        self.base_url = settings.VAPI_BASE_URL.rstrip("/")
        self.voice_webhook_url = f"{settings.BACKEND_URL.rstrip('/')}/webhook/vapi"
        self.timeout = settings.OUTBOUND_TIMEOUT_SECONDS
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise CollaboratorCallFailed(
                "VAPI_API_KEY not configured", collaborator="provisioning"
            )
        client = get_http_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint}",
                headers=self.headers,
                json=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("vapi_api_error", endpoint=endpoint, error=str(exc))
            raise CollaboratorCallFailed(
                f"Vapi {method} {endpoint} failed",
                collaborator="provisioning",
                details={"endpoint": endpoint},
            ) from exc

        if not response.content:
            return {}
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    async def create_resource(self, assistant: dict[str, Any]) -> str:
        assistant_config = {**assistant, "serverUrl": self.voice_webhook_url}
        assistant = await self._request("POST", "assistant", assistant_config)
        assistant_id = assistant.get("id")
        if not assistant_id:
            raise CollaboratorCallFailed(
                "Vapi assistant response had no id", collaborator="provisioning"
            )
        logger.info("vapi_assistant_created", resource_id=assistant_id)
        return str(assistant_id)

    async def enable_resource(self, resource_id: str) -> None:
        await self._request(
            "PATCH", f"assistant/{resource_id}", {"serverUrl": self.voice_webhook_url}
        )
        logger.info("vapi_assistant_enabled", resource_id=resource_id)

    async def disable_resource(self, resource_id: str) -> None:
        await self._request("PATCH", f"assistant/{resource_id}", {"serverUrl": None})
        logger.info("vapi_assistant_disabled", resource_id=resource_id)


def get_provisioning_client() -> ProvisioningCollaborator:
    """FastAPI dependency; overridden in tests."""
    return VapiProvisioningClient()
