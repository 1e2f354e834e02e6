from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class FollowUpNotifier:
    """Posts follow-up messages to a deferred interaction's webhook.

    Delivery is best effort: failures are logged and reported through the
    return value, never raised. A lost follow-up cannot be recovered.
    """

    def __init__(
        self,
        api_base: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    def webhook_url(self, application_id: str, interaction_token: str) -> str:
        return f"{self._api_base}/webhooks/{application_id}/{interaction_token}"

    async def send(self, application_id: Optional[str], interaction_token: Optional[str], content: str) -> bool:
        if not application_id or not interaction_token:
            logger.warning("Cannot send follow-up message: missing application ID or token")
            return False

        try:
            response = await self._get_client().post(
                self.webhook_url(application_id, interaction_token),
                json={"content": content},
            )
        except httpx.HTTPError as exc:
            logger.error("Exception sending Discord follow-up message: %s", exc)
            return False

        if response.is_error:
            logger.error(
                "Failed to send Discord follow-up message. Status: %s, Error: %s",
                response.status_code,
                response.text,
            )
            return False
        logger.info("Sent Discord follow-up message")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
