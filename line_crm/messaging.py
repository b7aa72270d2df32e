"""
LINE Messaging API client.

Implements the MessagingPort used by the ingestion pipeline:
- get_profile: display name, avatar, status message and language of a contact
- reply_message / push_message: outbound messages
"""

import logging
from typing import Any, Optional

import httpx

from line_crm.ports import MessagingError, ProfileNotFoundError
from line_crm.schemas import Profile

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.line.me/v2/bot"


class LineMessagingClient:
    """Thin async wrapper over the LINE Messaging API."""

    def __init__(
        self,
        channel_access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = channel_access_token
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self._token:
            raise MessagingError("LINE_CHANNEL_ACCESS_TOKEN is not configured")

        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"LINE API {method} {path} transport error: {e}")
            raise MessagingError(f"LINE API request failed: {e}") from e

        logger.debug(f"LINE API {method} {path} -> {response.status_code}")
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.status_code >= 400:
            logger.error(f"LINE API {operation} failed: {response.status_code} {response.text[:500]}")
            raise MessagingError(
                f"LINE API {operation} failed with status {response.status_code}",
                status_code=response.status_code,
            )

    async def get_profile(self, line_user_id: str) -> Profile:
        """
        Fetch the LINE profile of a contact.

        Raises:
            ProfileNotFoundError: the contact blocked the channel or deleted the account
            MessagingError: any other transport or HTTP failure
        """
        response = await self._request("GET", f"/profile/{line_user_id}")
        if response.status_code == 404:
            logger.info(f"LINE profile not found: {line_user_id}")
            raise ProfileNotFoundError(line_user_id)
        self._raise_for_status(response, "get_profile")

        try:
            return Profile.model_validate(response.json())
        except ValueError as e:
            raise MessagingError(f"Unreadable LINE profile response: {e}") from e

    async def reply_message(self, reply_token: str, messages: list[dict[str, Any]]) -> None:
        """Reply to an event using its reply token."""
        payload = {"replyToken": reply_token, "messages": messages}
        response = await self._request("POST", "/message/reply", json=payload)
        self._raise_for_status(response, "reply_message")

    async def push_message(self, to: str, messages: list[dict[str, Any]]) -> None:
        """Push messages to a user, group or room id."""
        payload = {"to": to, "messages": messages}
        response = await self._request("POST", "/message/push", json=payload)
        self._raise_for_status(response, "push_message")
