import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import ValidationError

from src.core.exceptions import StoreUnavailableError
from src.core.logger import logger
from src.models.conversation import ButtonState, ButtonStatePatch, ConversationState

STATE_PATH = "/api/conversation/state"
CLEAR_PATH = "/api/conversation/clear"
BUTTON_STATES_PATH = "/api/conversation/button-states"
STREAM_PATH = "/api/conversation/stream"


class ConversationApiClient:
    """HTTP client for the conversation API, bound to one user channel.

    Implements the same backend protocol as ``LocalBackend`` so a surface can
    run against a remote server. Transport failures and non-2xx answers are
    raised as ``StoreUnavailableError``.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        user_id_header: str = "X-User-Id",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_id = user_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={user_id_header: user_id},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ConversationApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_state(self) -> Optional[ConversationState]:
        data = await self._request("GET", STATE_PATH)
        if data is None:
            return None
        try:
            return ConversationState.model_validate(data)
        except ValidationError as e:
            raise StoreUnavailableError(f"Server returned an invalid conversation state: {e}") from e

    async def save_state(self, state: ConversationState) -> None:
        await self._request("POST", STATE_PATH, body=state.to_payload())

    async def clear_state(self) -> None:
        await self._request("POST", CLEAR_PATH)

    async def fetch_button_state(self) -> ButtonState:
        data = await self._request("GET", BUTTON_STATES_PATH)
        return ButtonState.model_validate(data) if data else ButtonState.default()

    async def patch_button_state(self, patch: ButtonStatePatch) -> ButtonState:
        body = patch.model_dump(mode="json", by_alias=True, exclude_none=True)
        data = await self._request("PATCH", BUTTON_STATES_PATH, body=body)
        return ButtonState.model_validate(data.get("buttonStates") or {})

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded events from the SSE stream until the server closes it."""
        try:
            async with self._client.stream(
                "GET", STREAM_PATH, headers={"Accept": "text/event-stream"}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    raise StoreUnavailableError(f"Stream request failed with HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        yield json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping undecodable stream line for {self.user_id}: {line[:80]}")
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"Stream for {self.user_id} failed: {e}") from e

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            raise StoreUnavailableError(f"{method} {path} returned HTTP {response.status_code}: {detail}")

        return response.json()
