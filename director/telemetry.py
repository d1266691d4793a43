"""
HTTP client for the target application's VifTargets endpoint.

The app is optional: every call degrades to an empty answer when it is not
running or does not expose the endpoint.
"""
import asyncio
from typing import Optional

import aiohttp

from config.settings import TELEMETRY_TIMEOUT, targets_url


class TelemetryClient:
    """Reads events, state and click targets published by the target app."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = TELEMETRY_TIMEOUT):
        self.base_url = (base_url or targets_url()).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Optional[dict]:
        """Return the decoded JSON body, or None if the app did not answer."""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, f"{self.base_url}{path}", json=payload) as resp:
                    if resp.status >= 400:
                        return None
                    if resp.content_type != "application/json":
                        return {}
                    return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return None

    async def get_events(self) -> list[dict]:
        """Recent action events, oldest first."""
        data = await self._request("GET", "/vif/events")
        if not isinstance(data, dict):
            return []
        return data.get("events") or []

    async def clear_events(self) -> bool:
        """Reset the app's event ring buffer."""
        return await self._request("DELETE", "/vif/events") is not None

    async def get_state(self) -> Optional[dict]:
        """Free-form app state, if published."""
        data = await self._request("GET", "/vif/state")
        if not isinstance(data, dict):
            return None
        return data.get("state")

    async def get_targets(self) -> dict:
        """Click targets registered by the app ({key: {x, y}} or navigation entries)."""
        data = await self._request("GET", "/vif/targets")
        if not isinstance(data, dict):
            return {}
        return data.get("targets") or {}

    async def navigate(self, section: str) -> bool:
        """Ask the app to navigate to a section; True if it accepted."""
        return await self._request("POST", "/vif/navigate", {"section": section}) is not None

    async def is_available(self) -> bool:
        """True if the app answers on its telemetry endpoint."""
        return await self._request("GET", "/vif/state") is not None
