"""
Address lookup for queue locations.

Talks to a Nominatim-compatible search endpoint. `DebouncedAddressSearch`
wraps it for type-ahead use: every keystroke cancels the pending request,
so a slow answer for "Bak" can never replace the answer for "Bakery".
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from waitline.config import Settings, get_settings
from waitline.services.errors import AddressLookupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationSuggestion:
    id: str
    label: str
    latitude: float
    longitude: float


class AddressLookup:
    """Free-text address search."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings()
        self._client = client

    async def search(self, text: str) -> list[LocationSuggestion]:
        """
        Search addresses matching `text`.

        Returns [] for queries shorter than the configured minimum.
        Raises AddressLookupError if the service fails.
        """
        query = text.strip()
        if len(query) < self._settings.address_lookup_min_chars:
            return []

        params = {
            "q": query,
            "format": "jsonv2",
            "addressdetails": "1",
            "limit": str(self._settings.address_lookup_limit),
        }
        headers = {"Accept": "application/json", "User-Agent": self._settings.app_name}

        try:
            if self._client is not None:
                response = await self._client.get(self._settings.address_lookup_url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._settings.address_lookup_timeout_seconds) as client:
                    response = await client.get(self._settings.address_lookup_url, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Address lookup request failed: %s", e)
            raise AddressLookupError("Failed to load location suggestions.") from e

        if response.status_code != 200:
            logger.error("Address lookup returned %s", response.status_code)
            raise AddressLookupError("Failed to load location suggestions.")

        suggestions = []
        for item in response.json():
            try:
                suggestions.append(
                    LocationSuggestion(
                        id=str(item["place_id"]),
                        label=item["display_name"],
                        latitude=float(item["lat"]),
                        longitude=float(item["lon"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed address result: %r", item)
        return suggestions


class DebouncedAddressSearch:
    """
    Type-ahead wrapper around AddressLookup.

    `submit()` cancels whatever is pending and schedules a new search after
    `delay` seconds; `result()` waits for the latest submission.
    """

    def __init__(self, lookup: AddressLookup, delay: Optional[float] = None):
        self._lookup = lookup
        self._delay = get_settings().address_search_debounce_seconds if delay is None else delay
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, text: str) -> asyncio.Task:
        self.cancel()
        self._task = asyncio.create_task(self._run(text))
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def result(self) -> list[LocationSuggestion]:
        """Suggestions for the most recent submission ([] if none)."""
        while self._task is not None:
            task = self._task
            try:
                return await task
            except asyncio.CancelledError:
                if task is self._task:
                    # Cancelled without a newer submission
                    return []
        return []

    async def _run(self, text: str) -> list[LocationSuggestion]:
        await asyncio.sleep(self._delay)
        return await self._lookup.search(text)
