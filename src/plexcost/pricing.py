"""
Plex Discover pricing client for plexcost.

Looks up the buy/rent/subscription offers for a title so a watch event can be
priced. Rate limiting (HTTP 429) is retried with an escalating backoff; every
other external failure degrades to an empty summary so one title never blocks
the rest of a batch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from .models import PricingSummary, unique_platforms

logger = logging.getLogger(__name__)

DISCOVER_API_BASE = "https://discover.provider.plex.tv"

MAX_ATTEMPTS = 4
BACKOFF_SECONDS = (60, 90, 120)

PRICED_OFFER_TYPES = {"buy", "rent"}
SUBSCRIPTION_OFFER_TYPE = "subscription"


class PricingError(Exception):
    """Pricing for a single title could not be determined this cycle."""


class RetryExhausted(PricingError):
    """The pricing service kept rate limiting us past the attempt ceiling."""

    def __init__(self, content_id: str, attempts: int):
        super().__init__(f"Rate limited {attempts} times for {content_id}")
        self.content_id = content_id
        self.attempts = attempts


def metadata_id(content_id: str) -> str:
    """Extract the Discover metadata id from a Plex GUID."""
    # "plex://movie/5d7768..." -> "5d7768..."
    return content_id.rstrip("/").rsplit("/", 1)[-1]


def _get(data: dict[str, Any], name: str) -> Any:
    """Case-insensitive key lookup; the API is not consistent about casing."""
    if name in data:
        return data[name]
    lowered = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _price(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price < 0:
        return None
    return price


def summarize_offers(offers: list[dict[str, Any]]) -> PricingSummary:
    """Reduce a list of availability offers to a PricingSummary.

    max/avg are taken over priced buy and rent offers. Subscription platforms
    are the distinct trimmed platform names of subscription offers, compared
    case-insensitively with the first casing kept.
    """
    prices = []
    platforms = []
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        offer_type = _get(offer, "offerType")
        offer_type = offer_type.strip().lower() if isinstance(offer_type, str) else ""

        if offer_type in PRICED_OFFER_TYPES:
            price = _price(_get(offer, "price"))
            if price is not None:
                prices.append(price)
        elif offer_type == SUBSCRIPTION_OFFER_TYPE:
            platform = _get(offer, "platform")
            if isinstance(platform, str):
                platforms.append(platform)

    max_price = max(prices) if prices else None
    avg_price = sum(prices, Decimal("0")) / len(prices) if prices else None

    return PricingSummary(
        max_price=max_price,
        avg_price=avg_price,
        subscription_platforms=tuple(unique_platforms(platforms)),
    )


class PricingClient:
    """
    Client for the Plex Discover availabilities endpoint.

    One instance is built per process around a shared httpx.AsyncClient.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        plex_token: str,
        base_url: str = DISCOVER_API_BASE,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: Sequence[float] = BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: logging.Logger | None = None,
    ):
        """
        Initialize the pricing client.

        Args:
            http_client: Shared async HTTP client (owned by the caller)
            plex_token: Plex auth token sent with every request
            base_url: Discover API base URL
            max_attempts: Attempts before a rate-limited call gives up
            backoff_seconds: Waits between rate-limited attempts, in order
            sleep: Awaitable sleep, replaceable in tests
            log: Logger to use instead of the module logger
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if len(backoff_seconds) < max_attempts - 1:
            raise ValueError("backoff_seconds needs one entry per retry")

        self.http_client = http_client
        self.plex_token = plex_token
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_seconds = tuple(backoff_seconds)
        self._sleep = sleep
        self.log = log or logger

    def _request(self, content_id: str) -> httpx.Request:
        url = f"{self.base_url}/library/metadata/{metadata_id(content_id)}/availabilities"
        params = {
            "includeAirings": "1",
            "includePlexRentals": "1",
            "includePlexPurchases": "0",
            "X-Plex-Token": self.plex_token,
        }
        return self.http_client.build_request(
            "GET", url, params=params, headers={"Accept": "application/json"}
        )

    async def resolve(self, content_id: str) -> PricingSummary:
        """
        Resolve pricing for one title.

        Args:
            content_id: Plex GUID of the title

        Returns:
            PricingSummary; empty when the title is unknown or the service
            could not be reached

        Raises:
            RetryExhausted: If every attempt was rate limited
            PricingError: If the service answered with an unreadable body
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.http_client.send(self._request(content_id))
            except httpx.TransportError as e:
                self.log.error(f"Pricing request for {content_id} failed: {e}")
                return PricingSummary.empty()

            if response.status_code == 429:
                if attempt < self.max_attempts:
                    delay = self.backoff_seconds[attempt - 1]
                    self.log.warning(
                        f"429 for {content_id}, backing off {delay}s "
                        f"(attempt {attempt}/{self.max_attempts})"
                    )
                    await self._sleep(delay)
                    continue
                self.log.error(
                    f"Received 429 {self.max_attempts} times for {content_id}. Aborting."
                )
                raise RetryExhausted(content_id, self.max_attempts)

            if response.status_code == 404:
                self.log.warning(f"No pricing found for {content_id} (404)")
                return PricingSummary.empty()

            if not response.is_success:
                self.log.error(
                    f"Pricing request for {content_id} returned HTTP {response.status_code}"
                )
                return PricingSummary.empty()

            return self._parse(content_id, response)

        # max_attempts >= 1, so the loop always returns or raises
        raise RetryExhausted(content_id, self.max_attempts)

    def _parse(self, content_id: str, response: httpx.Response) -> PricingSummary:
        try:
            data = response.json()
        except ValueError as e:
            raise PricingError(f"Invalid pricing JSON for {content_id}: {e}") from e
        if not isinstance(data, dict):
            raise PricingError(f"Unexpected pricing payload for {content_id}")

        container = _get(data, "MediaContainer")
        offers = _get(container, "Availability") if isinstance(container, dict) else None
        if not isinstance(offers, list):
            offers = []

        summary = summarize_offers(offers)
        self.log.debug(
            f"Pricing for {content_id}: max={summary.max_price} avg={summary.avg_price} "
            f"subscriptions={list(summary.subscription_platforms)}"
        )
        return summary
