"""
Campaign/brand registry - read-only view of externally managed 10DLC data.

The engine needs three lookups:
- get_campaign(id)          → CampaignInfo or None
- get_brand_tier(brand_id)  → BrandTier (throughput tier)
- campaign_for_number(num)  → campaign id a sending number is assigned to, or None

InMemoryCampaignRegistry is seeded directly (tests, local runs).
HttpCampaignRegistry reads the registry service and caches answers briefly.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from cachetools import TTLCache
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

APPROVED = "approved"

_MISSING = object()


class CampaignInfo(BaseModel):
    campaign_id: str
    status: str  # approved, pending, rejected, suspended, expired
    use_case: str = "mixed"
    brand_id: str
    # 0=Monday ... 6=Sunday, in the recipient's local time
    blocked_weekdays: list[int] = Field(default_factory=list)
    observe_holidays: bool = False
    holiday_calendar: str = "federal"

    @property
    def is_approved(self) -> bool:
        return self.status == APPROVED


class BrandTier(BaseModel):
    rate_capacity: int = Field(gt=0)
    refill_rate: float = Field(gt=0)  # tokens per second


class CampaignRegistry(ABC):

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]: ...

    @abstractmethod
    async def get_brand_tier(self, brand_id: str) -> BrandTier: ...

    @abstractmethod
    async def campaign_for_number(self, number: str) -> Optional[str]: ...

    async def brand_tier_for_campaign(self, campaign_id: str) -> BrandTier:
        """Tier of the brand that owns campaign_id; default tier when unknown."""
        campaign = await self.get_campaign(campaign_id)
        if campaign is None:
            return default_brand_tier()
        return await self.get_brand_tier(campaign.brand_id)


def default_brand_tier() -> BrandTier:
    from textgate.config import get_settings
    settings = get_settings()
    return BrandTier(
        rate_capacity=settings.default_rate_capacity,
        refill_rate=settings.default_refill_rate,
    )


class InMemoryCampaignRegistry(CampaignRegistry):

    def __init__(
        self,
        campaigns: Optional[list[CampaignInfo]] = None,
        tiers: Optional[dict[str, BrandTier]] = None,
        numbers: Optional[dict[str, str]] = None,
    ) -> None:
        self._campaigns = {c.campaign_id: c for c in campaigns or []}
        self._tiers = dict(tiers or {})
        self._numbers = dict(numbers or {})

    def add_campaign(self, campaign: CampaignInfo) -> None:
        self._campaigns[campaign.campaign_id] = campaign

    def set_brand_tier(self, brand_id: str, tier: BrandTier) -> None:
        self._tiers[brand_id] = tier

    def assign_number(self, number: str, campaign_id: str) -> None:
        self._numbers[number] = campaign_id

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]:
        return self._campaigns.get(campaign_id)

    async def get_brand_tier(self, brand_id: str) -> BrandTier:
        return self._tiers.get(brand_id) or default_brand_tier()

    async def campaign_for_number(self, number: str) -> Optional[str]:
        return self._numbers.get(number)


class HttpCampaignRegistry(CampaignRegistry):
    """
    Registry service client.

    GET {base}/campaigns/{id}       → CampaignInfo JSON, 404 when unknown
    GET {base}/brands/{id}/tier     → BrandTier JSON
    GET {base}/numbers/{number}     → {"campaign_id": ...}, 404 when unassigned

    Answers (including "not found") are cached for cache_ttl seconds. Transport
    errors propagate; a send must not pass the gate on registry guesswork.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        cache_ttl: int = 60,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout,
        )
        self._campaigns: TTLCache = TTLCache(maxsize=1024, ttl=cache_ttl)
        self._tiers: TTLCache = TTLCache(maxsize=256, ttl=cache_ttl)
        self._numbers: TTLCache = TTLCache(maxsize=1024, ttl=cache_ttl)
        self._lock = asyncio.Lock()

    async def _get_json(self, path: str) -> Optional[dict]:
        response = await self._client.get(path)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]:
        cached = self._campaigns.get(campaign_id, _MISSING)
        if cached is not _MISSING:
            return cached

        data = await self._get_json(f"/campaigns/{campaign_id}")
        campaign = None
        if data is not None:
            data.setdefault("campaign_id", campaign_id)
            campaign = CampaignInfo.model_validate(data)
        async with self._lock:
            self._campaigns[campaign_id] = campaign
        return campaign

    async def get_brand_tier(self, brand_id: str) -> BrandTier:
        cached = self._tiers.get(brand_id)
        if cached is not None:
            return cached

        data = await self._get_json(f"/brands/{brand_id}/tier")
        if data is None:
            logger.warning("No throughput tier for brand %s, using default tier", brand_id)
            tier = default_brand_tier()
        else:
            tier = BrandTier.model_validate(data)
        async with self._lock:
            self._tiers[brand_id] = tier
        return tier

    async def campaign_for_number(self, number: str) -> Optional[str]:
        cached = self._numbers.get(number, _MISSING)
        if cached is not _MISSING:
            return cached

        data = await self._get_json(f"/numbers/{number}")
        campaign_id = (data or {}).get("campaign_id")
        async with self._lock:
            self._numbers[number] = campaign_id
        return campaign_id

    def clear_cache(self) -> None:
        self._campaigns.clear()
        self._tiers.clear()
        self._numbers.clear()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_registry() -> CampaignRegistry:
    """Registry from settings: HTTP when a registry URL is configured, else in-memory."""
    from textgate.config import get_settings
    settings = get_settings()
    if settings.registry_base_url:
        return HttpCampaignRegistry(
            settings.registry_base_url,
            api_key=settings.registry_api_key,
            cache_ttl=settings.registry_cache_ttl_seconds,
        )
    logger.warning("REGISTRY_BASE_URL not set - using empty in-memory campaign registry")
    return InMemoryCampaignRegistry()
