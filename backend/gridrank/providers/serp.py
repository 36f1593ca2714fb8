from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from hashlib import sha256
from typing import Annotated, Any, Literal, Protocol, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from gridrank.core.config import get_settings
from gridrank.providers.errors import (
    STATUS_SUCCESS,
    classify_provider_error,
    provider_error_from_status,
)

logger = logging.getLogger("gridrank.providers.serp")

DEFAULT_LOCATION_CODE = 2840
STATUS_NO_SEARCH_RESULTS = 40102

MAPS_LIVE_PATH = "serp/google/maps/live/advanced"
ORGANIC_LIVE_PATH = "serp/google/organic/live/advanced"
LOCATIONS_PATH = "serp/google/locations"


class RatingInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rating_type: str | None = None
    value: float | None = None
    votes_count: int | None = None


class _SerpItemBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rank_group: int | None = None
    rank_absolute: int | None = None
    domain: str | None = None
    url: str | None = None


class OrganicItem(_SerpItemBase):
    type: Literal["organic"]
    title: str | None = None
    description: str | None = None


class MapsSearchItem(_SerpItemBase):
    type: Literal["maps_search"]
    title: str
    address: str | None = None
    category: str | None = None
    phone: str | None = None
    rating: RatingInfo | None = None
    cid: str | None = None
    place_id: str | None = None
    feature_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class LocalPackItem(_SerpItemBase):
    type: Literal["local_pack"]
    title: str
    description: str | None = None
    phone: str | None = None
    rating: RatingInfo | None = None
    cid: str | None = None


SerpItem = Annotated[Union[OrganicItem, MapsSearchItem, LocalPackItem], Field(discriminator="type")]

_SERP_ITEM_ADAPTER: TypeAdapter[SerpItem] = TypeAdapter(SerpItem)
_KNOWN_ITEM_TYPES = frozenset({"organic", "maps_search", "local_pack"})


def parse_serp_items(raw_items: Any) -> list[SerpItem]:
    if not isinstance(raw_items, list):
        return []
    items: list[SerpItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict) or raw.get("type") not in _KNOWN_ITEM_TYPES:
            continue
        try:
            items.append(_SERP_ITEM_ADAPTER.validate_python(raw))
        except ValidationError:
            logger.debug("Dropping malformed %s item", raw.get("type"))
    return items


def dump_serp_items(items: list[SerpItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


@dataclass(frozen=True)
class SerpQuery:
    keyword: str
    coordinate: str | None = None
    location_code: int | None = None
    language_code: str = "en"
    device: str = "desktop"
    depth: int = 20


class RankingDataProvider(Protocol):
    async def search_maps(self, query: SerpQuery) -> list[SerpItem]:
        ...

    async def search_organic(self, query: SerpQuery) -> list[SerpItem]:
        ...

    async def list_locations(self, country: str | None = None) -> list[dict[str, Any]]:
        ...


class DataForSeoProvider:
    def __init__(
        self,
        *,
        login: str,
        password: str,
        base_url: str = "https://api.dataforseo.com/v3",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not login or not password:
            raise ValueError("DataForSEO provider requires login and password.")
        self.login = login
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.login, self.password),
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    @staticmethod
    def _check_status(payload: dict[str, Any]) -> None:
        status_code = payload.get("status_code")
        if not isinstance(status_code, int) or status_code == STATUS_SUCCESS:
            return
        error = provider_error_from_status(status_code, str(payload.get("status_message") or ""), upstream_payload={"status_code": status_code})
        if error is not None:
            raise error

    async def _request(self, method: str, path: str, body: list[dict[str, Any]] | None = None) -> list[Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, f"/{path}", json=body)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_provider_error(exc) from exc
        try:
            envelope = response.json()
        except ValueError:
            envelope = None
        if not isinstance(envelope, dict):
            # Treated as an empty result set.
            logger.warning("Ignoring malformed provider response for %s", path)
            return []
        self._check_status(envelope)
        tasks = envelope.get("tasks")
        if not isinstance(tasks, list) or not tasks or not isinstance(tasks[0], dict):
            return []
        task = tasks[0]
        if task.get("status_code") == STATUS_NO_SEARCH_RESULTS:
            return []
        self._check_status(task)
        result = task.get("result")
        return result if isinstance(result, list) else []

    @staticmethod
    def _search_request(query: SerpQuery) -> dict[str, Any]:
        request: dict[str, Any] = {
            "keyword": query.keyword,
            "language_code": query.language_code,
            "device": query.device,
            "depth": query.depth,
        }
        # location_coordinate and location_code are mutually exclusive upstream.
        if query.coordinate:
            request["location_coordinate"] = query.coordinate
        else:
            request["location_code"] = query.location_code or DEFAULT_LOCATION_CODE
        return request

    @staticmethod
    def _items(result: list[Any]) -> list[SerpItem]:
        if not result or not isinstance(result[0], dict):
            return []
        return parse_serp_items(result[0].get("items"))

    async def search_maps(self, query: SerpQuery) -> list[SerpItem]:
        request = self._search_request(query)
        if query.coordinate:
            request["search_places"] = False
        return self._items(await self._request("POST", MAPS_LIVE_PATH, [request]))

    async def search_organic(self, query: SerpQuery) -> list[SerpItem]:
        return self._items(await self._request("POST", ORGANIC_LIVE_PATH, [self._search_request(query)]))

    async def list_locations(self, country: str | None = None) -> list[dict[str, Any]]:
        path = f"{LOCATIONS_PATH}/{country.strip().lower()}" if country else LOCATIONS_PATH
        result = await self._request("GET", path)
        return [row for row in result if isinstance(row, dict)]


class SyntheticRankingProvider:
    _BUSINESS_WORDS = ("Family", "Bright", "Premier", "Downtown", "Lakeside", "Summit", "Oak", "Elite", "Smile", "City")
    _BUSINESS_SUFFIXES = ("Center", "Group", "Studio", "Clinic", "Co", "Partners")

    @staticmethod
    def _stable_int(seed: str, minimum: int, maximum: int) -> int:
        span = max(1, maximum - minimum + 1)
        digest = sha256(seed.encode("utf-8")).digest()
        return minimum + (int.from_bytes(digest[:8], "big") % span)

    @staticmethod
    def _stable_float(seed: str, minimum: float, maximum: float, decimals: int = 1) -> float:
        digest = sha256(seed.encode("utf-8")).digest()
        scaled = int.from_bytes(digest[8:16], "big") / float(2**64)
        return round(minimum + ((maximum - minimum) * scaled), decimals)

    def _business(self, keyword: str, index: int) -> dict[str, Any]:
        word = self._BUSINESS_WORDS[index % len(self._BUSINESS_WORDS)]
        suffix = self._BUSINESS_SUFFIXES[(index // len(self._BUSINESS_WORDS)) % len(self._BUSINESS_SUFFIXES)]
        subject = keyword.strip().title() or "Local"
        slug = f"{word}-{subject}-{suffix}".lower().replace(" ", "-")
        return {
            "title": f"{word} {subject} {suffix}",
            "domain": f"{slug}.example.com",
            "cid": str(self._stable_int(f"cid:{keyword}:{index}", 10**15, 10**16 - 1)),
            "rating": {
                "rating_type": "Max5",
                "value": self._stable_float(f"rating:{keyword}:{index}", 3.5, 5.0),
                "votes_count": self._stable_int(f"votes:{keyword}:{index}", 5, 900),
            },
        }

    def _ranked_pool(self, query: SerpQuery) -> list[dict[str, Any]]:
        pool_size = 24
        seed = f"{query.keyword.strip().lower()}:{query.coordinate or query.location_code}"
        order = sorted(range(pool_size), key=lambda index: self._stable_int(f"{seed}:{index}", 0, 10**9))
        return [self._business(query.keyword, index) for index in order[: max(0, query.depth)]]

    async def search_maps(self, query: SerpQuery) -> list[SerpItem]:
        raw = [
            {"type": "maps_search", "rank_group": position, "rank_absolute": position, **business}
            for position, business in enumerate(self._ranked_pool(query), start=1)
        ]
        return parse_serp_items(raw)

    async def search_organic(self, query: SerpQuery) -> list[SerpItem]:
        raw = [
            {
                "type": "organic",
                "rank_group": position,
                "rank_absolute": position,
                "title": business["title"],
                "domain": business["domain"],
                "url": f"https://{business['domain']}/",
            }
            for position, business in enumerate(self._ranked_pool(query), start=1)
        ]
        return parse_serp_items(raw)

    async def list_locations(self, country: str | None = None) -> list[dict[str, Any]]:
        rows = [
            {"location_code": 2840, "location_name": "United States", "country_iso_code": "US", "location_type": "Country"},
            {"location_code": 2124, "location_name": "Canada", "country_iso_code": "CA", "location_type": "Country"},
        ]
        if country:
            return [row for row in rows if row["country_iso_code"].lower() == country.strip().lower()]
        return rows


@lru_cache
def get_ranking_provider() -> RankingDataProvider:
    settings = get_settings()
    backend = settings.ranking_provider_backend.strip().lower()
    if backend == "synthetic":
        return SyntheticRankingProvider()
    if backend == "dataforseo":
        return DataForSeoProvider(
            login=settings.dataforseo_login,
            password=settings.dataforseo_password,
            base_url=settings.dataforseo_base_url,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unsupported ranking provider backend: {backend}")
