from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any
from urllib.parse import urlparse

from gridrank.providers.cache import ResponseCache
from gridrank.providers.cache_keys import CacheTTL, serp_locations_key, serp_maps_key, serp_organic_key
from gridrank.providers.rate_limiter import EndpointClass
from gridrank.providers.scheduler import RequestScheduler
from gridrank.providers.serp import (
    MapsSearchItem,
    RankingDataProvider,
    SerpItem,
    SerpQuery,
    dump_serp_items,
    parse_serp_items,
)
from gridrank.services.grid_generator import format_coordinate

SEARCH_TYPES = {"maps": "maps_search", "organic": "organic"}

_QUOTES = re.compile(r"[‘’ʼ`´]")
_DASHES = re.compile(r"[–—]")
_CREDENTIALS = re.compile(r"\b(dds|dmd|llc|inc|pc)\b")
_PUNCTUATION = re.compile(r"[.,]")
_WHITESPACE = re.compile(r"\s+")


def normalize_business_name(name: str | None) -> str:
    if not name:
        return ""
    value = name.lower()
    value = _QUOTES.sub("'", value)
    value = _DASHES.sub("-", value)
    value = re.sub(r"\bdentistry\b", "dental", value)
    value = _CREDENTIALS.sub("", value)
    value = _PUNCTUATION.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def normalize_domain(value: str | None) -> str:
    if not value:
        return ""
    candidate = value.strip().lower()
    if not candidate:
        return ""
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    host = parsed.netloc or parsed.path
    if host.startswith("www."):
        host = host[4:]
    return host


def business_names_match(result_name: str | None, target_name: str | None) -> bool:
    result = normalize_business_name(result_name)
    target = normalize_business_name(target_name)
    if not result or not target:
        return False
    if result == target or target in result:
        return True
    return len(result) > 5 and result in target


@dataclass(frozen=True)
class TargetEntity:
    name: str
    external_id: str | None = None
    domain: str | None = None


@dataclass(frozen=True)
class RankedEntity:
    name: str
    rank: int
    external_id: str | None = None
    rating: float | None = None
    review_count: int | None = None
    domain: str | None = None
    address: str | None = None
    category: str | None = None
    is_target: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RankedEntity":
        return cls(
            name=str(payload.get("name") or ""),
            rank=int(payload["rank"]),
            external_id=payload.get("external_id"),
            rating=payload.get("rating"),
            review_count=payload.get("review_count"),
            domain=payload.get("domain"),
            address=payload.get("address"),
            category=payload.get("category"),
            is_target=bool(payload.get("is_target", False)),
        )


@dataclass(frozen=True)
class RankingObservation:
    target_rank: int | None
    top_entities: list[RankedEntity] = field(default_factory=list)
    total_results: int = 0


@dataclass
class ScanUsage:
    api_calls: int = 0
    lookups: int = 0


def matches_target(entity: RankedEntity, target: TargetEntity) -> bool:
    if target.external_id and entity.external_id:
        return str(target.external_id) == str(entity.external_id)
    target_domain = normalize_domain(target.domain)
    entity_domain = normalize_domain(entity.domain)
    if target_domain and entity_domain:
        if entity_domain == target_domain or entity_domain.endswith(f".{target_domain}"):
            return True
    return business_names_match(entity.name, target.name)


def _entity_from_item(item: SerpItem, position: int) -> RankedEntity:
    if isinstance(item, MapsSearchItem):
        return RankedEntity(
            name=item.title,
            rank=position,
            external_id=item.cid or item.place_id,
            rating=item.rating.value if item.rating else None,
            review_count=item.rating.votes_count if item.rating else None,
            domain=item.domain,
            address=item.address,
            category=item.category,
        )
    name = getattr(item, "title", None) or item.domain or ""
    return RankedEntity(
        name=name,
        rank=position,
        external_id=getattr(item, "cid", None),
        rating=item.rating.value if getattr(item, "rating", None) else None,
        review_count=item.rating.votes_count if getattr(item, "rating", None) else None,
        domain=item.domain,
    )


class RankingClient:
    def __init__(
        self,
        provider: RankingDataProvider,
        scheduler: RequestScheduler,
        cache: ResponseCache,
        *,
        search_depth: int = 20,
        top_entities_limit: int = 20,
        ttl: int = CacheTTL.SERP,
        reference_ttl: int = CacheTTL.REFERENCE,
        language_code: str = "en",
        device: str = "desktop",
        timeout_seconds: float | None = None,
    ) -> None:
        self.provider = provider
        self.scheduler = scheduler
        self.cache = cache
        self.search_depth = search_depth
        self.top_entities_limit = top_entities_limit
        self.ttl = int(ttl)
        self.reference_ttl = int(reference_ttl)
        self.language_code = language_code
        self.device = device
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def endpoint_class_for(search_type: str) -> EndpointClass:
        return EndpointClass.MAPS if search_type == "maps" else EndpointClass.GENERAL

    def observe(self, items: list[SerpItem], target: TargetEntity, *, search_type: str = "maps") -> RankingObservation:
        expected_type = SEARCH_TYPES[search_type]
        filtered = [item for item in items if item.type == expected_type][: self.search_depth]
        target_rank: int | None = None
        entities: list[RankedEntity] = []
        for position, item in enumerate(filtered, start=1):
            entity = _entity_from_item(item, position)
            if target_rank is None and matches_target(entity, target):
                target_rank = position
                entity = replace(entity, is_target=True)
            if len(entities) < self.top_entities_limit:
                entities.append(entity)
        return RankingObservation(target_rank=target_rank, top_entities=entities, total_results=len(filtered))

    async def lookup_ranking(
        self,
        coordinate: tuple[float, float],
        keyword: str,
        target: TargetEntity,
        *,
        search_type: str = "maps",
        skip_cache: bool = False,
        usage: ScanUsage | None = None,
    ) -> RankingObservation:
        if search_type not in SEARCH_TYPES:
            raise ValueError(f"Unsupported search type: {search_type}")
        lat, lng = coordinate
        wire_coordinate = format_coordinate(lat, lng)
        query = SerpQuery(
            keyword=keyword,
            coordinate=wire_coordinate,
            language_code=self.language_code,
            device=self.device,
            depth=self.search_depth,
        )
        if search_type == "maps":
            key = serp_maps_key(keyword, wire_coordinate, self.search_depth)
            search = self.provider.search_maps
        else:
            key = serp_organic_key(keyword, wire_coordinate, self.search_depth)
            search = self.provider.search_organic

        async def call_provider() -> list[dict[str, Any]]:
            if usage is not None:
                usage.api_calls += 1
            return dump_serp_items(await search(query))

        async def fetch() -> list[dict[str, Any]]:
            return await self.scheduler.schedule(
                self.endpoint_class_for(search_type),
                call_provider,
                timeout=self.timeout_seconds,
            )

        if usage is not None:
            usage.lookups += 1
        raw_items = await self.cache.get_or_fetch(key, fetch, ttl=self.ttl, skip_cache=skip_cache)
        return self.observe(parse_serp_items(raw_items), target, search_type=search_type)

    async def list_locations(self, country: str | None = None, *, skip_cache: bool = False) -> list[dict[str, Any]]:
        async def fetch() -> list[dict[str, Any]]:
            return await self.scheduler.schedule(
                EndpointClass.GENERAL,
                lambda: self.provider.list_locations(country),
                timeout=self.timeout_seconds,
            )

        return await self.cache.get_or_fetch(
            serp_locations_key(country),
            fetch,
            ttl=self.reference_ttl,
            skip_cache=skip_cache,
        )
