from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import Session

from gridrank.core.config import Settings, get_settings
from gridrank.providers.cache import ResponseCache, build_response_cache
from gridrank.providers.cache_keys import CacheTTL
from gridrank.providers.ranking_client import RankingClient
from gridrank.providers.scheduler import RequestScheduler, build_request_scheduler
from gridrank.providers.serp import RankingDataProvider, get_ranking_provider
from gridrank.services.scan_orchestrator import OrchestratorOptions, ScanOrchestrator
from gridrank.services.scan_store import SqlScanStore


@lru_cache
def get_request_scheduler() -> RequestScheduler:
    return build_request_scheduler(get_settings())


@lru_cache
def get_response_cache() -> ResponseCache:
    return build_response_cache(get_settings())


def build_ranking_client(
    settings: Settings,
    *,
    provider: RankingDataProvider | None = None,
    scheduler: RequestScheduler | None = None,
    cache: ResponseCache | None = None,
) -> RankingClient:
    return RankingClient(
        provider or get_ranking_provider(),
        scheduler or get_request_scheduler(),
        cache or get_response_cache(),
        search_depth=settings.scan_search_depth,
        top_entities_limit=settings.scan_top_entities_limit,
        ttl=settings.cache_ttl_serp_seconds,
        reference_ttl=settings.cache_ttl_reference_seconds or CacheTTL.REFERENCE,
        language_code=settings.provider_language_code,
        device=settings.provider_device,
        timeout_seconds=settings.provider_timeout_seconds,
    )


def build_orchestrator(
    db: Session,
    *,
    settings: Settings | None = None,
    ranking_client: RankingClient | None = None,
) -> ScanOrchestrator:
    resolved = settings or get_settings()
    return ScanOrchestrator(
        SqlScanStore(db),
        ranking_client or build_ranking_client(resolved),
        options=OrchestratorOptions.from_settings(resolved),
    )
