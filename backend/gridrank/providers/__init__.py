from gridrank.providers.cache import ResponseCache, build_response_cache
from gridrank.providers.rate_limiter import EndpointClass, EndpointLimiter
from gridrank.providers.scheduler import RequestScheduler, build_request_scheduler
from gridrank.providers.serp import RankingDataProvider, get_ranking_provider

__all__ = [
    "EndpointClass",
    "EndpointLimiter",
    "RankingDataProvider",
    "RequestScheduler",
    "ResponseCache",
    "build_request_scheduler",
    "build_response_cache",
    "get_ranking_provider",
]
