from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from gridrank.providers.ranking_client import RankedEntity, normalize_business_name

TOP3 = 3
TOP10 = 10
TOP20 = 20

_RECOMMENDATIONS = {
    "dominant": "Maintain strong position. Focus on review acquisition and content updates.",
    "strong": "Good visibility. Optimize the business profile and increase review velocity to reach a dominant position.",
    "moderate": "Improve local signals. Focus on proximity optimization, review generation, and category relevance.",
    "weak": "Significant improvement needed. Audit profile completeness, build citations, and add local content.",
    "not_ranking": "Not appearing in local results. Verify the listing is claimed, categories are correct, and NAP data is consistent.",
}


@dataclass(frozen=True)
class PointObservation:
    keyword: str
    row: int
    col: int
    target_rank: int | None
    top_entities: list[RankedEntity] = field(default_factory=list)


class PreviousStat(Protocol):
    identity_key: str
    avg_rank: float


@dataclass(frozen=True)
class CompetitorSummary:
    identity_key: str
    business_name: str
    avg_rank: float
    times_in_top3: int
    times_in_top10: int
    times_in_top20: int
    appearances: int
    share_of_voice: float
    external_id: str | None = None
    rating: float | None = None
    review_count: int | None = None
    prev_avg_rank: float | None = None
    rank_change: float | None = None
    is_target: bool = False


@dataclass(frozen=True)
class ScanAggregation:
    avg_rank: float | None
    share_of_voice: float
    top_competitor: str | None
    competitor_stats: list[CompetitorSummary]
    target_stat: CompetitorSummary | None
    avg_rank_change: float | None
    total_competitors_found: int
    observation_count: int


@dataclass(frozen=True)
class KeywordSummary:
    keyword: str
    observations: int
    times_ranked: int
    avg_rank: float | None
    times_in_top3: int
    times_in_top10: int


@dataclass(frozen=True)
class CompetitiveSummary:
    target_position: str
    competitors_ahead: int
    main_threats: list[str]
    recommendation: str


@dataclass
class _Accumulator:
    business_name: str
    external_id: str | None = None
    rating: float | None = None
    review_count: int | None = None
    total_rank: int = 0
    appearances: int = 0
    times_in_top3: int = 0
    times_in_top10: int = 0
    times_in_top20: int = 0
    is_target: bool = False

    def add(self, entity: RankedEntity) -> None:
        self.total_rank += entity.rank
        self.appearances += 1
        if entity.rank <= TOP3:
            self.times_in_top3 += 1
        if entity.rank <= TOP10:
            self.times_in_top10 += 1
        if entity.rank <= TOP20:
            self.times_in_top20 += 1
        if entity.rating is not None and (self.rating is None or (entity.review_count or 0) > (self.review_count or 0)):
            self.rating = entity.rating
            self.review_count = entity.review_count
        if entity.external_id and not self.external_id:
            self.external_id = entity.external_id
        if entity.is_target:
            self.is_target = True


def identity_key(entity: RankedEntity) -> str:
    if entity.external_id:
        return f"id:{entity.external_id}"
    return f"name:{normalize_business_name(entity.name)}"


def _round(value: float) -> float:
    return round(value, 2)


def _best_per_identity(entities: Iterable[RankedEntity]) -> dict[str, RankedEntity]:
    best: dict[str, RankedEntity] = {}
    for entity in entities:
        key = identity_key(entity)
        current = best.get(key)
        if current is None or entity.rank < current.rank:
            best[key] = entity
    return best


def _sorted_observations(observations: Iterable[PointObservation]) -> list[PointObservation]:
    return sorted(observations, key=lambda item: (item.keyword, item.row, item.col))


def aggregate_scan(
    results: Iterable[PointObservation],
    previous_stats: Iterable[PreviousStat] | None = None,
    *,
    previous_avg_rank: float | None = None,
) -> ScanAggregation:
    observations = _sorted_observations(results)
    observation_count = len(observations)

    target_ranks = [item.target_rank for item in observations if item.target_rank is not None]
    avg_rank = _round(sum(target_ranks) / len(target_ranks)) if target_ranks else None
    target_top3 = sum(1 for rank in target_ranks if rank <= TOP3)
    scan_share = _round(target_top3 / observation_count * 100) if observation_count else 0.0

    accumulators: dict[str, _Accumulator] = {}
    for observation in observations:
        # An entity listed twice in one result counts once, at its best rank.
        for key, entity in _best_per_identity(observation.top_entities).items():
            accumulator = accumulators.get(key)
            if accumulator is None:
                accumulator = _Accumulator(business_name=entity.name)
                accumulators[key] = accumulator
            accumulator.add(entity)

    previous = {stat.identity_key: float(stat.avg_rank) for stat in previous_stats or []}

    summaries: list[CompetitorSummary] = []
    for key, accumulator in accumulators.items():
        current_avg = _round(accumulator.total_rank / accumulator.appearances)
        prev_avg = previous.get(key)
        summaries.append(
            CompetitorSummary(
                identity_key=key,
                business_name=accumulator.business_name,
                avg_rank=current_avg,
                times_in_top3=accumulator.times_in_top3,
                times_in_top10=accumulator.times_in_top10,
                times_in_top20=accumulator.times_in_top20,
                appearances=accumulator.appearances,
                share_of_voice=_round(accumulator.times_in_top3 / observation_count * 100) if observation_count else 0.0,
                external_id=accumulator.external_id,
                rating=accumulator.rating,
                review_count=accumulator.review_count,
                prev_avg_rank=prev_avg,
                rank_change=_round(prev_avg - current_avg) if prev_avg is not None else None,
                is_target=accumulator.is_target,
            )
        )
    summaries.sort(key=lambda item: (item.avg_rank, -item.share_of_voice, item.business_name.lower(), item.identity_key))

    competitors = [item for item in summaries if not item.is_target]
    target_stat = next((item for item in summaries if item.is_target), None)
    top = min(
        competitors,
        key=lambda item: (-item.share_of_voice, item.avg_rank, item.business_name.lower(), item.identity_key),
        default=None,
    )
    avg_rank_change = None
    if previous_avg_rank is not None and avg_rank is not None:
        avg_rank_change = _round(previous_avg_rank - avg_rank)

    return ScanAggregation(
        avg_rank=avg_rank,
        share_of_voice=scan_share,
        top_competitor=top.business_name if top else None,
        competitor_stats=summaries,
        target_stat=target_stat,
        avg_rank_change=avg_rank_change,
        total_competitors_found=len(competitors),
        observation_count=observation_count,
    )


def summarize_keywords(results: Iterable[PointObservation]) -> list[KeywordSummary]:
    grouped: dict[str, list[PointObservation]] = {}
    for observation in _sorted_observations(results):
        grouped.setdefault(observation.keyword, []).append(observation)
    summaries: list[KeywordSummary] = []
    for keyword, rows in grouped.items():
        ranks = [row.target_rank for row in rows if row.target_rank is not None]
        summaries.append(
            KeywordSummary(
                keyword=keyword,
                observations=len(rows),
                times_ranked=len(ranks),
                avg_rank=_round(sum(ranks) / len(ranks)) if ranks else None,
                times_in_top3=sum(1 for rank in ranks if rank <= TOP3),
                times_in_top10=sum(1 for rank in ranks if rank <= TOP10),
            )
        )
    return summaries


def performance_tier(avg_rank: float | None) -> str:
    if avg_rank is None or avg_rank <= 0:
        return "not_ranking"
    if avg_rank <= TOP3:
        return "dominant"
    if avg_rank <= TOP10:
        return "strong"
    if avg_rank <= TOP20:
        return "moderate"
    return "weak"


def competitive_summary(aggregation: ScanAggregation) -> CompetitiveSummary:
    position = performance_tier(aggregation.avg_rank)
    competitors = [item for item in aggregation.competitor_stats if not item.is_target]
    if aggregation.avg_rank is None:
        ahead = len(competitors)
    else:
        ahead = sum(1 for item in competitors if item.avg_rank < aggregation.avg_rank)
    threats = [item for item in competitors if item.share_of_voice > aggregation.share_of_voice]
    threats.sort(key=lambda item: (-item.share_of_voice, item.avg_rank, item.business_name.lower()))
    return CompetitiveSummary(
        target_position=position,
        competitors_ahead=ahead,
        main_threats=[item.business_name for item in threats[:3]],
        recommendation=_RECOMMENDATIONS[position],
    )


def estimate_scan_cost(grid_size: int, keyword_count: int, cost_per_call: float = 0.005) -> float:
    return round(grid_size * grid_size * keyword_count * cost_per_call, 4)
