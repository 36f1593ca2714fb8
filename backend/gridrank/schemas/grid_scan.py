from datetime import datetime

from pydantic import BaseModel


class GridScanOut(BaseModel):
    id: str
    campaign_id: str
    status: str
    progress: int
    points_completed: int
    total_points: int
    failed_points: int
    api_calls_used: int
    estimated_cost: float
    avg_rank: float | None
    avg_rank_change: float | None
    share_of_voice: float | None
    top_competitor: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class CompetitorStatOut(BaseModel):
    business_name: str
    external_id: str | None
    rating: float | None
    review_count: int | None
    avg_rank: float
    times_in_top3: int
    times_in_top10: int
    times_in_top20: int
    appearances: int
    share_of_voice: float
    prev_avg_rank: float | None
    rank_change: float | None
    is_target: bool

    model_config = {"from_attributes": True}


class KeywordSummaryOut(BaseModel):
    keyword: str
    observations: int
    times_ranked: int
    avg_rank: float | None
    times_in_top3: int
    times_in_top10: int

    model_config = {"from_attributes": True}


class CompetitiveSummaryOut(BaseModel):
    target_position: str
    competitors_ahead: int
    main_threats: list[str]
    recommendation: str

    model_config = {"from_attributes": True}


class GridPointOut(BaseModel):
    row: int
    col: int
    lat: float
    lng: float
    keyword: str
    rank: int | None
    top_rankings: list[dict]


class GridCellKeywordOut(BaseModel):
    keyword: str
    rank: int | None
    top_rankings: list[dict]


class GridCellOut(BaseModel):
    row: int
    col: int
    lat: float
    lng: float
    keywords: list[GridCellKeywordOut]
    avg_rank: float | None


class GridAggregatesOut(BaseModel):
    avg_rank: float | None
    share_of_voice: float
    times_in_top3: int
    times_not_ranking: int
    total_points: int


class GridViewOut(BaseModel):
    scan_id: str
    campaign_id: str
    keyword: str
    grid_size: int | None
    center_lat: float | None
    center_lng: float | None
    points: list[GridPointOut] | list[GridCellOut]
    aggregates: GridAggregatesOut
