from gridrank.models.grid_scan import CompetitorStat, GridPointResult, GridScan, ScanStatus
from gridrank.models.local_campaign import CampaignStatus, LocalCampaign, ScanCadence

__all__ = [
    'LocalCampaign',
    'CampaignStatus',
    'ScanCadence',
    'GridScan',
    'GridPointResult',
    'CompetitorStat',
    'ScanStatus',
]
