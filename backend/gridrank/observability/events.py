from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger('gridrank.observability')


def _emit(event_name: str, payload: dict[str, Any], *, level: int = logging.INFO) -> None:
    message = {
        'event': event_name,
        **payload,
    }
    logger.log(level, json.dumps(message, sort_keys=True, separators=(',', ':'), default=str))


def emit_scan_created(*, scan_id: str, campaign_id: str, total_points: int) -> None:
    _emit('scan.created', {'scan_id': scan_id, 'campaign_id': campaign_id, 'total_points': total_points})


def emit_scan_started(*, scan_id: str, campaign_id: str, grid_size: int, keyword_count: int) -> None:
    _emit(
        'scan.started',
        {
            'scan_id': scan_id,
            'campaign_id': campaign_id,
            'grid_size': grid_size,
            'keyword_count': keyword_count,
        },
    )


def emit_point_failed(*, scan_id: str, keyword: str, row: int, col: int, reason_code: str) -> None:
    _emit(
        'scan.point_failed',
        {'scan_id': scan_id, 'keyword': keyword, 'row': row, 'col': col, 'reason_code': reason_code},
        level=logging.WARNING,
    )


def emit_scan_completed(
    *,
    scan_id: str,
    campaign_id: str,
    points_completed: int,
    failed_points: int,
    api_calls_used: int,
    avg_rank: float | None,
) -> None:
    _emit(
        'scan.completed',
        {
            'scan_id': scan_id,
            'campaign_id': campaign_id,
            'points_completed': points_completed,
            'failed_points': failed_points,
            'api_calls_used': api_calls_used,
            'avg_rank': avg_rank,
        },
    )


def emit_scan_failed(*, scan_id: str, campaign_id: str | None, reason_code: str, error_message: str) -> None:
    _emit(
        'scan.failed',
        {
            'scan_id': scan_id,
            'campaign_id': campaign_id,
            'reason_code': reason_code,
            'error_message': error_message,
        },
        level=logging.ERROR,
    )


def emit_cancel_requested(*, scan_id: str) -> None:
    _emit('scan.cancel_requested', {'scan_id': scan_id})


def emit_provider_retry(*, endpoint_class: str, attempt: int, reason_code: str, delay_seconds: float) -> None:
    _emit(
        'provider.retry',
        {
            'endpoint_class': endpoint_class,
            'attempt': attempt,
            'reason_code': reason_code,
            'delay_seconds': round(delay_seconds, 3),
        },
        level=logging.WARNING,
    )


def emit_cache_error(*, operation: str, key: str, error: str) -> None:
    _emit('cache.error', {'operation': operation, 'key': key, 'error': error}, level=logging.WARNING)
