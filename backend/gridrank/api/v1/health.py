from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from gridrank.api.response import envelope
from gridrank.db.session import SessionLocal
from gridrank.services.engine import get_request_scheduler

router = APIRouter(tags=['ops'])


def _db_connected() -> bool:
    db = SessionLocal()
    try:
        db.execute(text('SELECT 1'))
        return True
    except SQLAlchemyError:
        return False
    finally:
        db.close()


@router.get('/health')
def health(request: Request) -> dict:
    limiters = {
        name: {
            'in_flight': snapshot.in_flight,
            'queued': snapshot.queued,
            'reservoir_remaining': snapshot.reservoir_remaining,
            'max_concurrent': snapshot.max_concurrent,
        }
        for name, snapshot in get_request_scheduler().snapshot().items()
    }
    return envelope(
        request,
        {
            'status': 'ok',
            'database': 'ok' if _db_connected() else 'unavailable',
            'limiters': limiters,
        },
    )
