"""
Sync progress reporting.

Derives percent complete, throughput and ETA from the counters the
orchestrator persists. Nothing here touches the network or the database.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .errors import safe_summary
from .storage import from_iso, utcnow

COLD_START_SPEED = 2.0
WARMUP_PROCESSED = 25
WARMUP_SECONDS = 5
TRAILING_WINDOW_SECONDS = 60


def _parse_samples(samples: Sequence) -> List[tuple]:
    parsed = []
    for stamp, processed in samples or []:
        when = from_iso(stamp) if isinstance(stamp, str) else stamp
        if when is not None:
            parsed.append((when, int(processed)))
    return parsed


def estimate_speed(
    processed: int,
    started_at: Optional[datetime],
    samples: Sequence,
    now: Optional[datetime] = None
) -> float:
    """
    Emails processed per second.

    Returns COLD_START_SPEED until the run is warmed up, then the throughput
    over the trailing window, falling back to the run average. Always positive.
    """
    now = now or utcnow()
    if started_at is None:
        return COLD_START_SPEED

    elapsed = (now - started_at).total_seconds()
    if processed < WARMUP_PROCESSED or elapsed < WARMUP_SECONDS:
        return COLD_START_SPEED

    window_start = now - timedelta(seconds=TRAILING_WINDOW_SECONDS)
    recent = [s for s in _parse_samples(samples) if s[0] >= window_start]
    if len(recent) >= 2:
        span = (recent[-1][0] - recent[0][0]).total_seconds()
        gained = recent[-1][1] - recent[0][1]
        if span > 0 and gained > 0:
            return gained / span

    if elapsed > 0 and processed > 0:
        return processed / elapsed
    return COLD_START_SPEED


def estimate_eta(processed: int, total: int, speed: float) -> Optional[float]:
    """Seconds remaining, or None when unknown."""
    if speed <= 0 or processed >= total:
        return None
    return (total - processed) / speed


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None or seconds <= 0:
        return "unknown"
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    return f"{round(seconds / 3600)}h"


def percent_complete(processed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(100.0, processed * 100.0 / total), 1)


def build_status(
    account: Dict[str, Any],
    run: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Status payload for one account.

    Args:
        account: Account row
        run: The account's current or latest Sync Run row, if any
        now: Clock override for tests
    """
    now = now or utcnow()
    state = account['sync_state']
    processed = account.get('processed_count') or 0
    total = account.get('total_count') or 0

    speed = None
    eta_seconds = None
    if state == 'syncing':
        samples = run.get('progress_samples', []) if run else []
        speed = round(estimate_speed(processed, from_iso(account.get('sync_started_at')), samples, now), 2)
        eta_seconds = estimate_eta(processed, total, speed)

    percent = percent_complete(processed, total)
    if state == 'idle' and account.get('last_sync_at'):
        # Caught up, even when the last run had nothing new to fetch
        percent = 100.0

    return {
        'account_id': account['id'],
        'state': state,
        'progress': {
            'processed': processed,
            'total': total,
            'percent': percent,
        },
        'current_folder': account.get('current_folder') if state == 'syncing' else None,
        'speed': speed,
        'eta_seconds': round(eta_seconds, 1) if eta_seconds is not None else None,
        'eta': format_eta(eta_seconds),
        'last_sync_at': account.get('last_sync_at'),
        'run_id': account.get('current_run_id'),
        'auto_sync_blocked': bool(account.get('auto_sync_blocked')),
        'error': safe_summary(account.get('last_error_code')) if state == 'error' else None,
    }
