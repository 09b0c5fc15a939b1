from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Sequence, Tuple

from .config import max_workers as configured_max_workers
from .health_scoring import compute_health_score, summarize_portfolio
from .models import ApplicationSignals, HealthScoreBreakdown

logger = logging.getLogger(__name__)

CommitFn = Callable[[HealthScoreBreakdown], object]


@dataclass(frozen=True)
class PortfolioRunResult:
    breakdowns: Tuple[HealthScoreBreakdown, ...]
    committed_ids: Tuple[str, ...]
    skipped_ids: Tuple[str, ...]
    cancelled: bool

    def summary(self) -> Dict[str, object]:
        payload = summarize_portfolio(self.breakdowns)
        payload["cancelled"] = self.cancelled
        payload["committed"] = len(self.committed_ids)
        payload["skipped_ids"] = list(self.skipped_ids)
        return payload


def _score_unit(signals: ApplicationSignals, as_of: datetime, cancel_event: threading.Event) -> Optional[HealthScoreBreakdown]:
    if cancel_event.is_set():
        return None
    return compute_health_score(signals, as_of)


def score_portfolio(
    signals: Sequence[ApplicationSignals],
    *,
    as_of: datetime,
    commit: CommitFn | None = None,
    cancel_event: threading.Event | None = None,
    max_workers: int | None = None,
) -> PortfolioRunResult:
    """Score every application, committing each result from the calling thread.

    Workers only compute. Setting ``cancel_event`` stops the run between
    units: already committed breakdowns stay committed and everything else is
    reported in ``skipped_ids``.
    """
    event = cancel_event or threading.Event()
    workers = max(1, int(max_workers or configured_max_workers()))
    order = [item.application_id for item in signals]

    committed: Dict[str, HealthScoreBreakdown] = {}
    cancelled = False
    with ThreadPoolExecutor(max_workers=workers) as executor:
        pending: Dict[Future, str] = {
            executor.submit(_score_unit, item, as_of, event): item.application_id for item in signals
        }
        try:
            while pending and not cancelled:
                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                for future in done:
                    application_id = pending.pop(future)
                    if event.is_set():
                        cancelled = True
                        break
                    breakdown = future.result()
                    if breakdown is None:
                        continue
                    if commit is not None:
                        commit(breakdown)
                    committed[application_id] = breakdown
                if event.is_set():
                    cancelled = True
        finally:
            for future in pending:
                future.cancel()

    if cancelled:
        logger.warning("portfolio scoring cancelled after %s of %s applications", len(committed), len(order))
    skipped = [app_id for app_id in order if app_id not in committed]
    return PortfolioRunResult(
        breakdowns=tuple(committed[app_id] for app_id in order if app_id in committed),
        committed_ids=tuple(app_id for app_id in order if app_id in committed),
        skipped_ids=tuple(skipped),
        cancelled=cancelled or bool(skipped and event.is_set()),
    )
