from datetime import datetime
from typing import Dict, Optional
import asyncio
import logging

from ..errors import ExamSessionError
from .attempt_lifecycle import AttemptLifecycle
from .attempt_state import ExamConfig, SweepReport

logger = logging.getLogger(__name__)


async def sweep_expired(lifecycle: AttemptLifecycle, now: Optional[datetime] = None) -> SweepReport:
    """
    Grade every open attempt whose time ran out or whose fullscreen countdown
    lapsed, with its last saved answers. Safe to run while students are still
    submitting: losing a completion race just counts as skipped.
    """
    now = lifecycle.now(now)
    candidates = await lifecycle.store.list_incomplete_expired(now)
    report = SweepReport(total=len(candidates))
    configs: Dict[str, ExamConfig] = {}

    for attempt in candidates:
        try:
            config = configs.get(attempt.exam_id)
            if config is None:
                config = await lifecycle.catalog.get_exam_config(attempt.exam_id)
                configs[attempt.exam_id] = config
            if not config.is_active:
                report.skipped += 1
                continue

            result = await lifecycle.close_if_lapsed(attempt, config, now)
            if result is None or result.already_completed:
                report.skipped += 1
            else:
                report.submitted += 1
        except ExamSessionError as e:
            logger.warning("Sweep could not close attempt %s: %s", attempt.id, e.message)
            report.failed += 1
            report.errors.append({"attempt_id": attempt.id, "error": e.message})
        except Exception as e:
            logger.exception("Sweep failed on attempt %s", attempt.id)
            report.failed += 1
            report.errors.append({"attempt_id": attempt.id, "error": str(e)})

    if report.total:
        logger.info("Expiry sweep: %s candidates, %s submitted, %s skipped, %s failed",
                    report.total, report.submitted, report.skipped, report.failed)
    return report


async def run_sweep_loop(lifecycle: AttemptLifecycle, interval_seconds: int):
    """Background task started by the app lifespan; cancelled on shutdown."""
    logger.info("Expiry sweep running every %ss", interval_seconds)
    while True:
        try:
            await sweep_expired(lifecycle)
        except Exception:
            logger.exception("Expiry sweep run failed")
        await asyncio.sleep(interval_seconds)
