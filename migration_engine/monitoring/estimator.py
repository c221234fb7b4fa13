"""
Completion time estimation.

Estimates are advisory. Nothing in the engine gates a transition on
them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from migration_engine.models.phase import PhaseStatus
from migration_engine.models.run import MigrationRun, RunStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionEstimate:
    """Projected finish time for a run."""
    eta: datetime
    remaining_seconds: float
    confidence: float  # 0..1, grows with overall progress


def _remaining_minutes(phase) -> float:
    return (100.0 - min(phase.progress, 100.0)) * phase.estimated_duration_minutes / 100.0


class CompletionEstimator:
    """
    Projects a finish time from estimated phase durations.

    Remaining work is each phase's unfinished share of its estimated
    duration, ``(100 - progress) * estimated_duration / 100``, summed over
    the phases that are not skipped. With equal durations this is
    ``(100 - overall_progress) * total_estimated / 100``.
    When phases are actively transferring bytes and a migration speed
    has been observed, their share of that figure is replaced by
    ``bytes_remaining / migration_speed``.

    Args:
        calibrate: Scale the remaining estimate by the actual/estimated
            duration ratio of the phases completed so far.
    """

    def __init__(self, calibrate: bool = False):
        self.calibrate = calibrate

    def estimate(self, run: MigrationRun, now: Optional[datetime] = None) -> Optional[CompletionEstimate]:
        now = now or datetime.utcnow()

        if run.status == RunStatus.COMPLETED:
            return CompletionEstimate(eta=run.end_time or now, remaining_seconds=0.0, confidence=1.0)

        if not run.has_started or run.overall_progress <= 0 or not run.phases:
            return None

        overall = min(run.overall_progress, 100.0)
        counted = [p for p in run.phases if p.status != PhaseStatus.SKIPPED]
        total_estimated = sum(p.estimated_duration_minutes for p in counted)

        if total_estimated > 0:
            remaining_minutes = sum(_remaining_minutes(p) for p in counted)
            if self.calibrate:
                remaining_minutes *= self._duration_factor(run)
            remaining_seconds = remaining_minutes * 60.0
        else:
            # No duration estimates: extrapolate from elapsed time
            done = sum(min(p.progress, 100.0) for p in counted) / len(counted) if counted else 100.0
            if done <= 0:
                return None
            elapsed = (now - run.start_time).total_seconds()
            remaining_seconds = elapsed * (100.0 - done) / done

        speed = run.metrics.migration_speed
        if speed > 0:
            share_seconds = 0.0
            bytes_left = 0
            for phase in run.phases:
                if phase.status != PhaseStatus.IN_PROGRESS:
                    continue
                total_bytes = phase.metadata.get("bytes_total")
                migrated_bytes = phase.metadata.get("bytes_migrated")
                if total_bytes is None or migrated_bytes is None:
                    continue
                bytes_left += max(0, int(total_bytes) - int(migrated_bytes))
                share_seconds += _remaining_minutes(phase) * 60.0
            if bytes_left > 0 or share_seconds > 0:
                remaining_seconds = remaining_seconds - share_seconds + bytes_left / speed

        remaining_seconds = max(0.0, remaining_seconds)
        return CompletionEstimate(
            eta=now + timedelta(seconds=remaining_seconds),
            remaining_seconds=remaining_seconds,
            confidence=round(overall / 100.0, 4),
        )

    def estimate_completion(self, run: MigrationRun, now: Optional[datetime] = None) -> Optional[datetime]:
        """Projected finish timestamp, or None when no phase has started."""
        estimate = self.estimate(run, now=now)
        return estimate.eta if estimate else None

    def _duration_factor(self, run: MigrationRun) -> float:
        ratios = []
        for phase in run.phases:
            actual = phase.actual_duration_minutes
            if phase.status == PhaseStatus.COMPLETED and actual is not None and phase.estimated_duration_minutes > 0:
                ratios.append(actual / phase.estimated_duration_minutes)
        if not ratios:
            return 1.0
        factor = sum(ratios) / len(ratios)
        logger.debug(f"Duration calibration factor {factor:.2f} from {len(ratios)} completed phases")
        return factor


def estimate_completion(run: MigrationRun, now: Optional[datetime] = None) -> Optional[datetime]:
    return CompletionEstimator().estimate_completion(run, now=now)
