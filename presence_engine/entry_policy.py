"""
Entry/exit logging policy.

Each request runs through a fixed gate sequence: library hours (warning only),
entry debounce, exit validity, confidence scoring, and finally the
auto/manual/reject decision. Rejections are raised as PresenceError subclasses
carrying everything the caller needs to resubmit with confirmation.

The debounce check reads the last event and writes the new one without a
transaction, so two simultaneous requests from one user can both pass it.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from presence_engine.config_store import DEFAULT_CONFIG, ConfigStore
from presence_engine.exceptions import ConfidenceRejected, ExitStillInZone, RecentEntryConflict
from presence_engine.geo import distance_km
from presence_engine.models import (
    EntryEvent,
    EntryResult,
    EntryType,
    ExitValidation,
    GpsCoordinate,
    RecentEntryCheck,
)
from presence_engine.scoring import ConfidenceScorer, round_half_up

logger = logging.getLogger(__name__)

OUTSIDE_HOURS_WARNING = "Entry logged outside library hours"


class EntryPolicy:
    def __init__(self, config: ConfigStore, scorer: ConfidenceScorer, repository,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.config = config
        self.scorer = scorer
        self.repository = repository
        self._now = clock

    def is_within_library_hours(self) -> bool:
        open_hour = self.config.get("library_open_hour", DEFAULT_CONFIG["library_open_hour"])
        close_hour = self.config.get("library_close_hour", DEFAULT_CONFIG["library_close_hour"])
        return open_hour <= self._now().hour < close_hour

    def _last_event(self, user_id: int) -> Optional[EntryEvent]:
        row = self.repository.latest_entry_for_user(user_id)
        return EntryEvent.from_row(row) if row else None

    def check_recent_entry(self, user_id: int) -> RecentEntryCheck:
        debounce_minutes = self.config.get("entry_debounce_minutes", DEFAULT_CONFIG["entry_debounce_minutes"])
        last = self._last_event(user_id)
        if last is None:
            return RecentEntryCheck(has_recent_entry=False, debounce_window=debounce_minutes)

        elapsed = (self._now() - last.timestamp).total_seconds()
        return RecentEntryCheck(
            has_recent_entry=elapsed < debounce_minutes * 60,
            debounce_window=debounce_minutes,
            last_entry=last,
            minutes_since=int(elapsed // 60),
        )

    def validate_exit(self, user_id: int, coordinate: GpsCoordinate) -> ExitValidation:
        """An exit is valid once the user has left the outer zone.

        Without a previous event, or after a previous exit, any exit is accepted.
        """
        last = self._last_event(user_id)
        if last is None:
            return ExitValidation(valid=True, reason="no_previous_entry")
        if last.entry_type is EntryType.EXIT:
            return ExitValidation(valid=True, reason="last_was_exit")

        _, outer = self.config.geofence_zones()
        meters = distance_km(coordinate, self.config.library_center()) * 1000
        if meters > outer:
            return ExitValidation(valid=True, reason="outside_zone", distance_meters=round_half_up(meters))
        return ExitValidation(
            valid=False,
            reason="still_in_zone",
            distance_meters=round_half_up(meters),
            required_distance=outer,
        )

    def log_entry(self, user_id: int, entry_type: EntryType, coordinate: GpsCoordinate,
                  wifi_ssid: Optional[str] = None, speed_kmh: Optional[float] = None,
                  manual_confirm: bool = False) -> EntryResult:
        entry_type = EntryType(entry_type)
        warnings: List[str] = []

        if not self.is_within_library_hours():
            warnings.append(OUTSIDE_HOURS_WARNING)

        recent = self.check_recent_entry(user_id)
        if recent.has_recent_entry and not manual_confirm:
            logger.info(f"User {user_id}: {entry_type.value} rejected, last event {recent.minutes_since} min ago")
            raise RecentEntryConflict(
                minutes_since=recent.minutes_since,
                debounce_window=recent.debounce_window,
                last_entry=recent.last_entry.summary() if recent.last_entry else None,
            )

        if entry_type is EntryType.EXIT:
            exit_check = self.validate_exit(user_id, coordinate)
            if not exit_check.valid and not manual_confirm:
                logger.info(f"User {user_id}: exit rejected at {exit_check.distance_meters}m")
                raise ExitStillInZone(exit_check.distance_meters, exit_check.required_distance)

        confidence = self.scorer.score(coordinate, wifi_ssid, speed_kmh)
        auto_threshold = self.config.get("entry_confidence_threshold", DEFAULT_CONFIG["entry_confidence_threshold"])
        manual_threshold = self.config.get("entry_manual_threshold", DEFAULT_CONFIG["entry_manual_threshold"])

        auto_logged, below_manual = self.decide(confidence.total, auto_threshold, manual_threshold, manual_confirm)
        if auto_logged is None:
            logger.info(f"User {user_id}: {entry_type.value} rejected, confidence {confidence.total}")
            raise ConfidenceRejected(confidence, auto_threshold, manual_threshold)

        event = EntryEvent(
            user_id=user_id,
            entry_type=entry_type,
            coordinate=coordinate,
            wifi_ssid=wifi_ssid,
            speed_kmh=speed_kmh,
            confidence_score=confidence.total,
            gps_confidence=confidence.gps,
            wifi_confidence=confidence.wifi,
            motion_confidence=confidence.motion,
            auto_logged=auto_logged,
            manually_confirmed=bool(manual_confirm),
            timestamp=self._now(),
        )
        event_id = self.repository.insert_entry(event)
        stored = replace(event, id=event_id)

        logger.info(
            f"User {user_id}: {entry_type.value} logged "
            f"({'auto' if auto_logged else 'manual'}, confidence {confidence.total})"
        )
        return EntryResult(
            entry_event=stored,
            confidence=confidence,
            warnings=warnings,
            below_manual_threshold=below_manual,
        )

    @staticmethod
    def decide(total: int, auto_threshold: float, manual_threshold: float,
               manual_confirm: bool) -> Tuple[Optional[bool], bool]:
        """Return (auto_logged, below_manual_threshold); auto_logged is None for a rejection.

        A confirmed request is logged even when its score is below the manual
        threshold. The second element flags that case for auditing.
        """
        if total >= auto_threshold:
            return True, False
        below_manual = total < manual_threshold
        if manual_confirm:
            if below_manual:
                logger.warning(f"Confirmed entry logged with confidence {total} below manual threshold {manual_threshold}")
            return False, below_manual
        return None, below_manual

    # ------------------------- History ------------------------- #
    def history(self, user_id: int, limit: int = 50, offset: int = 0) -> Tuple[int, List[EntryEvent]]:
        total, rows = self.repository.entry_history(user_id, limit, offset)
        return total, [EntryEvent.from_row(row) for row in rows]

    def current_occupancy(self) -> List[dict]:
        return self.repository.current_occupants()
