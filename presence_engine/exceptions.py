from __future__ import annotations

from typing import Any, Dict, Optional


class PresenceError(Exception):
    """Base class for domain rejections returned to the caller as structured payloads."""

    status_code = 400
    error = "Bad Request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error, "message": self.message}
        payload.update(self.context())
        return payload


class ValidationError(PresenceError):
    error = "Validation Error"

    def __init__(self, message: str, mode: Optional[str] = None) -> None:
        super().__init__(message)
        self.mode = mode

    def context(self) -> Dict[str, Any]:
        return {"mode": self.mode} if self.mode else {}


class NotFoundError(PresenceError):
    status_code = 404
    error = "Not Found"

    def __init__(self, message: str, **identifiers: Any) -> None:
        super().__init__(message)
        self.identifiers = identifiers

    def context(self) -> Dict[str, Any]:
        return dict(self.identifiers)


class RecentEntryConflict(PresenceError):
    error = "Recent Entry Detected"

    def __init__(self, minutes_since: int, debounce_window: int, last_entry: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"You logged an entry {minutes_since} minutes ago. "
            f"Please wait {debounce_window} minutes between entries."
        )
        self.minutes_since = minutes_since
        self.debounce_window = debounce_window
        self.last_entry = last_entry

    def context(self) -> Dict[str, Any]:
        return {
            "requires_confirmation": True,
            "last_entry": self.last_entry,
            "debounce_info": {
                "minutes_since": self.minutes_since,
                "debounce_window": self.debounce_window,
            },
        }


class ExitStillInZone(PresenceError):
    error = "Invalid Exit"
    reason = "still_in_zone"

    def __init__(self, distance_meters: int, required_distance: float) -> None:
        super().__init__(
            f"You are still within {required_distance}m of the library "
            f"(current distance: {distance_meters}m). Move further away to auto-log exit."
        )
        self.distance_meters = distance_meters
        self.required_distance = required_distance

    def context(self) -> Dict[str, Any]:
        return {
            "requires_confirmation": True,
            "exit_validation": {
                "valid": False,
                "reason": self.reason,
                "distance_meters": self.distance_meters,
                "required_distance": self.required_distance,
            },
        }


class ConfidenceRejected(PresenceError):
    error = "Confidence Too Low"

    def __init__(self, confidence, auto_threshold: float, manual_threshold: float) -> None:
        super().__init__(
            f"Entry confidence ({confidence.total}) is below the auto-log threshold "
            f"({auto_threshold}). Manual confirmation required."
        )
        self.confidence = confidence
        self.auto_threshold = auto_threshold
        self.manual_threshold = manual_threshold

    def context(self) -> Dict[str, Any]:
        return {
            "requires_confirmation": True,
            "confidence": self.confidence.to_dict(),
            "thresholds": {
                "auto_log": self.auto_threshold,
                "manual_confirm": self.manual_threshold,
            },
        }


class ConflictError(PresenceError):
    status_code = 409
    error = "Conflict"

    def __init__(self, message: str, **identifiers: Any) -> None:
        super().__init__(message)
        self.identifiers = identifiers

    def context(self) -> Dict[str, Any]:
        return dict(self.identifiers)
