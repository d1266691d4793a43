"""
Best-effort action validation against target app telemetry.

After a click or navigation the app (if instrumented) emits an event
{id, action, target, success, detail}. Validation looks for that event and
records the outcome; it never raises and never changes the sequence.
"""
import asyncio
from typing import Callable, Optional
from dataclasses import dataclass, field

from config.settings import VALIDATION_GRACE_MS, VALIDATION_ATTEMPTS, VALIDATION_POLL_MS
from .telemetry import TelemetryClient


@dataclass
class ValidationResult:
    """Outcome of validating one action."""
    action: str
    target: str
    success: bool
    validated: bool
    error: Optional[str] = None


@dataclass
class ValidationSummary:
    """End-of-run counts."""
    passed: int = 0
    failed: int = 0
    unverified: int = 0
    failures: list[ValidationResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.unverified


def _quiet(msg: str, data: Optional[dict] = None):
    pass


class ValidationService:
    """Matches dispatched actions with app telemetry events."""

    def __init__(self, telemetry: Optional[TelemetryClient] = None, enabled: bool = True,
                 grace_ms: float = VALIDATION_GRACE_MS, attempts: int = VALIDATION_ATTEMPTS,
                 poll_ms: float = VALIDATION_POLL_MS, sleep: Callable = asyncio.sleep,
                 log: Callable = _quiet):
        self.telemetry = telemetry or TelemetryClient()
        self.enabled = enabled
        self.grace_ms = grace_ms
        self.attempts = max(1, attempts)
        self.poll_ms = poll_ms
        self.sleep = sleep
        self.log = log

        self.results: list[ValidationResult] = []
        self._seen_ids: set = set()

    async def reset(self):
        """Start a clean run: clear app events and local results."""
        self.results = []
        self._seen_ids = set()
        if self.enabled:
            await self.telemetry.clear_events()

    async def validate_action(self, action: str, target: str) -> ValidationResult:
        """
        Validate that the app saw `action` on `target`.

        Waits a short grace period, then polls the app's recent events a
        bounded number of times for the newest unseen match.
        """
        if not self.enabled:
            return ValidationResult(action, target, success=True, validated=False)

        try:
            await self.sleep(self.grace_ms / 1000)

            event = None
            for attempt in range(self.attempts):
                if attempt:
                    await self.sleep(self.poll_ms / 1000)
                event = self._find_event(await self.telemetry.get_events(), action, target)
                if event:
                    break
        except Exception as e:
            self.log(f"⚠ Validation poll failed: {e}")
            event = None

        if event is None:
            self.log(f"? Unverified: {action}:{target} (no SDK event)")
            result = ValidationResult(action, target, success=True, validated=False)
        else:
            if event.get("id") is not None:
                self._seen_ids.add(event["id"])
            success = bool(event.get("success"))
            result = ValidationResult(
                action, target,
                success=success,
                validated=True,
                error=None if success else (event.get("detail") or "unknown error"),
            )
            if success:
                self.log(f"✓ Validated: {action}:{target}")
            else:
                self.log(f"✗ Failed: {action}:{target} - {result.error}")

        self.results.append(result)
        return result

    def _find_event(self, events: list[dict], action: str, target: str) -> Optional[dict]:
        """Newest event for action/target (case-insensitive) not matched before."""
        wanted = target.lower()
        for event in reversed(events):
            if not isinstance(event, dict):
                continue
            if event.get("id") in self._seen_ids:
                continue
            if event.get("action") == action and str(event.get("target", "")).lower() == wanted:
                return event
        return None

    def summary(self) -> ValidationSummary:
        summary = ValidationSummary()
        for result in self.results:
            if not result.validated:
                summary.unverified += 1
            elif result.success:
                summary.passed += 1
            else:
                summary.failed += 1
                summary.failures.append(result)
        return summary
