"""Domain Guardrails - Suspicious Access Monitoring.

The audit engine reports every denied access here together with the number of
denials it found for the same actor and subject inside the configured window.
The detector decides whether that crosses the alert threshold and suppresses
repeat alerts for the same pair until the window has elapsed.

Security Impact:
    - Detects brute-force style probing of a patient's records
    - Threshold and window are tunables, never hard-coded business constants
    - Alert suppression keeps a flood of denials from flooding the audit trail

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Thread-safe design for concurrent request handling
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from clinical_vault.domain.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SuspiciousActivityConfig:
    """Configuration for suspicious-activity detection.

    Attributes:
        threshold: Denied accesses within the window that trigger an alert
        window_minutes: Length of the look-back window
        enabled: If False, denials are never escalated
    """
    threshold: int = 10
    window_minutes: int = 60
    enabled: bool = True

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        if self.window_minutes < 1:
            raise ValueError("window_minutes must be at least 1")

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)


class SuspiciousActivityDetector:
    """Decides when repeated denials warrant a ``security_alert``.

    Example Usage:
        ```python
        detector = SuspiciousActivityDetector(SuspiciousActivityConfig(threshold=5))
        since = detector.window_start()
        denied = count_denials(user_id, patient_id, since)
        if detector.should_alert(user_id, patient_id, denied):
            write_security_alert(...)
        ```
    """

    def __init__(self, config: Optional[SuspiciousActivityConfig] = None):
        self.config = config or SuspiciousActivityConfig()
        self._last_alert: dict[tuple[str, Optional[str]], datetime] = {}
        self._lock = Lock()
        self._alerts_raised = 0

    def window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) - self.config.window

    def should_alert(
        self,
        user_id: str,
        patient_id: Optional[str],
        denied_count: int,
        now: Optional[datetime] = None
    ) -> bool:
        """Return True exactly once per window when ``denied_count`` reaches the threshold."""
        if not self.config.enabled or denied_count < self.config.threshold:
            return False

        now = now or utc_now()
        key = (user_id, patient_id)
        with self._lock:
            last = self._last_alert.get(key)
            if last is not None and now - last < self.config.window:
                return False
            self._last_alert[key] = now
            self._alerts_raised += 1

        logger.warning(
            f"Suspicious activity: {denied_count} denied accesses by user {user_id} "
            f"within {self.config.window_minutes} minutes"
        )
        return True

    def get_statistics(self) -> dict:
        with self._lock:
            return {
                "threshold": self.config.threshold,
                "window_minutes": self.config.window_minutes,
                "alerts_raised": self._alerts_raised,
                "tracked_pairs": len(self._last_alert),
            }

    def reset(self) -> None:
        with self._lock:
            self._last_alert.clear()
            self._alerts_raised = 0
