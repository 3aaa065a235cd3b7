# =============================================================================
# MERLIN Bridge -- Frame Metrics
# =============================================================================
#
# Sliding-window delivery rate from frame inter-arrival times.
# =============================================================================

from __future__ import annotations

from collections import deque

from .constants import FPS_WINDOW_SIZE


class FrameMetricsTracker:
    """Average frame rate over the most recent inter-arrival samples.

    Each call to :meth:`update` turns the gap since the previous arrival
    into an instantaneous rate (``1 / delta``) and pushes it into a fixed
    window, evicting the oldest sample once the window is full. The first
    arrival after construction or :meth:`reset` only records a timestamp.

    Args:
        window_size: Number of rate samples kept (default 30).
    """

    def __init__(self, window_size: int = FPS_WINDOW_SIZE) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self._samples: deque[float] = deque(maxlen=window_size)
        self._last_arrival: float | None = None
        self._frames_seen = 0

    def update(self, arrival: float) -> float:
        """Record a frame arrival and return the averaged rate."""
        self._frames_seen += 1
        previous = self._last_arrival
        self._last_arrival = arrival

        if previous is not None:
            delta = arrival - previous
            # Zero or negative gaps carry no rate information
            if delta > 0:
                self._samples.append(1.0 / delta)

        return self.current_rate

    @property
    def current_rate(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    @property
    def frames_seen(self) -> int:
        """Arrivals since the last reset, including the unsampled first one."""
        return self._frames_seen

    def reset(self) -> None:
        self._samples.clear()
        self._last_arrival = None
        self._frames_seen = 0

    def get_stats(self) -> dict:
        return {
            "fps": round(self.current_rate, 2),
            "samples": len(self._samples),
            "window_size": self.capacity,
            "frames_seen": self._frames_seen,
        }
