"""
Multi-frame consensus for noisy scanner input.

A decoded value is trusted only after `threshold` consecutive identical
reads ending at the newest read, all inside `window_ms` of it. A single
differing frame resets the streak.
"""

import threading
from typing import List, Optional

from visitproof.core.models import ConsensusResult, ScanRead


DEFAULT_THRESHOLD   = 3
DEFAULT_WINDOW_MS   = 1000
DEFAULT_BUFFER_SIZE = 10


def adaptive_threshold(error_rate: float, base_threshold: int = DEFAULT_THRESHOLD) -> int:
    """Stricter threshold when recent sessions show a high misread rate."""
    if error_rate > 0.3:
        return base_threshold + 2
    if error_rate > 0.15:
        return base_threshold + 1
    return base_threshold


def _streak(reads: List[ScanRead], text: str, now_ms: int, window_ms: int) -> int:
    recent = [r for r in reads if now_ms - r.timestamp_ms < window_ms]
    matches = 0
    for read in reversed(recent):
        if read.text != text:
            break
        matches += 1
    return matches


def _confidence(matches: int, threshold: int) -> float:
    if threshold <= 0:
        return 100.0
    return min(100.0, matches / threshold * 100)


class ConsensusValidator:
    """Stateless; the caller owns the buffer (see ScanSession)."""

    def __init__(
        self,
        threshold:   int = DEFAULT_THRESHOLD,
        window_ms:   int = DEFAULT_WINDOW_MS,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self.threshold   = threshold
        self.window_ms   = window_ms
        self.buffer_size = buffer_size

    def validate(
        self,
        buffer:    List[ScanRead],
        new_read:  ScanRead,
        threshold: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> ConsensusResult:
        """
        Append new_read to buffer (evicting the oldest past buffer_size)
        and compute consensus relative to it.
        """
        threshold = self.threshold if threshold is None else threshold
        window_ms = self.window_ms if window_ms is None else window_ms

        buffer.append(new_read)
        if len(buffer) > self.buffer_size:
            del buffer[: len(buffer) - self.buffer_size]

        matches = _streak(buffer, new_read.text, new_read.timestamp_ms, window_ms)
        return ConsensusResult(
            valid=               matches >= threshold,
            confidence_percent=  _confidence(matches, threshold),
            consecutive_matches= matches,
            threshold_used=      threshold,
        )

    def progress(
        self,
        buffer:      List[ScanRead],
        target_text: str,
        now_ms:      int,
        threshold:   Optional[int] = None,
    ) -> float:
        """Percentage toward consensus on target_text, without appending."""
        threshold = self.threshold if threshold is None else threshold
        return _confidence(_streak(buffer, target_text, now_ms, self.window_ms), threshold)

    @staticmethod
    def clear(buffer: List[ScanRead]) -> None:
        buffer.clear()


class ScanSession:
    """
    Per-session bounded buffer plus the adaptive threshold inputs.

    offer() returns the consensus result; when it is valid the buffer is
    cleared so the same stabilized value does not fire again.
    """

    def __init__(
        self,
        validator:  Optional[ConsensusValidator] = None,
        error_rate: float = 0.0,
    ) -> None:
        self.validator  = validator or ConsensusValidator()
        self.error_rate = error_rate
        self.buffer: List[ScanRead] = []
        self._lock = threading.Lock()

    @property
    def threshold(self) -> int:
        return adaptive_threshold(self.error_rate, self.validator.threshold)

    def offer(self, read: ScanRead) -> ConsensusResult:
        with self._lock:
            result = self.validator.validate(self.buffer, read, threshold=self.threshold)
            if result.valid:
                self.validator.clear(self.buffer)
            return result

    def progress(self, target_text: str, now_ms: int) -> float:
        with self._lock:
            return self.validator.progress(self.buffer, target_text, now_ms, self.threshold)
