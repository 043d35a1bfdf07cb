"""
Audio capture from the on-device audio server and ducking analysis.

The server streams 16-bit little-endian PCM at 48 kHz stereo. A reader thread
buffers samples; on stop the buffer is cut into 100 ms windows whose RMS
volume forms the timeline that ducking detection runs over.
"""

import socket
import threading
import time

import numpy as np
from pydantic import BaseModel

from lumi.tester.errors import BridgeError
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 2
AUDIO_PORT = 8890
WINDOW_MS = 100
DEFAULT_DROP_THRESHOLD = 30.0
RECOVERY_RATIO = 0.8
DROP_SEARCH_WINDOWS = 20
RECOVERY_SEARCH_WINDOWS = 50
MIN_TIMELINE_WINDOWS = 10


class DuckingEvent(BaseModel):
    start_ms: int
    end_ms: int
    volume_before: float
    volume_during: float
    drop_percent: float


class AudioAnalysis(BaseModel):
    duration_ms: int
    average_volume: float
    peak_volume: float
    ducking_events: list[DuckingEvent]
    volume_timeline: list[tuple[int, float]]

    def has_ducking(self, min_events: int, min_drop_percent: float) -> bool:
        valid = [e for e in self.ducking_events if e.drop_percent >= min_drop_percent]
        return len(valid) >= min_events

    def summary(self) -> str:
        lines = [
            f"Duration: {self.duration_ms / 1000:.1f}s",
            f"Average Volume: {self.average_volume * 100:.1f}%",
            f"Peak Volume: {self.peak_volume * 100:.1f}%",
            f"Ducking Events: {len(self.ducking_events)}",
        ]
        for i, event in enumerate(self.ducking_events):
            lines.append(
                f"  [{i}] {event.start_ms / 1000:.1f}s - {event.end_ms / 1000:.1f}s: "
                f"{event.drop_percent:.0f}% drop"
            )
        return "\n".join(lines)


def calculate_rms(samples: np.ndarray) -> float:
    """RMS of int16 samples normalized to [0, 1]."""
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
    return min(rms / np.iinfo(np.int16).max, 1.0)


def volume_timeline(samples: np.ndarray) -> list[tuple[int, float]]:
    window = SAMPLE_RATE * CHANNELS * WINDOW_MS // 1000
    return [
        (index * WINDOW_MS, calculate_rms(samples[start : start + window]))
        for index, start in enumerate(range(0, samples.size, window))
    ]


def detect_ducking(
    timeline: list[tuple[int, float]], drop_threshold: float = DEFAULT_DROP_THRESHOLD
) -> list[DuckingEvent]:
    """
    Find drops of at least `drop_threshold` percent followed by recovery.

    A drop starts from any window at or above half the average volume and must
    happen within the next 20 windows; recovery is the first window within 50
    windows of the lowest point that is back at 80% of the pre-drop level.
    """
    events: list[DuckingEvent] = []
    if len(timeline) < MIN_TIMELINE_WINDOWS:
        return events

    average = sum(v for _, v in timeline) / len(timeline)
    i = 0
    while i < len(timeline) - 5:
        _, volume = timeline[i]
        if volume >= average * 0.5 and volume > 0:
            min_volume = volume
            drop_idx = i
            found = False
            for j in range(i + 1, min(i + DROP_SEARCH_WINDOWS, len(timeline))):
                if timeline[j][1] < min_volume:
                    min_volume = timeline[j][1]
                    drop_idx = j
                if (volume - min_volume) / volume * 100 >= drop_threshold:
                    found = True
                    break

            if found:
                recovery_idx = drop_idx
                for j in range(drop_idx, min(drop_idx + RECOVERY_SEARCH_WINDOWS, len(timeline))):
                    if timeline[j][1] >= volume * RECOVERY_RATIO:
                        recovery_idx = j
                        break
                events.append(
                    DuckingEvent(
                        start_ms=timeline[drop_idx][0],
                        end_ms=timeline[recovery_idx][0],
                        volume_before=volume,
                        volume_during=min_volume,
                        drop_percent=(volume - min_volume) / max(volume, 0.001) * 100,
                    )
                )
                i = recovery_idx
        i += 1
    return events


def analyze_samples(samples: np.ndarray, duration_ms: int) -> AudioAnalysis:
    timeline = volume_timeline(samples)
    volumes = [v for _, v in timeline]
    return AudioAnalysis(
        duration_ms=duration_ms,
        average_volume=sum(volumes) / len(volumes) if volumes else 0.0,
        peak_volume=max(volumes, default=0.0),
        ducking_events=detect_ducking(timeline),
        volume_timeline=timeline,
    )


class AudioCapture:
    """One capture session; a daemon thread drains the socket into a byte buffer."""

    def __init__(self, host: str = "127.0.0.1", port: int = AUDIO_PORT):
        self.host = host
        self.port = port
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._running = threading.Event()
        self._socket: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._start_time = 0.0

    def start(self) -> None:
        try:
            self._socket = socket.create_connection((self.host, self.port), timeout=5)
        except OSError as e:
            raise BridgeError(f"Failed to connect to AudioServer: {e}") from e
        self._socket.settimeout(0.1)
        self._start_time = time.monotonic()
        self._running.set()
        self._thread = threading.Thread(target=self._read_loop, name="audio-capture", daemon=True)
        self._thread.start()
        logger.info("Audio capture started")

    def _read_loop(self) -> None:
        while self._running.is_set() and self._socket is not None:
            try:
                chunk = self._socket.recv(4096)
            except TimeoutError:
                continue
            except OSError:
                break
            if not chunk:
                time.sleep(0.01)
                continue
            with self._lock:
                self._buffer.extend(chunk)

    def stop_and_analyze(self) -> AudioAnalysis:
        self._running.clear()
        if self._socket is not None:
            try:
                self._socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._socket.close()
            self._socket = None
        if self._thread is not None:
            self._thread.join(timeout=1)

        duration_ms = int((time.monotonic() - self._start_time) * 1000)
        with self._lock:
            usable = len(self._buffer) - len(self._buffer) % 2
            samples = np.frombuffer(bytes(self._buffer[:usable]), dtype="<i2")
        logger.info(f"Audio capture stopped. {samples.size} samples captured")
        return analyze_samples(samples, duration_ms)
