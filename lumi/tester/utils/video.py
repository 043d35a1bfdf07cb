"""
Video recording utilities.

Tracks the recorder process of each device and joins Android screenrecord
segments, which the platform caps at three minutes each.
"""

import asyncio
import shutil
import signal
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

ANDROID_SEGMENT_PATH_TEMPLATE = "/sdcard/lumi_recording_{index}.mp4"
ANDROID_MAX_RECORDING_DURATION_SECONDS = 180
VIDEO_READY_DELAY_SECONDS = 1
RECORDING_STOP_TIMEOUT_SECONDS = 3.0


class RecordingSession(BaseModel):
    """Tracks an active video recording session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    device_id: str
    start_time: float
    output_path: Path
    process: asyncio.subprocess.Process | None = None
    device_segments: list[str] = []
    segment_index: int = 0
    restart_task: asyncio.Task | None = None

    def next_device_segment(self) -> str:
        path = ANDROID_SEGMENT_PATH_TEMPLATE.format(index=self.segment_index)
        self.segment_index += 1
        self.device_segments.append(path)
        return path


# Keyed by device id
_active_recordings: dict[str, RecordingSession] = {}


def get_active_session(device_id: str) -> RecordingSession | None:
    return _active_recordings.get(device_id)


def set_active_session(device_id: str, session: RecordingSession) -> None:
    _active_recordings[device_id] = session


def remove_active_session(device_id: str) -> RecordingSession | None:
    return _active_recordings.pop(device_id, None)


def has_active_session(device_id: str) -> bool:
    return device_id in _active_recordings


async def concatenate_videos(segments: list[Path], output_path: Path) -> bool:
    """Concatenate video segments using ffmpeg; a single segment is just moved."""
    if not segments:
        return False

    if len(segments) == 1:
        shutil.move(segments[0], output_path)
        return True

    list_file = output_path.parent / "segments.txt"
    with open(list_file, "w") as f:
        for segment in segments:
            f.write(f"file '{segment}'\n")

    try:
        process = await asyncio.create_subprocess_exec(
            "ffmpeg",
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(list_file),
            "-c",
            "copy",
            str(output_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        await process.wait()
        return output_path.exists()
    except Exception as e:
        logger.error(f"Failed to concatenate videos: {e}")
        return False
    finally:
        list_file.unlink(missing_ok=True)


def cleanup_video_segments(segments: list[Path], keep_path: Path | None = None) -> None:
    for segment in segments:
        try:
            if segment.exists() and segment != keep_path:
                segment.unlink()
        except OSError as e:
            logger.debug(f"Failed to remove video segment {segment}: {e}")


async def stop_process_gracefully(
    process: asyncio.subprocess.Process, timeout: float = RECORDING_STOP_TIMEOUT_SECONDS
) -> None:
    """SIGINT so the recorder finalizes its file, then kill once the budget elapses."""
    if process.returncode is not None:
        return
    process.send_signal(signal.SIGINT)
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("Recorder did not stop in time, killing it")
        process.kill()
        await process.wait()
