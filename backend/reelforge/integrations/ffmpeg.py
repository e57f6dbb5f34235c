from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from reelforge.services.errors import AnalysisError
from reelforge.integrations.process import CmdRunner, run_cmd

logger = logging.getLogger(__name__)

THUMB_WIDTH = 300
THUMB_HEIGHT = 533


@dataclass
class ProbeInfo:
    duration: float = 15.0
    fps: float = 30.0
    width: int = 1080
    height: int = 1920


def _parse_rate(value: str) -> float | None:
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            return float(num) / float(den) if float(den) else None
        return float(value)
    except ValueError:
        return None


class FFmpegTools:
    def __init__(self, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", runner: CmdRunner = run_cmd):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.runner = runner

    async def probe(self, video: Path | str) -> ProbeInfo:
        """Duration / fps / resolution of the first video stream.

        Falls back to 9:16 defaults when ffprobe cannot read the file.
        """
        result = await self.runner([
            self.ffprobe, "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height,r_frame_rate,duration",
            "-of", "csv=p=0",
            str(video),
        ])
        info = ProbeInfo()
        if result.returncode != 0 or not result.stdout.strip():
            logger.warning(f"[analysis] ffprobe failed for {video}, using defaults: {result.stderr[-200:]}")
            return info

        # csv order follows the stream's field order: width,height,r_frame_rate,duration
        parts = result.stdout.strip().splitlines()[0].split(",")
        if len(parts) >= 4:
            try:
                info.width = int(parts[0]) or info.width
                info.height = int(parts[1]) or info.height
            except ValueError:
                pass
            info.fps = round(_parse_rate(parts[2]) or info.fps)
            try:
                info.duration = float(parts[3]) or info.duration
            except ValueError:
                pass
        return info

    async def extract_keyframes(self, video: Path | str, out_dir: Path, max_frames: int) -> list[Path]:
        """One frame per second, keeping only I-frames, capped at `max_frames`."""
        out_dir.mkdir(parents=True, exist_ok=True)
        result = await self.runner([
            self.ffmpeg, "-y", "-i", str(video),
            "-vf", "fps=1,select='eq(pict_type,I)'",
            "-vsync", "0",
            "-frames:v", str(max_frames),
            str(out_dir / "frame-%04d.jpg"),
        ])
        if result.returncode != 0:
            raise AnalysisError(
                "FRAME_EXTRACTION_ERROR",
                f"Failed to extract keyframes from video: {result.stderr[-300:]}",
                retriable=False,
            )
        frames = sorted(out_dir.glob("frame-*.jpg"))
        logger.info(f"[analysis] extracted {len(frames)} keyframes from {video}")
        return frames[:max_frames]

    async def thumbnail(self, frame: Path, dest: Path) -> Path:
        """Cover-crop a frame to a 300x533 JPEG."""
        result = await self.runner([
            self.ffmpeg, "-y", "-i", str(frame),
            "-vf",
            f"scale={THUMB_WIDTH}:{THUMB_HEIGHT}:force_original_aspect_ratio=increase,"
            f"crop={THUMB_WIDTH}:{THUMB_HEIGHT}",
            "-q:v", "3",
            str(dest),
        ])
        if result.returncode != 0:
            raise AnalysisError("THUMBNAIL_ERROR", f"Failed to create thumbnail for {frame.name}")
        return dest

    async def version(self) -> str:
        try:
            result = await self.runner([self.ffmpeg, "-version"])
        except FileNotFoundError:
            return "unavailable"
        first = result.stdout.splitlines()[0] if result.stdout else ""
        return first[:120] or "unknown"
