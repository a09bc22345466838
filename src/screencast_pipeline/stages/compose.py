"""
Compose stage: raw tracks in, one playable deliverable out.

Plan selection is a fixed decision table over (camera present, mic present):

  camera  mic   plan
  yes     yes   overlay camera on screen; audio from the mic only
  yes     no    overlay camera on screen; audio from the screen capture, if any
  no      yes   screen video as-is; audio from the mic
  no      no    screen video and its own audio (if any) as-is

After encoding, the output's stream inventory is probed. A mic that was expected
as the audio source but produced zero audio streams fails the stage.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import EmptyInputError, MissingAudioStreamError, MissingVideoStreamError
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.ffmpeg_safe import StreamInventory, diagnostic_lines, ffprobe_streams, run_ffmpeg
from screencast_pipeline.utils.io import file_size
from screencast_pipeline.utils.log import logger
from screencast_pipeline.videos.models import Video, output_key


class ComposePlan(str, Enum):
    OVERLAY_MIC = "overlay_mic"
    OVERLAY_SCREEN_AUDIO = "overlay_screen_audio"
    PASSTHROUGH_MIC = "passthrough_mic"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True, slots=True)
class PlanSpec:
    overlay: bool
    audio_from_mic: bool


PLAN_TABLE: dict[tuple[bool, bool], ComposePlan] = {
    (True, True): ComposePlan.OVERLAY_MIC,
    (True, False): ComposePlan.OVERLAY_SCREEN_AUDIO,
    (False, True): ComposePlan.PASSTHROUGH_MIC,
    (False, False): ComposePlan.PASSTHROUGH,
}

PLAN_SPECS: dict[ComposePlan, PlanSpec] = {
    ComposePlan.OVERLAY_MIC: PlanSpec(overlay=True, audio_from_mic=True),
    ComposePlan.OVERLAY_SCREEN_AUDIO: PlanSpec(overlay=True, audio_from_mic=False),
    ComposePlan.PASSTHROUGH_MIC: PlanSpec(overlay=False, audio_from_mic=True),
    ComposePlan.PASSTHROUGH: PlanSpec(overlay=False, audio_from_mic=False),
}


def select_plan(*, has_camera: bool, has_mic: bool) -> ComposePlan:
    return PLAN_TABLE[(bool(has_camera), bool(has_mic))]


@dataclass(frozen=True, slots=True)
class OverlayGeometry:
    """
    Small camera box in the bottom-right corner, slightly transparent.
    """

    width: int = 240
    margin: int = 20
    opacity: float = 0.9

    def filter_complex(self) -> str:
        alpha = min(1.0, max(0.0, float(self.opacity)))
        return (
            f"[1:v]scale={int(self.width)}:-1,format=yuva420p,colorchannelmixer=aa={alpha:g}[cam];"
            f"[0:v][cam]overlay=W-w-{int(self.margin)}:H-h-{int(self.margin)}[out]"
        )

    @classmethod
    def from_settings(cls) -> OverlayGeometry:
        s = get_settings()
        return cls(width=int(s.camera_width), margin=int(s.camera_margin), opacity=float(s.camera_opacity))


@dataclass(frozen=True, slots=True)
class ComposeInputs:
    screen: Path
    camera: Path | None = None
    mic: Path | None = None


@dataclass(frozen=True, slots=True)
class ComposeResult:
    output_key: str
    duration: int
    local_path: Path
    plan: ComposePlan
    inventory: StreamInventory


def build_compose_argv(
    plan: ComposePlan,
    inputs: ComposeInputs,
    output: Path,
    *,
    geometry: OverlayGeometry | None = None,
    crf: int = 23,
    preset: str = "fast",
    audio_codec: str = "aac",
    ffmpeg_bin: str = "ffmpeg",
) -> list[str]:
    """
    ffmpeg argv for a plan. Input order is fixed: 0=screen, then camera, then mic.
    """
    spec = PLAN_SPECS[plan]
    if spec.overlay and inputs.camera is None:
        raise ValueError(f"plan {plan.value} needs a camera input")
    if spec.audio_from_mic and inputs.mic is None:
        raise ValueError(f"plan {plan.value} needs a mic input")

    argv = [str(ffmpeg_bin), "-hide_banner", "-y", "-i", str(inputs.screen)]
    if spec.overlay:
        argv += ["-i", str(inputs.camera)]
    if spec.audio_from_mic:
        argv += ["-i", str(inputs.mic)]
    mic_index = 2 if spec.overlay else 1

    if spec.overlay:
        argv += ["-filter_complex", (geometry or OverlayGeometry()).filter_complex(), "-map", "[out]"]
    else:
        argv += ["-map", "0:v:0"]

    if spec.audio_from_mic:
        # Mic only; screen audio is never mixed in.
        argv += ["-map", f"{mic_index}:a:0"]
    else:
        # Trailing "?" keeps screen-only captures without audio valid.
        argv += ["-map", "0:a?"]

    argv += [
        "-c:v",
        "libx264",
        "-preset",
        str(preset),
        "-crf",
        str(int(crf)),
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        str(audio_codec),
        "-movflags",
        "+faststart",
        str(output),
    ]
    return argv


def verify_output(plan: ComposePlan, inventory: StreamInventory, *, video_id: str = "") -> None:
    """
    Reject deliverables that encoded "successfully" but lost a track.
    """
    if inventory.video_streams < 1:
        raise MissingVideoStreamError(f"composed output for {video_id or '?'} has no video stream")
    if PLAN_SPECS[plan].audio_from_mic and inventory.audio_streams == 0:
        raise MissingAudioStreamError(
            f"mic track expected but composed output for {video_id or '?'} has 0 audio streams"
        )


def _local_name(track: str, key: str) -> str:
    suffix = Path(str(key)).suffix or ".webm"
    return f"{track}{suffix}"


def download_tracks(video: Video, objects: ObjectStore, work_dir: Path) -> tuple[ComposeInputs, dict[str, int]]:
    """
    Fetch every present raw track into `work_dir`. Empty downloads fail here, before ffmpeg.
    """
    if not video.screen_key:
        raise EmptyInputError(f"video {video.id} has no screen track")
    wanted = {"screen": video.screen_key, "camera": video.camera_key, "mic": video.mic_key}
    paths: dict[str, Path] = {}
    sizes: dict[str, int] = {}
    for track, key in wanted.items():
        if not key:
            continue
        dest = objects.download(str(key), work_dir / _local_name(track, str(key)))
        size = file_size(dest)
        if size <= 0:
            raise EmptyInputError(f"{track} track for {video.id} is empty (key={key})")
        paths[track] = dest
        sizes[track] = size
    inputs = ComposeInputs(screen=paths["screen"], camera=paths.get("camera"), mic=paths.get("mic"))
    return inputs, sizes


def compose_video(video: Video, objects: ObjectStore, work_dir: Path) -> ComposeResult:
    s = get_settings()
    inputs, sizes = download_tracks(video, objects, work_dir)
    plan = select_plan(has_camera=inputs.camera is not None, has_mic=inputs.mic is not None)
    out_path = work_dir / "output.mp4"
    argv = build_compose_argv(
        plan,
        inputs,
        out_path,
        geometry=OverlayGeometry.from_settings(),
        crf=int(s.video_crf),
        preset=str(s.video_preset),
        audio_codec=str(s.audio_codec),
        ffmpeg_bin=str(s.ffmpeg_bin),
    )
    logger.info(
        "compose_start",
        plan=plan.value,
        screen_bytes=sizes.get("screen", 0),
        camera_bytes=sizes.get("camera", 0),
        mic_bytes=sizes.get("mic", 0),
        argv=" ".join(argv),
    )

    proc = run_ffmpeg(argv, timeout_s=int(s.compose_timeout_s))
    logger.info("compose_ffmpeg_done", plan=plan.value, stderr_lines=diagnostic_lines(proc.stderr))

    if file_size(out_path) <= 0:
        raise MissingVideoStreamError(f"composed output for {video.id} is empty")
    inventory = ffprobe_streams(out_path)
    duration = int(round(inventory.duration_s))
    logger.info(
        "compose_probe",
        plan=plan.value,
        video_streams=inventory.video_streams,
        audio_streams=inventory.audio_streams,
        duration_s=inventory.duration_s,
        output_bytes=file_size(out_path),
    )
    verify_output(plan, inventory, video_id=video.id)

    key = output_key(video.id)
    objects.put_file(key, out_path, "video/mp4")
    logger.info("compose_done", plan=plan.value, output_key=key, duration=duration)
    return ComposeResult(output_key=key, duration=duration, local_path=out_path, plan=plan, inventory=inventory)
