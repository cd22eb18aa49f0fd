"""Mode-specific parameters and spawn specifications for capture and publish."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import IO, Optional, Union

from solar_schedule import Mode
from stream_config import StreamConfig

# stdin/stdout slot of a spawn spec: a file descriptor, a file object,
# subprocess.PIPE or None (inherit).
StreamTarget = Union[int, IO[bytes], None]


@dataclass(frozen=True)
class CaptureParams:
    mode: Mode
    width: int
    height: int
    frame_rate: int
    bitrate_bps: int
    keyframe_interval: int
    denoise: str
    shutter_us: Optional[int] = None
    gain: Optional[float] = None


@dataclass(frozen=True)
class PublishParams:
    mode: Mode
    input_frame_rate: int
    output_frame_rate: int
    transcode: bool
    bitrate_bps: int
    keyframe_interval: int
    audio_path: str
    endpoint_url: str

    def __post_init__(self) -> None:
        if not self.transcode and self.input_frame_rate != self.output_frame_rate:
            raise ValueError(
                "copy path requires matching input/output frame rates "
                f"({self.input_frame_rate} != {self.output_frame_rate})"
            )


@dataclass(frozen=True)
class SpawnSpec:
    name: str
    argv: tuple[str, ...]
    stdin: StreamTarget = None
    stdout: StreamTarget = None

    @property
    def executable(self) -> str:
        return self.argv[0] if self.argv else ""


class PipelineBuilder:
    """Turn a Mode into capture/publish parameter sets. No state, no I/O."""

    def __init__(self, config: StreamConfig) -> None:
        if not config.publish.endpoint_url:
            raise ValueError("Pipeline builder requires a resolved ingest URL.")
        self._config = config

    def build(self, mode: Mode) -> tuple[CaptureParams, PublishParams]:
        camera = self._config.camera
        publish = self._config.publish
        night = mode is Mode.NIGHT

        capture_fps = camera.night_frame_rate if night else camera.frame_rate
        capture = CaptureParams(
            mode=mode,
            width=camera.width,
            height=camera.height,
            frame_rate=capture_fps,
            bitrate_bps=camera.bitrate_bps,
            keyframe_interval=capture_fps * 2,
            denoise=camera.denoise,
            shutter_us=camera.night_shutter_us if night else None,
            gain=camera.night_gain if night else None,
        )

        # Night frames arrive slowly; ffmpeg re-encodes them to the regular
        # output rate so the platform sees a normal stream.
        output_fps = camera.frame_rate
        params = PublishParams(
            mode=mode,
            input_frame_rate=capture_fps,
            output_frame_rate=output_fps,
            transcode=night,
            bitrate_bps=camera.bitrate_bps,
            keyframe_interval=output_fps * 2 if night else capture.keyframe_interval,
            audio_path=publish.audio_path,
            endpoint_url=publish.endpoint_url or "",
        )
        return capture, params

    def capture_spec(self, params: CaptureParams, stdout: StreamTarget) -> SpawnSpec:
        camera = self._config.camera
        argv = [
            camera.rpicam_vid,
            "-n",
            "-t",
            "0",
            "--width",
            str(params.width),
            "--height",
            str(params.height),
            "--framerate",
            str(params.frame_rate),
        ]
        if params.shutter_us is not None:
            argv += ["--shutter", str(params.shutter_us)]
        if params.gain is not None:
            argv += ["--gain", f"{params.gain:g}"]
        argv += [
            "--codec",
            "h264",
            "--bitrate",
            str(params.bitrate_bps),
            "--intra",
            str(params.keyframe_interval),
            "--profile",
            camera.profile,
            "--inline",
            "--denoise",
            params.denoise,
            "--awb",
            camera.awb,
        ]
        if camera.verbose:
            argv.append("--verbose")
        argv += ["--output", "-"]
        return SpawnSpec(name="capture", argv=tuple(argv), stdin=subprocess.DEVNULL, stdout=stdout)

    def publish_spec(self, params: PublishParams) -> SpawnSpec:
        publish = self._config.publish
        argv = [
            publish.ffmpeg,
            "-hide_banner",
            "-loglevel",
            publish.loglevel,
            "-fflags",
            "+genpts",
            "-flags",
            "low_delay",
            "-f",
            "h264",
            "-r",
            str(params.input_frame_rate),
            "-i",
            "pipe:0",
            "-stream_loop",
            "-1",
            "-i",
            params.audio_path,
        ]
        if params.transcode:
            argv += [
                "-c:v",
                "libx264",
                "-b:v",
                str(params.bitrate_bps),
                "-r",
                str(params.output_frame_rate),
                "-g",
                str(params.keyframe_interval),
                "-keyint_min",
                str(params.output_frame_rate),
                "-preset",
                publish.preset,
                "-tune",
                "zerolatency",
            ]
        else:
            argv += ["-c:v", "copy"]
        argv += ["-c:a", "aac", "-shortest", "-f", "flv", params.endpoint_url]
        return SpawnSpec(
            name="publish", argv=tuple(argv), stdin=subprocess.PIPE, stdout=subprocess.DEVNULL
        )


def describe_capture(params: CaptureParams) -> str:
    text = (
        f"{params.mode.value} capture {params.width}x{params.height} @ {params.frame_rate}fps, "
        f"bitrate {params.bitrate_bps // 1000}kbps, intra {params.keyframe_interval}"
    )
    if params.shutter_us is not None:
        text += f", shutter {params.shutter_us}us, gain {params.gain:g}"
    return text


def describe_publish(params: PublishParams) -> str:
    video = "libx264" if params.transcode else "copy"
    return (
        f"{params.mode.value} publish {params.input_frame_rate}->{params.output_frame_rate}fps "
        f"({video}, gop {params.keyframe_interval}), audio {params.audio_path}"
    )
