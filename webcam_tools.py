from __future__ import annotations

import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

import cv2
import numpy as np

Frame = np.ndarray
Reporter = Callable[[str], None]

DEFAULT_OUTPUT_DIR = Path("notes-captures")
FALLBACK_RESOLUTION = "1920x1080"
DEFAULT_SKIP_FRAMES = 30
DEFAULT_AVERAGE_FRAMES = 3
OXIPNG_LEVEL = 4

DEVICE_ENV = "WEBCAM_DEVICE"
RESOLUTION_ENV = "WEBCAM_RES"

REQUIRED_TOOLS = {
    "fswebcam": "fswebcam",
    "v4l2-ctl": "v4l-utils",
}

_DISCRETE_SIZE = re.compile(r"Size:\s*Discrete\s+(\d+)\s*x\s*(\d+)", re.IGNORECASE)
_RESOLUTION_ARG = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")


class WebcamError(RuntimeError):
    """Base error for webcam operations."""


class MissingDependencyError(WebcamError):
    def __init__(self, packages: Sequence[str]) -> None:
        self.packages = list(packages)
        super().__init__(
            "Missing required dependencies. Install with: "
            f"sudo apt install {' '.join(self.packages)}"
        )


class NoDeviceFoundError(WebcamError):
    pass


class CaptureFailedError(WebcamError):
    pass


class OptimizeFailedError(WebcamError):
    pass


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution width and height must be positive.")

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @classmethod
    def parse(cls, text: str) -> "Resolution":
        """Parse a ``WxH`` string such as ``1920x1080``."""
        match = _RESOLUTION_ARG.match(text)
        if not match:
            raise ValueError(f"Invalid resolution {text!r}; expected WIDTHxHEIGHT.")
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class CaptureResult:
    original_path: Path
    original_size: int
    width: int
    height: int
    optimized_path: Path | None = None
    optimized_size: int | None = None

    @property
    def saved_bytes(self) -> int | None:
        if self.optimized_size is None:
            return None
        return self.original_size - self.optimized_size


def run_tool(args: Sequence[str]) -> str:
    """Run an external tool to completion and return its stdout."""
    completed = subprocess.run(
        list(args), capture_output=True, text=True, check=True
    )
    return completed.stdout


def _tool_error_text(exc: subprocess.CalledProcessError) -> str:
    text = (exc.stderr or exc.stdout or "").strip()
    return text or f"exit status {exc.returncode}"


def check_dependencies() -> bool:
    """Ensure the required tools are installed; return whether oxipng is available."""
    missing = [
        package for tool, package in REQUIRED_TOOLS.items() if shutil.which(tool) is None
    ]
    if missing:
        raise MissingDependencyError(missing)
    return has_optimizer()


def has_optimizer() -> bool:
    return shutil.which("oxipng") is not None


def _device_groups(listing_text: str) -> list[tuple[str, list[str]]]:
    """Split a ``v4l2-ctl --list-devices`` report into (header, paths) groups."""
    groups: list[tuple[str, list[str]]] = []
    for line in listing_text.splitlines():
        if not line.strip():
            continue
        if not line[0].isspace() and ":" in line:
            groups.append((line.strip(), []))
        elif groups:
            groups[-1][1].append(line.strip())
    return groups


def _is_video_path(entry: str) -> bool:
    return entry.startswith("/dev/video")


def resolve_device(
    explicit: str | None,
    env_override: str | None,
    listing_text: str,
) -> str | None:
    """Pick a video device, preferring external cameras over integrated ones."""
    if explicit:
        return explicit
    if env_override:
        return env_override

    for header, paths in _device_groups(listing_text):
        if "integrated" in header.lower():
            continue
        for path in paths:
            if _is_video_path(path):
                return path

    for line in listing_text.splitlines():
        entry = line.strip()
        if _is_video_path(entry):
            return entry
    return None


def list_devices() -> str:
    """Return the raw device listing from v4l2-ctl."""
    return run_tool(["v4l2-ctl", "--list-devices"])


def find_webcam(device: str | None = None) -> str | None:
    """Resolve the device from the argument, the environment, or the device listing."""
    env_override = os.environ.get(DEVICE_ENV)
    if device or env_override:
        return resolve_device(device, env_override, "")

    try:
        listing = list_devices()
    except subprocess.CalledProcessError:
        listing = ""
    return resolve_device(None, None, listing)


def require_webcam(device: str | None = None) -> str:
    found = find_webcam(device)
    if not found:
        raise NoDeviceFoundError("No webcam found. Use -d /dev/videoN to specify a device.")
    return found


def parse_resolutions(capabilities_text: str) -> list[Resolution]:
    """Return every discrete resolution listed in a formats report, in order."""
    resolutions: list[Resolution] = []
    for match in _DISCRETE_SIZE.finditer(capabilities_text):
        width, height = int(match.group(1)), int(match.group(2))
        if width > 0 and height > 0:
            resolutions.append(Resolution(width, height))
    return resolutions


def resolve_max_resolution(capabilities_text: str) -> Resolution | None:
    """Return the discrete resolution with the most pixels, or None."""
    candidates = parse_resolutions(capabilities_text)
    if not candidates:
        return None
    return max(candidates, key=lambda resolution: resolution.pixels)


def list_formats(device: str) -> str:
    return run_tool(["v4l2-ctl", "-d", device, "--list-formats-ext"])


def list_controls(device: str) -> str:
    return run_tool(["v4l2-ctl", "-d", device, "--list-ctrls"])


def get_max_resolution(device: str) -> Resolution | None:
    """Query the device for its formats and return the largest discrete size."""
    try:
        report = list_formats(device)
    except subprocess.CalledProcessError:
        return None
    return resolve_max_resolution(report)


def resolve_resolution(device: str, override: str | None = None) -> Resolution:
    """Resolve the capture resolution: override, WEBCAM_RES, detected max, fallback."""
    requested = override or os.environ.get(RESOLUTION_ENV)
    if requested:
        return Resolution.parse(requested)
    detected = get_max_resolution(device)
    if detected is not None:
        return detected
    return Resolution.parse(FALLBACK_RESOLUTION)


def default_label(now: datetime | None = None) -> str:
    """Return a timestamp label such as ``notes-2024-05-01T12-30-00``."""
    moment = now or datetime.now(timezone.utc)
    return moment.strftime("notes-%Y-%m-%dT%H-%M-%S")


def capture_paths(output_dir: Path, label: str) -> tuple[Path, Path]:
    return (
        output_dir / f"{label}_original.png",
        output_dir / f"{label}_optimised.png",
    )


def read_image_size(path: Path) -> tuple[int, int]:
    """Decode an image and return its (width, height)."""
    frame: Frame | None = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if frame is None:
        raise CaptureFailedError(f"Captured file {path} is not a readable image.")
    height, width = frame.shape[:2]
    return width, height


def format_bytes(size: int) -> str:
    if abs(size) < 1024:
        return f"{size} B"
    if abs(size) < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def fswebcam_command(
    device: str,
    resolution: Resolution,
    output_path: Path,
    *,
    skip_frames: int = DEFAULT_SKIP_FRAMES,
    average_frames: int = DEFAULT_AVERAGE_FRAMES,
) -> list[str]:
    return [
        "fswebcam",
        "-d",
        device,
        "-r",
        str(resolution),
        "--png",
        "0",
        "--no-banner",
        "-S",
        str(skip_frames),
        "-F",
        str(average_frames),
        str(output_path),
    ]


def optimize_png(path: Path, *, level: int = OXIPNG_LEVEL) -> int:
    """Optimize a PNG in place with oxipng and return its new size."""
    try:
        run_tool(["oxipng", "-o", str(level), "--strip", "safe", str(path)])
    except subprocess.CalledProcessError as exc:
        raise OptimizeFailedError(f"Optimization failed: {_tool_error_text(exc)}") from exc
    return path.stat().st_size


def capture_photo(
    device: str,
    resolution: Resolution,
    *,
    label: str | None = None,
    output_dir: Path = DEFAULT_OUTPUT_DIR,
    skip_frames: int = DEFAULT_SKIP_FRAMES,
    average_frames: int = DEFAULT_AVERAGE_FRAMES,
    optimize: bool | None = None,
    report: Reporter | None = None,
    warn: Reporter | None = None,
) -> CaptureResult:
    """Capture a PNG with fswebcam and optionally write an oxipng-optimised copy.

    ``optimize=None`` optimises when oxipng is on PATH. ``report`` receives
    progress lines and ``warn`` receives non-fatal problems.
    """
    if skip_frames < 0:
        raise ValueError("skip_frames must be >= 0.")
    if average_frames < 1:
        raise ValueError("average_frames must be >= 1.")

    output_dir.mkdir(parents=True, exist_ok=True)
    original_path, optimized_path = capture_paths(output_dir, label or default_label())

    command = fswebcam_command(
        device,
        resolution,
        original_path,
        skip_frames=skip_frames,
        average_frames=average_frames,
    )
    try:
        run_tool(command)
    except subprocess.CalledProcessError as exc:
        raise CaptureFailedError(f"Capture failed: {_tool_error_text(exc)}") from exc
    if not original_path.is_file():
        raise CaptureFailedError(f"Capture failed: fswebcam did not write {original_path}.")

    width, height = read_image_size(original_path)
    if (width, height) != (resolution.width, resolution.height) and warn:
        warn(f"Camera delivered {width}x{height} instead of requested {resolution}.")
    original_size = original_path.stat().st_size

    if optimize is None:
        optimize = has_optimizer()
    if not optimize:
        if warn:
            warn("Install oxipng for an optimised copy: cargo install oxipng")
        return CaptureResult(original_path, original_size, width, height)

    shutil.copyfile(original_path, optimized_path)
    if report:
        report("Optimizing PNG...")
    optimized_size = optimize_png(optimized_path)
    return CaptureResult(
        original_path,
        original_size,
        width,
        height,
        optimized_path=optimized_path,
        optimized_size=optimized_size,
    )
