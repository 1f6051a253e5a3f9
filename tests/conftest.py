from __future__ import annotations

from pathlib import Path
import shutil
import subprocess
import sys

import cv2
import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import webcam_tools

LISTING = """\
Integrated Camera: Integrated C (usb-0000:00:14.0-6):
\t/dev/video0
\t/dev/video1
\t/dev/media0

HD Pro Webcam C920 (usb-0000:00:14.0-1):
\t/dev/video2
\t/dev/video3
\t/dev/media1
"""

FORMATS = """\
ioctl: VIDIOC_ENUM_FMT
\tType: Video Capture

\t[0]: 'YUYV' (YUYV 4:2:2)
\t\tSize: Discrete 640x480
\t\t\tInterval: Discrete 0.033s (30.000 fps)
\t\tSize: Discrete 1280x720
\t\t\tInterval: Discrete 0.100s (10.000 fps)
\t[1]: 'MJPG' (Motion-JPEG, compressed)
\t\tSize: Discrete 1920x1080
\t\t\tInterval: Discrete 0.033s (30.000 fps)
\t\tSize: Discrete 800x600
"""


def pytest_sessionstart(session: object) -> None:
    """Clear test_results before running tests."""
    results_dir = Path("test_results")
    if results_dir.exists():
        shutil.rmtree(results_dir)


def make_frame(width: int = 8, height: int = 6) -> np.ndarray:
    """Create a deterministic test frame."""
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :, 1] = 128
    return frame


class FakeTools:
    """Stand-in for subprocess.run that records and simulates tool calls."""

    def __init__(self) -> None:
        self.listing = LISTING
        self.formats = FORMATS
        self.frame = make_frame()
        self.fail: set[str] = set()
        self.write_image = True
        self.calls: list[list[str]] = []

    def __call__(self, args, **kwargs) -> subprocess.CompletedProcess:
        args = list(args)
        self.calls.append(args)
        tool = args[0]
        if tool in self.fail:
            raise subprocess.CalledProcessError(1, args, output="", stderr=f"{tool} broke")
        stdout = ""
        if tool == "v4l2-ctl" and "--list-devices" in args:
            stdout = self.listing
        elif tool == "v4l2-ctl" and "--list-formats-ext" in args:
            stdout = self.formats
        elif tool == "v4l2-ctl" and "--list-ctrls" in args:
            stdout = "brightness 0x00980900 (int) : min=0 max=255 value=128"
        elif tool == "fswebcam" and self.write_image:
            cv2.imwrite(args[-1], self.frame)
        elif tool == "oxipng":
            path = Path(args[-1])
            path.write_bytes(path.read_bytes()[: max(1, path.stat().st_size // 2)])
        return subprocess.CompletedProcess(args, 0, stdout=stdout, stderr="")

    def tools_called(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture()
def fake_tools(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    """Replace external tool invocations with a recording fake."""
    tools = FakeTools()
    monkeypatch.setattr(webcam_tools.subprocess, "run", tools)
    monkeypatch.delenv("WEBCAM_DEVICE", raising=False)
    monkeypatch.delenv("WEBCAM_RES", raising=False)
    return tools


@pytest.fixture()
def installed_tools(monkeypatch: pytest.MonkeyPatch) -> set[str]:
    """Control which tools shutil.which reports as installed."""
    available = {"fswebcam", "v4l2-ctl", "oxipng"}
    monkeypatch.setattr(
        webcam_tools.shutil,
        "which",
        lambda name: f"/usr/bin/{name}" if name in available else None,
    )
    return available
