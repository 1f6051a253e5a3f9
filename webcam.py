"""Capture photos of paper notes from a USB webcam.

Auto-detects an external webcam, uses its largest supported resolution and
writes PNGs to ``notes-captures/``. Requires ``fswebcam`` and ``v4l-utils``;
``oxipng`` is optional and produces an optimised copy.
"""
from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path
from typing import NoReturn, Sequence

from webcam_tools import (
    DEFAULT_AVERAGE_FRAMES,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SKIP_FRAMES,
    CaptureResult,
    WebcamError,
    capture_photo,
    check_dependencies,
    format_bytes,
    list_controls,
    list_devices,
    list_formats,
    require_webcam,
    resolve_resolution,
)

COMMANDS = {
    "list": "list",
    "l": "list",
    "caps": "caps",
    "c": "caps",
    "snap": "snap",
    "s": "snap",
}


class UsageParser(argparse.ArgumentParser):
    """Argument parser whose usage errors exit with status 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _style(code: str, text: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m" if sys.stdout.isatty() else text


def bold(text: str) -> str:
    return _style("1", text)


def dim(text: str) -> str:
    return _style("2", text)


def success(message: str) -> None:
    print(f"{_style('32', '✓')} {message}")


def warn(message: str) -> None:
    print(f"{_style('33', '!')} {message}")


def error(message: str) -> None:
    print(f"{_style('31', '✗')} {message}", file=sys.stderr)


EPILOG = """\
commands:
  list, l          List available video devices
  caps, c [dev]    Show camera capabilities and controls
  snap, s [name]   Take a photo (saves as PNG)

environment:
  WEBCAM_DEVICE    Override default device
  WEBCAM_RES       Override default resolution

examples:
  webcam list
  webcam caps
  webcam snap my-notes
  webcam snap -r 3840x2160 -d /dev/video2 hires
"""


def build_parser() -> argparse.ArgumentParser:
    parser = UsageParser(
        prog="webcam",
        description="Capture photos from a USB webcam.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("command", nargs="?", help="list, caps or snap.")
    parser.add_argument(
        "target",
        nargs="?",
        help="Photo name for snap, device path for caps.",
    )
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    parser.add_argument(
        "-d",
        "--device",
        default=None,
        help="Video device (default: auto-detect external, overrides WEBCAM_DEVICE).",
    )
    parser.add_argument(
        "-r",
        "--resolution",
        default=None,
        help="Capture resolution WxH (default: max supported, overrides WEBCAM_RES).",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        default=str(DEFAULT_OUTPUT_DIR),
        help="Directory for captured photos.",
    )
    parser.add_argument(
        "--skip-frames",
        type=int,
        default=DEFAULT_SKIP_FRAMES,
        help="Frames to discard before capturing.",
    )
    parser.add_argument(
        "--average-frames",
        type=int,
        default=DEFAULT_AVERAGE_FRAMES,
        help="Frames to average to reduce sensor noise.",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal output.")
    return parser


def run_list() -> int:
    print(f"{bold('Available video devices:')}\n")
    try:
        print(list_devices().rstrip())
    except subprocess.CalledProcessError:
        error("No video devices found")
        return 1
    return 0


def run_caps(device: str | None) -> int:
    dev = require_webcam(device)
    print(f"{bold('Device:')} {dev}\n")

    print(f"{bold('=== Supported Formats & Resolutions ===')}\n")
    print(list_formats(dev).rstrip())

    print(f"\n{bold('=== Camera Controls ===')}\n")
    print(list_controls(dev).rstrip())

    print(f"\n{bold('=== Tips for paper notes ===')}")
    print("• Max resolution is auto-detected and used by default")
    print("• Good lighting reduces noise and improves sharpness")
    print("• Disable auto-focus to prevent hunting:\n")
    print(dim(f"  v4l2-ctl -d {dev} --set-ctrl=focus_automatic_continuous=0"))
    print(dim(f"  v4l2-ctl -d {dev} --set-ctrl=focus_absolute=30"))
    print("")
    return 0


def report_result(result: CaptureResult) -> None:
    success(
        f"{result.original_path} "
        + dim(f"({format_bytes(result.original_size)}, {result.width}x{result.height})")
    )
    if result.optimized_path is not None and result.optimized_size is not None:
        success(
            f"{result.optimized_path} "
            + dim(
                f"({format_bytes(result.optimized_size)}, "
                f"saved {format_bytes(result.saved_bytes or 0)})"
            )
        )


def run_snap(args: argparse.Namespace, has_oxipng: bool) -> int:
    device = require_webcam(args.device)
    resolution = resolve_resolution(device, args.resolution)
    output_dir = Path(args.output_dir)

    if not args.quiet:
        label = args.target or "notes-<timestamp>"
        print(bold("Capturing..."))
        print(f"  Device:     {device}")
        print(f"  Resolution: {resolution}")
        print(f"  Frames:     skip {args.skip_frames}, average {args.average_frames}")
        print(f"  Output:     {output_dir / label}_*.png")
        print("")

    result = capture_photo(
        device,
        resolution,
        label=args.target,
        output_dir=output_dir,
        skip_frames=args.skip_frames,
        average_frames=args.average_frames,
        optimize=has_oxipng,
        report=None if args.quiet else (lambda line: print(dim(line))),
        warn=None if args.quiet else warn,
    )
    report_result(result)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    command = COMMANDS.get(args.command)
    if command is None:
        error(f"Unknown command: {args.command}")
        print("\nRun 'webcam --help' for usage.")
        return 1

    try:
        has_oxipng = check_dependencies()
        if command == "list":
            return run_list()
        if command == "caps":
            return run_caps(args.target or args.device)
        return run_snap(args, has_oxipng)
    except subprocess.CalledProcessError as exc:
        details = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
        error(f"{exc.cmd[0]} failed: {details}")
        return 1
    except (WebcamError, ValueError) as exc:
        error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
