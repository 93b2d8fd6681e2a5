#!/usr/bin/env python3
"""
Bird's-Eye Surround View - Composition Tool
===========================================

Composes top-down canvases from calibrated camera frames.

Enhanced with:
- Multi-threaded per-camera remapping
- Tone balancing across camera overlaps
- Weighted or gradient-domain (Poisson) blending
- Frame sequence processing with timing and resource summary

Usage:
    python compose_birdview.py --calibration calibration.yaml \\
        --front f.png --rear r.png --left l.png --right rr.png --output birdview.png
    python compose_birdview.py --calibration calibration.yaml --sequence-dir images/ --output out/
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import psutil

from birdview import (BirdViewError, BlendingMethod, CameraPosition, Composition, ConfigError,
                      RemapSource, RigConfig, load_calibration, load_rig_config)
from birdview.blend_masks import save_blend_weights
from birdview.config import CAMERA_ORDER
from birdview.logger import setup_logger

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp")


def read_image(path: Path) -> np.ndarray:
    image = cv2.imread(str(path))
    if image is None:
        raise ConfigError(f"Cannot read image: {path}")
    return image


def load_sequences(sequence_dir: str) -> List[List[Path]]:
    """
    Frame paths per camera from ``<dir>/<position>/``, sorted by name.

    Sequences are truncated to the shortest one.

    Raises:
        ConfigError: If a camera directory is missing or empty
    """
    print("🎞️  Loading image sequences...")
    sequences: Dict[CameraPosition, List[Path]] = {}
    for position in CAMERA_ORDER:
        directory = Path(sequence_dir) / position.value
        if not directory.is_dir():
            raise ConfigError(f"Sequence directory not found: {directory}")
        files = sorted(p for p in directory.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        if not files:
            raise ConfigError(f"No images found in {directory}")
        sequences[position] = files
        print(f"  ✓ {position.value}: {len(files)} frames")

    length = min(len(files) for files in sequences.values())
    print(f"   📊 Sequence length: {length} frames per camera\n")
    return [[sequences[p][i] for p in CAMERA_ORDER] for i in range(length)]


def print_resource_summary(times_ms: List[float], failures: int) -> None:
    """Timing and system resource summary."""
    memory = psutil.virtual_memory()
    process = psutil.Process()
    avg_time = float(np.mean(times_ms)) if times_ms else 0.0
    fps = 1000.0 / avg_time if avg_time > 0 else 0.0

    print("\n📊 Processing Summary:")
    print(f"   • Frames: {len(times_ms)} composed, {failures} failed")
    print(f"   • Frame time: {avg_time:.1f}ms average ({fps:.1f} FPS)")
    print(f"   • CPU: {psutil.cpu_percent(interval=0.1):.1f}% load, "
          f"{psutil.cpu_count(logical=False)} physical / {psutil.cpu_count(logical=True)} logical cores")
    print(f"   • RAM: {memory.percent:.1f}% ({memory.used / (1024 ** 3):.1f}GB / {memory.total / (1024 ** 3):.1f}GB)")
    print(f"   • Process memory: {process.memory_info().rss / (1024 ** 2):.1f}MB")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Compose bird's-eye canvases from calibrated camera frames",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --calibration calibration.yaml --front f.png --rear r.png --left l.png --right rr.png
  %(prog)s --calibration calibration.yaml --sequence-dir images/ --output out/ --poisson
  %(prog)s ... --save-weights weights.png --no-tone
  %(prog)s ... --use-extrinsics
        """
    )

    parser.add_argument("--calibration", required=True, help="Calibration file from calibrate_rig.py")
    parser.add_argument("--rig-config", help="Rig configuration YAML (defaults built in)")
    for position in CAMERA_ORDER:
        parser.add_argument(f"--{position.value}", metavar="IMAGE", help=f"{position.value} camera frame")
    parser.add_argument("--sequence-dir", help="Directory with front/rear/left/right frame sequences")
    parser.add_argument("--output", default="birdview.png",
                        help="Output image, or output directory with --sequence-dir")
    parser.add_argument("--poisson", action="store_true", help="Gradient-domain seam blending")
    parser.add_argument("--no-tone", action="store_true", help="Disable tone balancing")
    parser.add_argument("--use-extrinsics", action="store_true",
                        help="Build remap tables from camera poses instead of homographies")
    parser.add_argument("--car-image", help="Image drawn over the vehicle rectangle")
    parser.add_argument("--save-weights", metavar="PNG", help="Export blend weights as RGBA PNG")
    parser.add_argument("--log-file", help="Write a debug log to this file")
    parser.add_argument("--verbose", action="store_true", help="Debug output on the console")

    args = parser.parse_args(argv)
    single = [getattr(args, p.value) for p in CAMERA_ORDER]
    if args.sequence_dir is None and not all(single):
        parser.error("give all four camera frames or --sequence-dir")
    if args.sequence_dir is not None and any(single):
        parser.error("camera frames and --sequence-dir are mutually exclusive")
    return args


def compose_frames(composition: Composition, frame_sets: List[List[Path]],
                   output: str, output_dir: Optional[Path]) -> Tuple[List[float], int]:
    """Compose every frame set; returns (frame times in ms, failure count)."""
    times_ms, failures = [], 0
    for index, paths in enumerate(frame_sets):
        frames = [read_image(path) for path in paths]
        result = composition.process_frame(frames)
        if not result.ok:
            failures += 1
            print(f"  ✗ Frame {index}: {result.error}")
            continue

        times_ms.append(result.processing_time_ms)
        if output_dir is None:
            output_path = Path(output)
        else:
            output_path = output_dir / f"{index:05d}.png"
        cv2.imwrite(str(output_path), result.image)
        note = " (recalibrated for new frame size)" if result.recovered else ""
        print(f"  ✓ Frame {index}: {result.processing_time_ms:.1f}ms -> {output_path}{note}")
    return times_ms, failures


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)
    setup_logger(logging.DEBUG if args.verbose else logging.INFO, log_file=args.log_file)

    method = BlendingMethod.POISSON if args.poisson else BlendingMethod.WEIGHTED
    source = RemapSource.EXTRINSICS if args.use_extrinsics else RemapSource.HOMOGRAPHY
    print("🚗 Bird's-Eye Surround View - Composition")
    print("=" * 50)
    print(f"🔧 Blending: {method.value}, tone balancing: {'off' if args.no_tone else 'on'}, "
          f"remap from {source.value}")

    try:
        config = load_rig_config(args.rig_config) if args.rig_config else RigConfig()
        snapshot = load_calibration(args.calibration)
        car_image = read_image(Path(args.car_image)) if args.car_image else None

        if args.sequence_dir:
            frame_sets = load_sequences(args.sequence_dir)
            output_dir = Path(args.output)
            output_dir.mkdir(parents=True, exist_ok=True)
        else:
            frame_sets = [[Path(getattr(args, p.value)) for p in CAMERA_ORDER]]
            output_dir = None

        with Composition(config, snapshot, method=method, tone_balance=not args.no_tone,
                         car_image=car_image, remap_source=source) as composition:
            print(f"✓ Loaded calibration: {args.calibration}")

            if args.save_weights:
                save_blend_weights(composition.state.weights, args.save_weights)
                print(f"✓ Saved blend weights: {args.save_weights}")

            times_ms, failures = compose_frames(composition, frame_sets, args.output, output_dir)

        print_resource_summary(times_ms, failures)
        return 0 if failures == 0 else 1

    except BirdViewError as e:
        print(f"❌ Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n🛑 Interrupted by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
