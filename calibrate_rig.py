#!/usr/bin/env python3
"""
Bird's-Eye Surround View - Rig Calibration Tool
===============================================

Calibrates the four-camera rig from one chessboard frame per camera.

Steps:
- Detect chessboard corners in every frame
- Estimate and refine each camera's ground homography and pose
- Optionally refine homographies jointly from overlap matches
- Write the calibration file (only if every camera succeeded)

Usage:
    python calibrate_rig.py --intrinsics intrinsics.yaml \\
        --front front.png --rear rear.png --left left.png --right right.png
    python calibrate_rig.py --intrinsics intrinsics.yaml --rig-config rig.yaml \\
        --front f.png --rear r.png --left l.png --right rr.png --matches matches.yaml
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import yaml

from birdview import (BirdViewError, CalibratorOptions, Calibrator, CameraPosition, ConfigError,
                      RigConfig, load_camera_parameters, load_rig_config, save_calibration)
from birdview.camera_model import FisheyeCamera
from birdview.config import CAMERA_ORDER
from birdview.logger import setup_logger
from birdview.optimizer import OverlapMatch


def load_frame(path: str, position: CameraPosition) -> np.ndarray:
    """
    Load one calibration frame.

    Raises:
        ConfigError: If the image cannot be read
    """
    if not Path(path).exists():
        raise ConfigError(f"{position.value} image not found: {path}")
    image = cv2.imread(path)
    if image is None:
        raise ConfigError(f"Cannot read {position.value} image: {path}")
    print(f"  ✓ {position.value}: {image.shape[1]}x{image.shape[0]} ({path})")
    return image


def load_overlap_matches(path: str) -> List[OverlapMatch]:
    """
    Read overlap matches from YAML.

    Format:
        matches:
          - cameras: [front, left]
            points_a: [[x, y], ...]   # one or two raw pixels in the first camera
            points_b: [[x, y], ...]
            weight: 1.0
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read matches file {path}: {e}")

    matches = []
    for i, entry in enumerate(data.get("matches", [])):
        try:
            a, b = (CameraPosition(name) for name in entry["cameras"])
            matches.append(OverlapMatch(
                camera_a=a.index,
                camera_b=b.index,
                points_a=np.array(entry["points_a"], dtype=np.float64),
                points_b=np.array(entry["points_b"], dtype=np.float64),
                weight=float(entry.get("weight", 1.0)),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid match #{i} in {path}: {e}")
    return matches


def save_undistorted(calibrator: Calibrator, frames: List[np.ndarray], output_dir: str) -> None:
    """Write undistorted debug images for every camera."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    for position, params, frame in zip(CAMERA_ORDER, calibrator.cameras, frames):
        image = FisheyeCamera(params, position).undistort(frame)
        path = directory / f"{position.value}_undistorted.png"
        cv2.imwrite(str(path), image)
        print(f"  ✓ Saved {path}")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Calibrate the four-camera rig from chessboard frames",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --intrinsics intrinsics.yaml --front f.png --rear r.png --left l.png --right rr.png
  %(prog)s ... --rig-config rig.yaml --output calibration.yaml
  %(prog)s ... --refine-intrinsics --save-undistorted debug/
        """
    )

    parser.add_argument("--intrinsics", required=True, help="Intrinsics file (OpenCV YAML)")
    parser.add_argument("--rig-config", help="Rig configuration YAML (defaults built in)")
    for position in CAMERA_ORDER:
        parser.add_argument(f"--{position.value}", required=True, metavar="IMAGE",
                            help=f"Chessboard frame of the {position.value} camera")
    parser.add_argument("--matches", help="Overlap matches YAML for cross-camera refinement")
    parser.add_argument("--output", default="calibration.yaml", help="Calibration output file")
    parser.add_argument("--refine-intrinsics", action="store_true",
                        help="Refine intrinsics together with the pose")
    parser.add_argument("--save-undistorted", metavar="DIR", help="Write undistorted debug images")
    parser.add_argument("--log-file", help="Write a debug log to this file")
    parser.add_argument("--verbose", action="store_true", help="Debug output on the console")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)
    setup_logger(logging.DEBUG if args.verbose else logging.INFO, log_file=args.log_file)

    print("🚗 Bird's-Eye Surround View - Rig Calibration")
    print("=" * 50)

    try:
        config = load_rig_config(args.rig_config) if args.rig_config else RigConfig()
        cameras = load_camera_parameters(args.intrinsics)
        print(f"✓ Loaded intrinsics: {args.intrinsics}")
        board = config.chessboard
        print(f"✓ Chessboard {board.cols}x{board.rows}, {board.square_size}m squares; "
              f"canvas {config.canvas.width}x{config.canvas.height} over {config.canvas.view_range}m")

        print("\n📷 Loading frames...")
        frames = [load_frame(getattr(args, position.value), position) for position in CAMERA_ORDER]
        matches = load_overlap_matches(args.matches) if args.matches else []

        calibrator = Calibrator(config, cameras,
                                options=CalibratorOptions(refine_intrinsics=args.refine_intrinsics))

        if args.save_undistorted:
            print("\n🔍 Saving undistorted images...")
            save_undistorted(calibrator, frames, args.save_undistorted)

        print("\n🎯 Calibrating...")
        snapshot = calibrator.run(frames, overlap_matches=matches)

        save_calibration(args.output, snapshot)
        print("\n✅ Calibration saved:")
        print(f"   • File: {args.output}")
        for position, rms in zip(CAMERA_ORDER, snapshot.rms):
            print(f"   • {position.value}: rms {rms:.4f}px")
        return 0

    except BirdViewError as e:
        print(f"\n❌ Calibration failed: {e}")
        print("   Previous calibration file left unchanged")
        return 1
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
