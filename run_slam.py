#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stereo SLAM Standalone Entry Point (run_slam.py)

Replays synchronized inertial + stereo-tracker frames through the
stereo_slam filter using SLAMRunner.

Configuration Model:
--------------------
    YAML config is the single source of truth for algorithm settings
    (calibration, noise, anchor capacity, gating).
    CLI provides only paths and runtime flags.

Usage:
    python run_slam.py --config configs/config_stereo_slam.yaml \\
        --frames path/to/frames.csv --output out/

    # Synthetic static scene (no input data needed):
    python run_slam.py --simulate 200 --output out/ --save_debug_data

Author: Stereo SLAM project
"""

import argparse
import os
import sys
import traceback


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Stereo-inertial SLAM filter - replay entry point",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replay a frames CSV:
  python run_slam.py --config config.yaml --frames frames.csv --output out/

  # Synthetic static scene with debug CSVs:
  python run_slam.py --simulate 200 --output out/ --save_debug_data
        """
    )

    parser.add_argument("--config", type=str, default=None,
                        help="Path to YAML config file (defaults when omitted)")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--frames", type=str, default=None,
                        help="Path to synchronized frames CSV")
    source.add_argument("--simulate", type=int, default=None, metavar="N",
                        help="Replay N frames of a synthetic static scene")
    parser.add_argument("--output", type=str, required=True,
                        help="Output directory")

    parser.add_argument("--dt", type=float, default=0.05,
                        help="Frame period of the synthetic scene [s]")
    parser.add_argument("--noise_px", type=float, default=0.5,
                        help="Pixel noise of the synthetic scene")
    parser.add_argument("--raw_imu_axes", action="store_true",
                        help="Frames CSV holds raw IMU axes; apply imu.axis_signs")
    parser.add_argument("--max_restarts", type=int, default=3,
                        help="Re-initializations allowed after divergence")
    parser.add_argument("--save_debug_data", action="store_true",
                        help="Save covariance and residual debug CSVs")

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point - load YAML config and run the replay."""
    args = parse_args(argv)

    print("=" * 70)
    print("Stereo SLAM Replay")
    print("=" * 70)

    from stereo_slam import __version__
    from stereo_slam.config import ConfigurationError
    from stereo_slam.main_loop import RunnerConfig, SLAMRunner
    from stereo_slam.numerical_checks import EstimatorDivergedError

    print(f"Using stereo_slam package version: {__version__}")

    config = RunnerConfig(
        output_dir=args.output,
        config_yaml=args.config,
        frames_csv=args.frames,
        simulate_frames=args.simulate or 0,
        simulate_dt=args.dt,
        simulate_noise_px=args.noise_px,
        apply_axis_signs=args.raw_imu_axes,
        save_debug_data=args.save_debug_data,
        max_restarts=args.max_restarts,
    )

    os.makedirs(args.output, exist_ok=True)
    cli_log_path = os.path.join(args.output, "cli_command.txt")
    with open(cli_log_path, 'w') as f:
        f.write("# Stereo SLAM CLI Command\n")
        f.write(f"# Config: {args.config}\n\n")
        f.write(" ".join(sys.argv) + "\n")

    try:
        SLAMRunner(config).run()
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        print(f"❌ Invalid input: {e}")
        return 2
    except EstimatorDivergedError as e:
        print(f"❌ Estimator diverged and restart budget is exhausted: {e}")
        traceback.print_exc()
        return 1

    print("=" * 70)
    print("✅ Stereo SLAM replay completed successfully")
    print(f"   Output: {args.output}")
    print("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
