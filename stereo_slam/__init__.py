"""
Stereo-Inertial SLAM Package

Recursive error-state Kalman filter that fuses gyroscope/accelerometer
propagation with stereo observations of persistent 3-D anchor landmarks.

Submodules:
- config: Configuration loading, compiled-in calibration, SLAMConfig
- math_utils: Quaternion operations, rotation matrices
- numerical_checks: NaN/inf tripwires and divergence error
- ekf: Covariance propagation and joint Kalman correction
- camera: Stereo pinhole projection, triangulation and Jacobians
- state_manager: Navigation state layout, FilterContext, renormalization
- anchor_manager: Anchor slot lifecycle and covariance block allocation
- propagation: Inertial prediction stage
- measurement_updates: Stereo measurement update stage
- slam_filter: SLAMFilter orchestrator (initialize / step / shutdown)
- data_loaders: IMU/frame records and frames CSV loader
- output_utils: Debug CSV writers and run summaries
- simulation: Synthetic stereo scene and RNG context for test harnesses
- main_loop: SLAMRunner replay loop

Usage:
    from stereo_slam.config import SLAMConfig
    from stereo_slam.slam_filter import SLAMFilter

    slam = SLAMFilter(SLAMConfig())
    result = slam.step(dt, inertial, measurements, validity)
    print(result.position, result.anchor_positions)
"""

__version__ = "1.0.0"

# Lazy module imports - access as stereo_slam.config, stereo_slam.ekf, etc.
import importlib

_SUBMODULES = {
    "config", "math_utils", "numerical_checks", "ekf", "camera",
    "state_manager", "anchor_manager", "propagation", "measurement_updates",
    "slam_filter", "data_loaders", "output_utils", "simulation", "main_loop",
}


def __getattr__(name):
    """Lazy module loading to avoid importing all dependencies at once."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'stereo_slam' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
