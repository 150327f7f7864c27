#!/usr/bin/env python
"""
Shared pytest fixtures for FFDReg tests.

This file defines fixtures that are available to all test modules
in the tests directory via pytest's automatic fixture discovery.

All volumes are synthetic so the suite runs without downloaded data.
"""

from datetime import datetime, timedelta

import numpy as np
import pytest
from scipy.ndimage import gaussian_filter

from ffdreg.volume import Volume

# ============================================================================
# Pytest Configuration
# ============================================================================

# Module-level variable to store config for access in hooks
_pytest_config = None


def pytest_configure(config):
    """Initialize test timing storage."""
    global _pytest_config
    _pytest_config = config

    config._test_timings = {
        "tests": [],
        "total_time": 0.0,
        "start_time": datetime.now(),
    }


def pytest_runtest_logreport(report):
    """
    Collect test timing information after each test completes.

    Only the 'call' phase, the actual test execution, is recorded.
    """
    if report.when == "call":
        if _pytest_config is None:
            return

        test_info = {
            "nodeid": report.nodeid,
            "duration": report.duration,
            "outcome": report.outcome,
            "is_slow": "slow" in report.keywords,
        }

        _pytest_config._test_timings["tests"].append(test_info)
        _pytest_config._test_timings["total_time"] += report.duration


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    """Print a timing report of the session, slowest tests first."""
    timings = getattr(config, "_test_timings", None)
    if not timings or not timings["tests"]:
        return
    tests = timings["tests"]

    session_duration = datetime.now() - timings["start_time"]

    terminalreporter.write_sep("=", "TEST TIMING REPORT", bold=True)
    terminalreporter.write_line(f"Session Duration: {session_duration}")
    terminalreporter.write_line(
        f"Total Test Time: {timedelta(seconds=int(timings['total_time']))}"
    )
    terminalreporter.write_line(f"Total Tests: {len(tests)}")
    terminalreporter.write_line("")

    terminalreporter.write_sep("-", "Slowest Tests", bold=True)
    sorted_tests = sorted(tests, key=lambda x: x["duration"], reverse=True)[:10]
    for i, test in enumerate(sorted_tests, 1):
        outcome_symbol = "✓" if test["outcome"] == "passed" else "✗"
        duration_str = _format_duration(test["duration"])
        test_type = "[SLOW]" if test["is_slow"] else "[FAST]"
        terminalreporter.write_line(
            f"  {i:2d}. {outcome_symbol} {duration_str:>10s} {test_type} {test['nodeid']}"
        )
    terminalreporter.write_line("")

    passed = sum(1 for t in tests if t["outcome"] == "passed")
    failed = sum(1 for t in tests if t["outcome"] == "failed")
    skipped = sum(1 for t in tests if t["outcome"] == "skipped")

    terminalreporter.write_sep("-", "Test Outcomes", bold=True)
    terminalreporter.write_line(f"Passed:  {passed}")
    terminalreporter.write_line(f"Failed:  {failed}")
    terminalreporter.write_line(f"Skipped: {skipped}")
    terminalreporter.write_line("")


def _format_duration(seconds):
    """Format duration in a human-readable way."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.0f}s"


# ============================================================================
# Synthetic Volume Fixtures
# ============================================================================


def make_blob_data(shape=(32, 32, 32), center=None, offset=(0.0, 0.0, 0.0)):
    """Smooth test pattern: two Gaussian blobs of different brightness.

    The pattern is asymmetric so that translations and rotations change the
    mutual information. ``offset`` shifts the pattern by that many voxels.
    """
    shape = tuple(shape)
    if center is None:
        center = (np.array(shape) - 1) / 2.0
    center = np.asarray(center, dtype=np.float64) + np.asarray(offset, dtype=np.float64)
    grid = np.indices(shape).astype(np.float64)

    def blob(position, sigma):
        d2 = sum((grid[axis] - position[axis]) ** 2 for axis in range(3))
        return np.exp(-d2 / (2.0 * sigma**2))

    scale = np.array(shape) / 32.0
    large = blob(center, 6.0 * scale.mean())
    small = blob(center + np.array([5.0, 3.0, -2.0]) * scale, 3.0 * scale.mean())
    return 100.0 * large + 60.0 * small


def make_texture_data(shape=(32, 32, 32), offset=(0, 0, 0), seed=7, sigma=2.0):
    """Smoothed random texture that fills the whole grid, scaled to [0, 100].

    Unlike the blobs there is no flat background, so every local shift or
    contraction blurs the joint histogram. ``offset`` is an integer shift in
    voxels: the result at index i + offset equals the unshifted texture at i.
    """
    shape = tuple(shape)
    offset = np.asarray(offset, dtype=np.int64)
    pad = 8
    rng = np.random.default_rng(seed)
    big = gaussian_filter(rng.normal(size=tuple(n + 2 * pad for n in shape)), sigma)
    big = 100.0 * (big - big.min()) / (big.max() - big.min())
    start = pad - offset
    window = tuple(slice(s, s + n) for s, n in zip(start, shape))
    return big[window].copy()


@pytest.fixture
def test_directories(tmp_path):
    """Temporary output directory for files written by a test."""
    output_dir = tmp_path / "results"
    output_dir.mkdir(parents=True, exist_ok=True)
    return {"output": output_dir}


@pytest.fixture
def blob_volume():
    """32^3 volume with unit spacing at the origin."""
    return Volume(data=make_blob_data())


@pytest.fixture
def translated_blob_volume():
    """The blob volume's pattern shifted by +2 voxels along x."""
    return Volume(data=make_blob_data(offset=(2.0, 0.0, 0.0)))


@pytest.fixture
def anisotropic_volume():
    """Small volume with non-unit spacing, shifted origin and rotated axes."""
    angle = np.deg2rad(30.0)
    direction = np.array(
        [
            [np.cos(angle), -np.sin(angle), 0.0],
            [np.sin(angle), np.cos(angle), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )
    return Volume(
        data=make_blob_data(shape=(20, 16, 12)),
        spacing=np.array([1.5, 1.0, 2.0]),
        origin=np.array([-10.0, 5.0, 3.0]),
        direction=direction,
    )


@pytest.fixture
def make_blob():
    """Factory for blob volumes: make_blob(shape=..., offset=..., spacing=...)."""

    def factory(shape=(32, 32, 32), offset=(0.0, 0.0, 0.0), spacing=(1.0, 1.0, 1.0)):
        return Volume(
            data=make_blob_data(shape=shape, offset=offset),
            spacing=np.asarray(spacing, dtype=np.float64),
        )

    return factory


@pytest.fixture
def textured_volume():
    """32^3 smoothed noise texture with unit spacing at the origin."""
    return Volume(data=make_texture_data())
