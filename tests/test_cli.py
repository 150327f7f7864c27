#!/usr/bin/env python
"""
Tests for the FFDReg command-line tools.

Each tool is called through its ``main(argv)`` entry point on small synthetic
volumes written to a temporary directory.
"""

import numpy as np
import pytest

from ffdreg.__main__ import main as ffdreg_main
from ffdreg.cli import (
    check_centroid_alignment,
    normalize_intensity,
    register_deformable,
    register_rigid,
    resample_isotropic,
)
from ffdreg.image_tools import ImageTools


@pytest.fixture
def volume_files(blob_volume, translated_blob_volume, test_directories):
    """Fixed and moving volumes written as .mha files."""
    output_dir = test_directories["output"]
    image_tools = ImageTools()
    fixed = output_dir / "fixed.mha"
    moving = output_dir / "moving.mha"
    image_tools.write_volume(blob_volume, fixed)
    image_tools.write_volume(translated_blob_volume, moving)
    return {"fixed": fixed, "moving": moving, "output_dir": output_dir}


class TestCommandLineTools:
    """Test suite for the command-line entry points."""

    def test_normalize_intensity(self, volume_files, capsys):
        output = volume_files["output_dir"] / "normalized.mha"

        status = normalize_intensity.main([str(volume_files["fixed"]), str(output)])

        assert status == 0
        assert output.exists()
        volume = ImageTools().read_volume(output)
        assert abs(volume.data.mean()) < 1e-4
        assert "Normalized volume written" in capsys.readouterr().out

    def test_resample_isotropic(self, volume_files):
        output = volume_files["output_dir"] / "resampled.mha"

        status = resample_isotropic.main(
            [str(volume_files["fixed"]), str(output), "--spacing", "2.0"]
        )

        assert status == 0
        assert ImageTools().read_volume(output).shape == (16, 16, 16)

    def test_resample_invalid_spacing(self, volume_files):
        output = volume_files["output_dir"] / "resampled.mha"

        status = resample_isotropic.main(
            [str(volume_files["fixed"]), str(output), "--spacing", "-1"]
        )

        assert status == 1
        assert not output.exists()

    def test_check_centroid_alignment(self, volume_files, capsys):
        status = check_centroid_alignment.main(
            [
                str(volume_files["fixed"]),
                str(volume_files["moving"]),
                "--lower-threshold",
                "50",
            ]
        )

        out = capsys.readouterr().out
        assert status == 0
        assert "Fixed centroid:" in out
        assert "Registered centroid:" in out
        assert "Distance (mm): 2.0000" in out

        print("✓ Centroid check printed the distance")

    def test_missing_input(self, volume_files, capsys):
        missing = volume_files["output_dir"] / "missing.mha"
        output = volume_files["output_dir"] / "out.mha"

        status = normalize_intensity.main([str(missing), str(output)])

        assert status == 1
        assert "Error [read] VolumeDecodeError" in capsys.readouterr().err

    def test_unknown_tool(self, capsys):
        assert ffdreg_main(["no-such-tool"]) == 1
        assert "unknown tool" in capsys.readouterr().err

    def test_tool_dispatch(self, volume_files):
        output = volume_files["output_dir"] / "dispatched.mha"

        status = ffdreg_main(["normalize-intensity", str(volume_files["fixed"]), str(output)])

        assert status == 0
        assert output.exists()

    def test_deformable_bounds_must_be_paired(self, volume_files, capsys):
        output = volume_files["output_dir"] / "out.mha"

        status = register_deformable.main(
            [
                str(volume_files["fixed"]),
                str(volume_files["moving"]),
                str(output),
                "--lower-bound",
                "-1",
            ]
        )

        assert status == 1
        assert "--upper-bound" in capsys.readouterr().err

    def test_invalid_schedule_reported(self, volume_files, capsys):
        output = volume_files["output_dir"] / "out.mha"

        status = register_rigid.main(
            [
                str(volume_files["fixed"]),
                str(volume_files["moving"]),
                str(output),
                "--shrink-factors",
                "2",
                "1",
            ]
        )

        assert status == 1
        assert "ConfigurationError" in capsys.readouterr().err

    def test_non_finite_moving_reported(self, blob_volume, volume_files, capsys):
        data = blob_volume.data.copy()
        data[10, 12, 14] = np.nan
        moving = volume_files["output_dir"] / "moving_nan.mha"
        ImageTools().write_volume(blob_volume.copy_with_data(data), moving)
        output = volume_files["output_dir"] / "out.mha"

        status = register_rigid.main(
            [str(volume_files["fixed"]), str(moving), str(output), "--levels", "1"]
        )

        assert status == 1
        assert not output.exists()
        err = capsys.readouterr().err
        assert "Error [prepare] ConfigurationError" in err
        assert "(level 0)" in err


@pytest.mark.slow
class TestRegistrationTools:
    """End-to-end runs of the registration tools."""

    def test_register_rigid(self, volume_files, capsys):
        output = volume_files["output_dir"] / "rigid.mha"

        status = register_rigid.main(
            [
                str(volume_files["fixed"]),
                str(volume_files["moving"]),
                str(output),
                "--levels",
                "1",
                "--iterations",
                "20",
            ]
        )

        assert status == 0
        assert output.exists()
        out = capsys.readouterr().out
        assert "Translation (mm):" in out
        assert "Rigid registration complete." in out

    def test_register_deformable(self, volume_files, capsys):
        output = volume_files["output_dir"] / "deformable.mha"
        jacobian = volume_files["output_dir"] / "jacobian.mha"

        status = register_deformable.main(
            [
                str(volume_files["fixed"]),
                str(volume_files["moving"]),
                str(output),
                "--levels",
                "1",
                "--mesh-sizes",
                "2",
                "--iterations",
                "5",
                "--samples",
                "3000",
                "--jacobian-output",
                str(jacobian),
            ]
        )

        assert status == 0
        assert output.exists()
        assert jacobian.exists()
        assert ImageTools().read_volume(jacobian).shape == (32, 32, 32)
        assert "Jacobian determinant:" in capsys.readouterr().out

        print("✓ Deformable registration tool wrote the volume and the Jacobian")
