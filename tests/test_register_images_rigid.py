#!/usr/bin/env python
"""
Tests for multi-resolution rigid registration.

The moving volume is the fixed pattern shifted by a known amount, so the
recovered transform can be checked against the ground truth.
"""

import numpy as np
import pytest

from ffdreg.errors import ConfigurationError, DegenerateOverlapError
from ffdreg.register_images_base import LevelResult
from ffdreg.register_images_rigid import RegisterImagesRigid
from ffdreg.transform_euler3d import Euler3DTransform
from ffdreg.transform_tools import TransformTools
from ffdreg.volume import Volume


@pytest.fixture
def registrar(blob_volume):
    registrar = RegisterImagesRigid()
    registrar.set_fixed_image(blob_volume)
    return registrar


def _residual(volume, reference):
    inner = (slice(4, -4),) * 3
    return float(np.mean(np.abs(volume.data[inner] - reference.data[inner])))


class TestRegisterImagesRigid:
    """Test suite for RegisterImagesRigid."""

    def test_defaults(self):
        registrar = RegisterImagesRigid()

        assert registrar.number_of_histogram_bins == 32
        assert registrar.number_of_levels == 2
        assert registrar.number_of_samples == 10000
        assert registrar.random_seed == 121212

    def test_rotation_scale(self, registrar, blob_volume):
        expected = np.linalg.norm(blob_volume.get_physical_extent()) / 2.0
        assert np.isclose(registrar.get_rotation_scale(), expected)

        scales = registrar.compute_parameter_scales(Euler3DTransform())
        np.testing.assert_allclose(scales, [expected] * 3 + [1.0] * 3)

        registrar.set_rotation_scale(10.0)
        assert registrar.get_rotation_scale() == 10.0

        with pytest.raises(ConfigurationError):
            registrar.set_rotation_scale(-1.0)

    def test_transform_centered_on_fixed_volume(self, registrar, blob_volume):
        transform = registrar.create_transform()

        np.testing.assert_allclose(transform.get_center(), blob_volume.get_geometric_center())
        np.testing.assert_allclose(transform.get_parameters(), np.zeros(6))

    def test_invalid_initial_transform(self, registrar, translated_blob_volume):
        with pytest.raises(ConfigurationError) as excinfo:
            registrar.register(translated_blob_volume, initial_transform="identity")

        assert excinfo.value.stage == "init"

    @pytest.mark.slow
    def test_recovers_translation(self, registrar, blob_volume, translated_blob_volume):
        """Test that a 2 mm shift along x is recovered."""
        result = registrar.register(translated_blob_volume)

        transform = result["transform"]
        parameters = transform.get_parameters()

        print(f"\nRecovered parameters: {parameters}")
        assert np.all(np.abs(parameters[:3]) < 0.05)
        np.testing.assert_allclose(parameters[3:], [2.0, 0.0, 0.0], atol=0.5)

        assert set(result) >= {"transform", "loss", "levels"}
        assert len(result["levels"]) == 2
        assert all(isinstance(level, LevelResult) for level in result["levels"])
        assert [level.shrink_factor for level in result["levels"]] == [2, 1]
        assert result["loss"] == result["levels"][-1].final_value
        assert result["loss"] <= result["levels"][-1].initial_value
        assert registrar.last_committed_transform is not None
        np.testing.assert_allclose(
            registrar.last_committed_transform.get_parameters(), parameters
        )

        registered = TransformTools().transform_image(
            translated_blob_volume, transform, blob_volume
        )
        before = _residual(translated_blob_volume, blob_volume)
        after = _residual(registered, blob_volume)
        print(f"Mean absolute residual: {before:.4f} -> {after:.4f}")
        assert after < 0.25 * before

        print("✓ Rigid registration recovered the translation")

    @pytest.mark.slow
    def test_self_registration_stays_at_identity(self, registrar, blob_volume):
        """Registering a volume to itself leaves the transform near zero."""
        result = registrar.register(blob_volume)

        parameters = result["transform"].get_parameters()
        print(f"\nSelf-registration parameters: {parameters}")
        assert np.all(np.abs(parameters[:3]) < 0.02)
        assert np.linalg.norm(parameters[3:]) < 0.25

    @pytest.mark.slow
    def test_initial_transform_is_not_modified(self, registrar, translated_blob_volume):
        initial = Euler3DTransform(center=registrar.fixed_image.get_geometric_center())
        initial.set_parameters([0.0, 0.0, 0.0, 1.0, 0.0, 0.0])
        registrar.set_number_of_levels(1)
        registrar.set_number_of_iterations(5)

        result = registrar.register(translated_blob_volume, initial_transform=initial)

        np.testing.assert_allclose(initial.get_parameters(), [0.0, 0.0, 0.0, 1.0, 0.0, 0.0])
        assert result["transform"] is not initial


class TestRegistrationErrors:
    """Test suite for configuration checks and error context."""

    def test_missing_fixed_image(self, translated_blob_volume):
        registrar = RegisterImagesRigid()

        with pytest.raises(ConfigurationError) as excinfo:
            registrar.register(translated_blob_volume)

        assert excinfo.value.stage == "init"

    def test_invalid_settings(self, registrar):
        with pytest.raises(ConfigurationError):
            registrar.set_number_of_levels(0)
        with pytest.raises(ConfigurationError):
            registrar.set_number_of_histogram_bins(3)
        with pytest.raises(ConfigurationError):
            registrar.set_number_of_iterations(0)
        with pytest.raises(ConfigurationError):
            registrar.set_schedule([2, 2, 1], [2.0, 1.0, 0.0])
        with pytest.raises(ConfigurationError):
            registrar.set_fixed_image(np.zeros((4, 4, 4)))

    def test_fixed_mask_shape(self, registrar):
        with pytest.raises(ConfigurationError):
            registrar.set_fixed_image_mask(Volume(data=np.ones((8, 8, 8))))

    def test_non_finite_moving_voxel(self, registrar, blob_volume):
        """Test that one NaN voxel fails level preparation with context attached."""
        data = blob_volume.data.copy()
        data[10, 12, 14] = np.nan
        moving = blob_volume.copy_with_data(data)

        with pytest.raises(ConfigurationError, match="non-finite") as excinfo:
            registrar.register(moving)

        err = excinfo.value
        assert err.level == 0
        assert err.stage == "prepare"
        assert err.last_transform is None

        print("✓ Non-finite intensities reported with level and stage")

    def test_no_overlap(self, registrar, blob_volume):
        """Test that a moving volume far away fails on the first level."""
        moving = Volume(data=blob_volume.data.copy(), origin=np.array([1000.0, 0.0, 0.0]))

        with pytest.raises(DegenerateOverlapError) as excinfo:
            registrar.register(moving)

        err = excinfo.value
        assert err.level == 0
        assert err.stage == "optimize"
        assert err.last_transform is None

        print("✓ Degenerate overlap reported with level and stage")
