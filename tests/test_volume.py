#!/usr/bin/env python
"""
Tests for the Volume data model.

Covers geometry validation and the index to physical mapping.
"""

import numpy as np
import pytest

from ffdreg.errors import GeometryMismatchError, RegistrationError
from ffdreg.volume import Volume


class TestVolume:
    """Test suite for Volume geometry."""

    def test_default_geometry(self):
        """A volume built from data alone has unit spacing at the origin."""
        volume = Volume(data=np.zeros((4, 5, 6)))

        assert volume.shape == (4, 5, 6)
        assert volume.number_of_voxels == 120
        np.testing.assert_array_equal(volume.spacing, np.ones(3))
        np.testing.assert_array_equal(volume.origin, np.zeros(3))
        np.testing.assert_array_equal(volume.direction, np.eye(3))
        print("\n✓ Default geometry is identity")

    def test_index_physical_round_trip(self, anisotropic_volume):
        """physical_to_index inverts index_to_physical."""
        indices = np.array([[0, 0, 0], [3.5, 2.25, 1.0], [19, 15, 11]])
        points = anisotropic_volume.index_to_physical(indices)
        np.testing.assert_allclose(
            anisotropic_volume.physical_to_index(points), indices, atol=1e-10
        )
        np.testing.assert_allclose(points[0], anisotropic_volume.origin)
        print("✓ Index/physical mapping round-trips")

    def test_index_to_physical_uses_direction(self, anisotropic_volume):
        """A unit step along i moves spacing[0] along the first direction column."""
        step = anisotropic_volume.index_to_physical(
            np.array([1.0, 0.0, 0.0])
        ) - anisotropic_volume.origin
        expected = anisotropic_volume.direction[:, 0] * anisotropic_volume.spacing[0]
        np.testing.assert_allclose(step, expected)
        print("✓ Direction cosines applied")

    def test_geometric_center(self, blob_volume):
        np.testing.assert_allclose(blob_volume.get_geometric_center(), [15.5, 15.5, 15.5])
        np.testing.assert_allclose(blob_volume.get_physical_extent(), [32, 32, 32])

    def test_voxel_indices_follow_ravel_order(self):
        data = np.arange(24, dtype=float).reshape(2, 3, 4)
        volume = Volume(data=data)
        indices = volume.get_voxel_indices()

        assert indices.shape == (24, 3)
        values = data[indices[:, 0], indices[:, 1], indices[:, 2]]
        np.testing.assert_array_equal(values, data.ravel())

    def test_copy_with_data_keeps_geometry(self, anisotropic_volume):
        copy = anisotropic_volume.copy_with_data(np.ones(anisotropic_volume.shape))

        assert copy.has_same_geometry(anisotropic_volume)
        assert np.all(copy.data == 1)
        copy.origin[0] = 100.0
        assert anisotropic_volume.origin[0] == -10.0
        print("✓ copy_with_data keeps an independent geometry")

    def test_rejects_non_3d_data(self):
        with pytest.raises(GeometryMismatchError):
            Volume(data=np.zeros((4, 4)))
        print("✓ 2-D data rejected")

    def test_rejects_non_positive_spacing(self):
        with pytest.raises(GeometryMismatchError):
            Volume(data=np.zeros((2, 2, 2)), spacing=np.array([1.0, 0.0, 1.0]))

    def test_rejects_non_orthonormal_direction(self):
        direction = np.eye(3)
        direction[0, 1] = 0.5
        with pytest.raises(GeometryMismatchError):
            Volume(data=np.zeros((2, 2, 2)), direction=direction)

    def test_geometry_error_is_value_error(self):
        """GeometryMismatchError is both a RegistrationError and a ValueError."""
        with pytest.raises(ValueError):
            Volume(data=np.zeros(5))
        with pytest.raises(RegistrationError):
            Volume(data=np.zeros(5))
