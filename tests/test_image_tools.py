#!/usr/bin/env python
"""
Tests for ImageTools functionality.

Tests conversion between ITK images and volumes, file I/O and the intensity
utilities used around a registration run.
"""

import itk
import numpy as np
import pytest

from ffdreg.errors import EncodeError, VolumeDecodeError
from ffdreg.image_tools import ImageTools
from ffdreg.volume import Volume


class TestImageTools:
    """Test suite for ImageTools conversions and I/O."""

    @pytest.fixture
    def image_tools(self):
        """Create ImageTools instance."""
        return ImageTools()

    def test_itk_image_to_volume(self, image_tools):
        """Test that ITK size (x, y, z) becomes volume shape (i, j, k)."""
        size = [10, 20, 30]
        spacing = [1.0, 2.0, 3.0]
        origin = [5.0, -4.0, 1.5]

        ImageType = itk.Image[itk.F, 3]
        itk_image = ImageType.New()

        region = itk.ImageRegion[3]()
        region.SetSize(size)
        itk_image.SetRegions(region)
        itk_image.SetSpacing(spacing)
        itk_image.SetOrigin(origin)
        itk_image.Allocate()
        itk_image.FillBuffer(42.0)
        itk_image.SetPixel([3, 7, 11], 7.0)

        volume = image_tools.convert_itk_image_to_volume(itk_image)

        assert volume.shape == (10, 20, 30)
        np.testing.assert_allclose(volume.spacing, spacing)
        np.testing.assert_allclose(volume.origin, origin)
        np.testing.assert_allclose(volume.direction, np.eye(3))
        assert volume.data[3, 7, 11] == 7.0
        assert volume.data[0, 0, 0] == 42.0

        print("✓ ITK image to volume conversion successful")

    def test_volume_itk_roundtrip(self, image_tools, anisotropic_volume):
        """Test that samples and geometry survive conversion to ITK and back."""
        itk_image = image_tools.convert_volume_to_itk_image(anisotropic_volume)

        assert tuple(itk_image.GetLargestPossibleRegion().GetSize()) == anisotropic_volume.shape

        volume = image_tools.convert_itk_image_to_volume(itk_image)

        assert volume.has_same_geometry(anisotropic_volume)
        np.testing.assert_allclose(volume.data, anisotropic_volume.data, rtol=1e-6, atol=1e-5)

        print("✓ Volume to ITK round trip preserves geometry and samples")

    def test_write_and_read_volume(self, image_tools, make_blob, test_directories):
        volume_out = make_blob(shape=(20, 16, 12), spacing=(1.5, 1.0, 2.0))
        volume_out.origin = np.array([-10.0, 5.0, 3.0])
        filename = test_directories["output"] / "volume.mha"

        image_tools.write_volume(volume_out, filename)
        assert filename.exists()

        volume = image_tools.read_volume(filename)

        assert volume.has_same_geometry(volume_out)
        np.testing.assert_allclose(volume.data, volume_out.data, rtol=1e-6, atol=1e-5)

        print(f"✓ Wrote and read {filename.name}")

    def test_read_missing_file(self, image_tools, tmp_path):
        with pytest.raises(VolumeDecodeError) as excinfo:
            image_tools.read_volume(tmp_path / "missing.mha")

        assert excinfo.value.stage == "read"

    def test_read_corrupt_file(self, image_tools, tmp_path):
        filename = tmp_path / "corrupt.mha"
        filename.write_text("not a volume")

        with pytest.raises(VolumeDecodeError) as excinfo:
            image_tools.read_volume(filename)

        assert excinfo.value.stage == "read"

    def test_write_to_missing_directory(self, image_tools, blob_volume, tmp_path):
        with pytest.raises(EncodeError) as excinfo:
            image_tools.write_volume(blob_volume, tmp_path / "no_such_dir" / "out.mha")

        assert excinfo.value.stage == "write"


class TestIntensityTools:
    """Test suite for normalization, centroids and resampling."""

    @pytest.fixture
    def image_tools(self):
        return ImageTools()

    def test_normalize_intensity(self, image_tools, blob_volume):
        normalized = image_tools.normalize_intensity(blob_volume)

        assert normalized.has_same_geometry(blob_volume)
        assert abs(normalized.data.mean()) < 1e-10
        assert abs(normalized.data.std() - 1.0) < 1e-10

        print("✓ Normalized volume has zero mean and unit variance")

    def test_normalize_constant_volume(self, image_tools):
        volume = Volume(data=np.full((4, 4, 4), 3.0))

        normalized = image_tools.normalize_intensity(volume)

        assert np.all(normalized.data == 0.0)

    def test_threshold_volume(self, image_tools, blob_volume):
        binary = image_tools.threshold_volume(blob_volume, 50.0, 1e9)

        assert set(np.unique(binary.data)) <= {0.0, 1.0}
        assert binary.data[16, 16, 16] == 1.0
        assert binary.data[0, 0, 0] == 0.0

    def test_compute_centroid(self, image_tools):
        data = np.zeros((16, 12, 4))
        data[10:14, 4:8, 0:2] = 5.0
        volume = Volume(data=data, spacing=np.array([2.0, 2.0, 2.0]))

        centroid = image_tools.compute_centroid(volume)

        np.testing.assert_allclose(centroid, [23.0, 11.0, 1.0])

    def test_centroid_without_foreground(self, image_tools):
        volume = Volume(data=np.zeros((4, 4, 4)))

        with pytest.raises(ValueError):
            image_tools.compute_centroid(volume)

    def test_centroid_distance(self, image_tools, blob_volume, translated_blob_volume):
        fixed_centroid = image_tools.compute_centroid(blob_volume, 50.0)
        moving_centroid = image_tools.compute_centroid(translated_blob_volume, 50.0)

        distance = image_tools.compute_centroid_distance(fixed_centroid, moving_centroid)

        assert abs(distance - 2.0) < 1e-9

    def test_resample_to_coarser_spacing(self, image_tools, blob_volume):
        resampled = image_tools.resample_to_spacing(blob_volume, 2.0)

        assert resampled.shape == (16, 16, 16)
        np.testing.assert_allclose(resampled.spacing, [2.0, 2.0, 2.0])
        np.testing.assert_allclose(resampled.origin, blob_volume.origin)
        np.testing.assert_allclose(resampled.data, blob_volume.data[::2, ::2, ::2], atol=1e-9)

        print("✓ Resampled 32^3 volume to 16^3 at 2 mm")

    def test_resample_to_finer_spacing(self, image_tools, make_blob):
        volume = make_blob(shape=(10, 10, 10))

        resampled = image_tools.resample_to_spacing(volume, 0.5)

        assert resampled.shape == (20, 20, 20)
        np.testing.assert_allclose(resampled.data[2, 4, 6], volume.data[1, 2, 3], atol=1e-9)
