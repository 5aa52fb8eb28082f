"""Unit tests for image, marker and feature-map files."""

import numpy as np
import pytest
from PIL import Image

from flim import DataError, MarkerSet, load_image, load_markers, save_feature_map, save_markers
from flim.io import list_images, load_mask, read_image_list


class TestSeedsFile:
    """Marker files: ``n xsize ysize [zsize]`` then ``x y [z] id label`` rows."""

    def test_parse_2d(self, tmp_path):
        path = tmp_path / "a-seeds.txt"
        path.write_text("2 10 8\n3 1 0 1\n4 5 1 2\n")
        markers = load_markers(path)
        np.testing.assert_array_equal(markers.coords, [[1, 3], [5, 4]])
        np.testing.assert_array_equal(markers.labels, [1, 2])

    def test_parse_3d(self, tmp_path):
        path = tmp_path / "a-seeds.txt"
        path.write_text("1 10 8 6\n3 1 2 0 4\n")
        markers = load_markers(path)
        assert markers.ndim == 3
        np.testing.assert_array_equal(markers.coords, [[2, 1, 3]])

    def test_write_then_read(self, tmp_path, two_label_markers):
        path = tmp_path / "img-seeds.txt"
        save_markers(two_label_markers, path, (16, 20))
        assert path.read_text().splitlines()[0] == "24 20 16"
        markers = load_markers(path)
        np.testing.assert_array_equal(markers.coords, two_label_markers.coords)
        np.testing.assert_array_equal(markers.labels, two_label_markers.labels)

    @pytest.mark.parametrize("text", [
        "",
        "3 10\n1 1 0 1\n",
        "2 10 8\n3 1 0 1\n",
        "1 10 8\n3 x 0 1\n",
        "1 10 8\n3 1 0\n",
    ])
    def test_malformed(self, tmp_path, text):
        path = tmp_path / "bad-seeds.txt"
        path.write_text(text)
        with pytest.raises(DataError):
            load_markers(path)

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_markers(tmp_path / "none-seeds.txt")


class TestImages:
    """Image and mask loading."""

    def test_npy(self, tmp_path, rgb_image):
        path = tmp_path / "a.npy"
        np.save(path, rgb_image.astype(np.float64))
        image = load_image(path)
        assert image.dtype == np.float32
        np.testing.assert_allclose(image, rgb_image)

    def test_grayscale_png(self, tmp_path):
        data = np.arange(48, dtype=np.uint8).reshape(6, 8)
        Image.fromarray(data).save(tmp_path / "g.png")
        image = load_image(tmp_path / "g.png")
        assert image.shape == (6, 8)
        np.testing.assert_array_equal(image, data)

    def test_rgba_png_drops_alpha(self, tmp_path):
        data = np.zeros((5, 7, 4), dtype=np.uint8)
        data[..., 0] = 200
        data[..., 3] = 255
        Image.fromarray(data).save(tmp_path / "c.png")
        image = load_image(tmp_path / "c.png")
        assert image.shape == (5, 7, 3)
        assert image[..., 0].max() == 200

    def test_missing_image(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_image(tmp_path / "nope.png")

    def test_mask(self, tmp_path):
        data = np.zeros((4, 4), dtype=np.uint8)
        data[1:3, 1:3] = 255
        Image.fromarray(data).save(tmp_path / "m.png")
        np.testing.assert_array_equal(load_mask(tmp_path / "m.png"), data > 0)
        np.save(tmp_path / "m.npy", data.astype(np.int32))
        np.testing.assert_array_equal(load_mask(tmp_path / "m.npy"), data > 0)


class TestFeatureMaps:
    """Atomic feature-map writes."""

    def test_write_and_overwrite(self, tmp_path):
        path = tmp_path / "out" / "a.npy"
        save_feature_map(np.ones((3, 3, 2)), path)
        save_feature_map(np.zeros((3, 3, 2)), path)
        saved = np.load(path)
        assert saved.dtype == np.float32
        assert not saved.any()
        assert [p.name for p in path.parent.iterdir()] == ["a.npy"]

    def test_failed_write_leaves_nothing(self, tmp_path, monkeypatch):
        def broken_save(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(np, "save", broken_save)
        with pytest.raises(OSError, match="disk full"):
            save_feature_map(np.ones((2, 2, 1)), tmp_path / "a.npy")
        assert list(tmp_path.iterdir()) == []


class TestImageLists:
    """Directory listing and image lists."""

    def test_list_images_sorted(self, tmp_path):
        for name in ("b.npy", "a.png", "notes.txt", "c.tif"):
            (tmp_path / name).write_bytes(b"")
        assert [p.name for p in list_images(tmp_path)] == ["a.png", "b.npy", "c.tif"]

    def test_image_list_order(self, tmp_path):
        for name in ("a.npy", "b.npy"):
            (tmp_path / name).write_bytes(b"")
        listing = tmp_path / "list.csv"
        listing.write_text("b.npy,1\n\na.npy,2\n")
        assert read_image_list(listing) == ["b.npy", "a.npy"]
        assert [p.name for p in list_images(tmp_path, listing)] == ["b.npy", "a.npy"]

    def test_listed_image_missing(self, tmp_path):
        listing = tmp_path / "list.txt"
        listing.write_text("ghost.png\n")
        with pytest.raises(FileNotFoundError):
            list_images(tmp_path, listing)

    def test_empty_directory(self, tmp_path):
        with pytest.raises(DataError):
            list_images(tmp_path)

    def test_marker_set_survives_file(self, tmp_path):
        markers = MarkerSet(np.array([[0, 0, 1]]), np.array([3]))
        save_markers(markers, tmp_path / "v-seeds.txt", (2, 4, 4))
        assert load_markers(tmp_path / "v-seeds.txt").coords.tolist() == [[0, 0, 1]]
