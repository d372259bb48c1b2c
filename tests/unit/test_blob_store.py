"""
Unit tests for the blob store and image helpers.
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import create_test_image, image_bytes
from ghoststudio.collaborators.blob_store import (
    InMemoryBlobStore,
    LocalBlobStore,
    create_blob_store,
    parse_ref,
)
from ghoststudio.config import StorageSettings
from ghoststudio.errors import ErrorCode, GhostPipelineError
from ghoststudio.utils.images import load_image_source, measure_render_metadata, sniff_mime


class TestBlobStore:
    """Test session-keyed, immutable blob storage."""

    def test_put_get_roundtrip(self, sample_image_bytes):
        store = InMemoryBlobStore()
        ref = store.put(sample_image_bytes, "ghost_1", name="flatlay", mime_type="image/png")

        assert ref.startswith("blob://ghost_1/flatlay-")
        assert ref.endswith(".png")
        assert store.get(ref) == sample_image_bytes
        assert store.mime_type(ref) == "image/png"

    def test_same_content_same_ref(self, sample_image_bytes):
        store = InMemoryBlobStore()
        first = store.put(sample_image_bytes, "ghost_1")
        second = store.put(sample_image_bytes, "ghost_1")

        assert first == second
        assert len(store) == 1

    def test_changed_content_new_key(self):
        store = InMemoryBlobStore()
        a = store.put(b"first", "ghost_1", name="render1")
        b = store.put(b"second", "ghost_1", name="render1")

        assert a != b
        assert store.get(a) == b"first"

    def test_sessions_are_separate(self):
        store = InMemoryBlobStore()
        assert store.put(b"x", "ghost_1") != store.put(b"x", "ghost_2")

    def test_rejects_bad_input(self):
        store = InMemoryBlobStore()
        with pytest.raises(GhostPipelineError):
            store.put(b"", "ghost_1")
        with pytest.raises(GhostPipelineError):
            store.put(b"x", "../escape")
        with pytest.raises(GhostPipelineError):
            store.get("blob://ghost_1/missing.bin")

    def test_parse_ref(self):
        assert parse_ref("blob://ghost_1/abc.png") == ("ghost_1", "abc.png")
        for bad in ("file:///tmp/x", "blob://ghost_1", "blob://ghost_1/../x"):
            with pytest.raises(GhostPipelineError):
                parse_ref(bad)

    def test_local_store(self, temp_dir, sample_image_bytes):
        store = LocalBlobStore(temp_dir)
        ref = store.put(sample_image_bytes, "ghost_1", mime_type="image/png")

        path = store.path_for(ref)
        assert path.parent == temp_dir / "ghost_1"
        assert path.read_bytes() == sample_image_bytes
        assert LocalBlobStore(temp_dir).get(ref) == sample_image_bytes

    def test_factory(self, temp_dir):
        assert isinstance(create_blob_store(StorageSettings(backend="memory")), InMemoryBlobStore)
        assert isinstance(create_blob_store(StorageSettings(backend="local", root=str(temp_dir))), LocalBlobStore)
        with pytest.raises(GhostPipelineError) as exc:
            create_blob_store(StorageSettings(backend="ftp"))
        assert exc.value.code is ErrorCode.CLIENT_MISCONFIGURED


class TestImageSources:
    """Test load_image_source across source forms."""

    def test_bytes(self, sample_image_bytes):
        data, mime = load_image_source(sample_image_bytes)
        assert data == sample_image_bytes
        assert mime == "image/png"

    def test_path(self, temp_dir, sample_image):
        path = temp_dir / "flatlay.jpg"
        sample_image.save(path)

        data, mime = load_image_source(path)

        assert mime == "image/jpeg"
        assert load_image_source(str(path))[0] == data

    def test_data_uri(self, sample_image_bytes):
        uri = "data:image/png;base64," + base64.b64encode(sample_image_bytes).decode()
        assert load_image_source(uri) == (sample_image_bytes, "image/png")

    @patch("ghoststudio.utils.images.requests.get")
    def test_url(self, mock_get, sample_image_bytes):
        mock_get.return_value = MagicMock(content=sample_image_bytes)

        data, mime = load_image_source("https://cdn.example.com/shirt.png")

        assert data == sample_image_bytes
        assert mock_get.call_args.kwargs["timeout"] == 30

    @patch("ghoststudio.utils.images.requests.get")
    def test_url_failure(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("offline")

        with pytest.raises(GhostPipelineError) as exc:
            load_image_source("https://cdn.example.com/shirt.png")
        assert exc.value.code is ErrorCode.MISSING_FLATLAY

    def test_missing_file(self, temp_dir):
        with pytest.raises(GhostPipelineError) as exc:
            load_image_source(temp_dir / "nope.png")
        assert exc.value.code is ErrorCode.MISSING_FLATLAY

    def test_not_an_image(self):
        with pytest.raises(GhostPipelineError):
            sniff_mime(b"definitely not an image")


class TestMeasureRenderMetadata:
    """Test local pixel probing of renders."""

    def test_white_background(self):
        img = create_test_image(200, 100, (255, 255, 255))
        img.paste((20, 40, 160), (60, 20, 140, 80))

        meta = measure_render_metadata(image_bytes(img))

        assert meta["width"] == 200
        assert meta["height"] == 100
        assert meta["background_hex"] == "#FFFFFF"
        assert meta["background_purity"] == 1.0

    def test_gray_background(self):
        meta = measure_render_metadata(image_bytes(create_test_image(64, 64, (200, 200, 200))))

        assert meta["background_hex"] == "#C8C8C8"
        assert meta["background_purity"] < 0.5
