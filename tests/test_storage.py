"""Tests for local asset storage and image input preparation."""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from drama_gateway.utils.storage import LocalStorage, StorageError


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "storage"), base_url="/static/")


def test_save_and_read_back(storage, png_bytes):
    url = storage.save(png_bytes, "prop.png", "images")

    assert url.startswith("/static/images/")
    assert url.endswith("_prop.png")
    assert storage.read_local(url) == png_bytes
    assert storage.load_image(url) == png_bytes


def test_paths_outside_storage_are_refused(storage):
    assert storage.local_path_for("/static/../../etc/passwd") is None
    assert storage.local_path_for("/other/file.png") is None
    assert storage.read_local("/static/images/missing.png") is None


def test_data_uri_round_trip_uses_sniffed_mime(storage, png_bytes):
    data_uri = storage.to_data_uri(png_bytes)
    assert data_uri.startswith("data:image/png;base64,")

    url = storage.save_data_uri(data_uri, "generated", "images")
    assert url.endswith("_generated.png")


def test_unknown_bytes_fall_back_to_octet_stream():
    assert LocalStorage.detect_mime_type(b"not an image") == "application/octet-stream"


def test_save_data_uri_rejects_plain_text(storage):
    with pytest.raises(StorageError):
        storage.save_data_uri("data:text/plain,hello", "x", "images")


def test_remote_image_is_downloaded(storage, png_bytes):
    response = MagicMock(status_code=200, content=png_bytes)
    with patch("drama_gateway.utils.storage.requests.get", return_value=response) as mock_get:
        assert storage.load_image("//cdn.example.com/a.png") == png_bytes

    assert mock_get.call_args.args[0] == "https://cdn.example.com/a.png"


def test_remote_errors_raise_storage_error(storage):
    with patch("drama_gateway.utils.storage.requests.get", return_value=MagicMock(status_code=404)):
        with pytest.raises(StorageError, match="404"):
            storage.fetch_remote("https://cdn.example.com/missing.png")

    with patch("drama_gateway.utils.storage.requests.get",
               side_effect=requests.exceptions.ConnectionError("refused")):
        with pytest.raises(StorageError):
            storage.fetch_remote("https://cdn.example.com/a.png")


def test_missing_local_file_is_not_fetched_remotely(storage):
    with pytest.raises(StorageError, match="invalid image URL"):
        storage.load_image("/static/images/missing.png")


def test_base64_payload_is_decoded(storage, png_bytes):
    encoded = base64.b64encode(png_bytes).decode()
    url = storage.save_data_uri(f"data:image/jpeg;base64,{encoded}", "photo", "images")
    assert url.endswith("_photo.jpg")
