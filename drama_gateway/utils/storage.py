"""
本地存储模块
Saves generated assets under a local directory served at ``base_url`` and
prepares image inputs (local ``/static/...`` paths or remote URLs) as bytes.
"""

import base64
import io
import time
from pathlib import Path
from typing import Optional

import requests
from loguru import logger
from PIL import Image, UnidentifiedImageError

from drama_gateway.utils.config_loader import config_loader


class StorageError(Exception):
    """Raised when an asset cannot be read or written."""


class LocalStorage:
    """本地文件存储"""

    def __init__(self, base_path: str = None, base_url: str = None, timeout: int = 60):
        if base_path is None:
            base_path = config_loader.get("storage.local_path", "./data/storage")
        if base_url is None:
            base_url = config_loader.get("storage.base_url", "/static")
        self.base_path = Path(base_path)
        if not self.base_path.is_absolute():
            self.base_path = config_loader.root_path / self.base_path
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def save(self, data: bytes, filename: str, category: str) -> str:
        """保存文件并返回可访问的URL"""
        directory = self.base_path / category
        directory.mkdir(parents=True, exist_ok=True)

        timestamp = time.strftime("%Y%m%d_%H%M%S")
        new_filename = f"{timestamp}_{filename}"
        try:
            with open(directory / new_filename, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"failed to save file: {e}") from e

        url = f"{self.base_url}/{category}/{new_filename}"
        logger.info(f"文件已保存: {url}")
        return url

    def save_data_uri(self, data_uri: str, filename_stem: str, category: str) -> str:
        """Decode a ``data:`` URI and store it, picking the extension from its MIME type."""
        header, _, payload = data_uri.partition(",")
        if not header.startswith("data:") or ";base64" not in header:
            raise StorageError("unsupported data URI")
        mime_type = header[5:].split(";")[0] or "image/png"
        ext = mime_type.split("/")[-1].replace("jpeg", "jpg")
        try:
            data = base64.b64decode(payload)
        except ValueError as e:
            raise StorageError(f"invalid base64 payload: {e}") from e
        return self.save(data, f"{filename_stem}.{ext}", category)

    def local_path_for(self, url: str) -> Optional[Path]:
        """Map a URL served from local storage back to its file path."""
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return None
        relative = url[len(prefix):]
        path = (self.base_path / relative).resolve()
        # Refuse paths that escape the storage root
        if self.base_path.resolve() not in path.parents:
            return None
        return path

    def read_local(self, url: str) -> Optional[bytes]:
        path = self.local_path_for(url)
        if path is None:
            return None
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Failed to open local file from URL {url} ({path}): {e}")
            return None

    def fetch_remote(self, url: str) -> bytes:
        if url.startswith("//"):
            url = f"https:{url}"
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise StorageError(f"failed to fetch image: {e}") from e
        if response.status_code != 200:
            raise StorageError(f"failed to fetch image, status: {response.status_code}")
        return response.content

    def load_image(self, url: str) -> bytes:
        """
        读取图片字节

        Local ``/static/...`` URLs are read from disk first; anything that is not
        found there must be an absolute http(s) URL and is downloaded.
        """
        data = None
        if url.startswith("/") and not url.startswith("//"):
            data = self.read_local(url)
        if data is not None:
            return data

        if not url.startswith("http") and not url.startswith("//"):
            raise StorageError(f"invalid image URL: {url}")
        return self.fetch_remote(url)

    @staticmethod
    def detect_mime_type(data: bytes) -> str:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return Image.MIME.get(img.format, "application/octet-stream")
        except UnidentifiedImageError:
            return "application/octet-stream"

    @classmethod
    def to_data_uri(cls, data: bytes) -> str:
        mime_type = cls.detect_mime_type(data)
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"
