"""
Image source: registered images and their cached base64 data URIs
"""
import io
import base64
from pathlib import Path
from typing import Dict, List, Union
from PIL import Image


class ImageSource:
    """Keeps registered images in insertion order and encodes them on demand"""

    def __init__(self):
        self._images: Dict[str, bytes] = {}
        self._data_uris: Dict[str, str] = {}

    def add_image(self, image_id: str, source: Union[str, Path, bytes]) -> str:
        """Register image bytes or a file path under an id"""
        if isinstance(source, (str, Path)):
            source = Path(source).read_bytes()
        self._images[image_id] = bytes(source)
        self._data_uris.pop(image_id, None)
        return image_id

    def remove_image(self, image_id: str) -> bool:
        self._data_uris.pop(image_id, None)
        return self._images.pop(image_id, None) is not None

    def image_ids(self) -> List[str]:
        return list(self._images)

    def __contains__(self, image_id: str) -> bool:
        return image_id in self._images

    def get_data_uri(self, image_id: str) -> str:
        """Encode an image as a data URI, cached after the first computation

        Raises:
            KeyError: Unknown image id
        """
        if cached := self._data_uris.get(image_id):
            return cached
        if image_id not in self._images:
            raise KeyError(f"Image not found: {image_id}")

        content = self._images[image_id]
        data_uri = f"data:{self._mime_type(content)};base64,{base64.b64encode(content).decode('ascii')}"
        self._data_uris[image_id] = data_uri
        return data_uri

    @staticmethod
    def _mime_type(content: bytes) -> str:
        try:
            with Image.open(io.BytesIO(content)) as img:
                mime = Image.MIME.get(img.format or '')
        except Exception:
            mime = None
        return mime or 'application/octet-stream'
