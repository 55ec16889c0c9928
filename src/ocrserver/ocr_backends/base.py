# ocrserver/ocr_backends/base.py
from typing import List
from abc import ABC, abstractmethod

from PIL import Image

from ..models import Word


class BaseOCREngine(ABC):
    @abstractmethod
    def render_searchable_page(self, image: Image.Image) -> bytes:
        """Return a one-page PDF holding the image under an invisible, registered text layer."""
        pass

    @abstractmethod
    def read_words(self, image: Image.Image) -> List[Word]:
        """Return recognized words with pixel bounding boxes on `image`."""
        pass
