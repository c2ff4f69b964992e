import os
from abc import ABC, abstractmethod

from app.core.config import settings


class Storage(ABC):
    @abstractmethod
    def save_generation_image(self, generation_id: str, content: bytes, ext: str = "png") -> str:
        """Save a generated image; returns its path or URL."""
        raise NotImplementedError


class LocalStorage(Storage):
    def __init__(self, base_path: str | None = None) -> None:
        self.base_path = base_path or settings.storage_base_path

    def save_generation_image(self, generation_id: str, content: bytes, ext: str = "png") -> str:
        if not content:
            raise ValueError("empty image content")
        directory = os.path.join(self.base_path, "generations")
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"{generation_id}.{ext}")
        with open(path, "wb") as f:
            f.write(content)
        return path
