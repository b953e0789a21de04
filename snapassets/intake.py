import logging
import mimetypes
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from .config import MAX_UPLOAD_BYTES, MAX_UPLOAD_FILES

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
)
SERVER_DECODED_TYPES = ("image/heic", "image/heif")

_EXTENSION_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}


class IntakeRejected(Exception):
    """Raised when a selection contains files that cannot be processed."""

    def __init__(self, messages: List[str]):
        self.messages = list(messages)
        super().__init__("; ".join(self.messages) or "No images selected.")


@dataclass
class SelectedImage:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def resolve_image_type(name: str, content_type: Optional[str]) -> str:
    """Declared content type, or a guess from the extension when the client sent none."""
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    lower = (name or "").lower()
    for ext, mime in _EXTENSION_TYPES.items():
        if lower.endswith(ext):
            return mime
    guessed, _ = mimetypes.guess_type(lower)
    return (guessed or declared or "").lower()


def needs_server_decoding(mime_type: str) -> bool:
    return (mime_type or "").lower() in SERVER_DECODED_TYPES


def _human_size(n: int) -> str:
    return f"{n / (1024 * 1024):.0f} MB"


class ImageIntake:
    """In-memory image selection with count, size and type limits.

    Nothing is uploaded here; rejected files never enter the selection.
    """

    def __init__(self, max_files: int = MAX_UPLOAD_FILES, max_bytes: int = MAX_UPLOAD_BYTES):
        self.max_files = max_files
        self.max_bytes = max_bytes
        self._files: List[SelectedImage] = []

    def __len__(self) -> int:
        return len(self._files)

    @property
    def files(self) -> List[SelectedImage]:
        return list(self._files)

    def check(self, image: SelectedImage) -> Optional[str]:
        mime = resolve_image_type(image.name, image.content_type)
        if mime not in SUPPORTED_IMAGE_TYPES:
            return f"{image.name}: unsupported file type {mime or 'unknown'}. Please use JPG, PNG, WEBP, or HEIC."
        if image.size == 0:
            return f"{image.name}: file is empty."
        if image.size > self.max_bytes:
            return f"{image.name}: file is larger than {_human_size(self.max_bytes)}."
        return None

    def add(self, images: Iterable[SelectedImage]) -> List[str]:
        """Append valid images in order; return a message per rejected file."""
        rejected: List[str] = []
        for image in images:
            problem = self.check(image)
            if problem is None and len(self._files) >= self.max_files:
                problem = f"{image.name}: at most {self.max_files} images can be processed at once."
            if problem:
                logger.debug("[intake]: rejected %s", problem)
                rejected.append(problem)
                continue
            self._files.append(replace(image, content_type=resolve_image_type(image.name, image.content_type)))
        return rejected

    def remove(self, index: int) -> SelectedImage:
        return self._files.pop(index)

    def clear(self) -> None:
        self._files.clear()


def validate_upload(
    images: List[SelectedImage],
    max_files: int = MAX_UPLOAD_FILES,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> List[SelectedImage]:
    """All-or-nothing server-side check used before a batch is started."""
    if not images:
        raise IntakeRejected(["No images selected."])
    intake = ImageIntake(max_files=max_files, max_bytes=max_bytes)
    rejected = intake.add(images)
    if rejected:
        raise IntakeRejected(rejected)
    return intake.files
