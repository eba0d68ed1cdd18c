"""Image intake: validate, encode and hold the images of one chat session."""
import base64
import logging
import mimetypes
import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MAX_IMAGES = 4
MAX_IMAGE_BYTES = 10 * 1024 * 1024
SUPPORTED_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"

    def to_dict(self) -> dict:
        return {"title": self.title, "description": self.description, "variant": self.variant}


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class CandidateFile:
    """A file picked by the user, not yet validated."""

    def __init__(self, name: str, mime_type: str, size: int, reader: Callable[[], bytes]):
        self.name = name
        self.mime_type = mime_type or ""
        self.size = size
        self._reader = reader

    @classmethod
    def from_bytes(cls, name: str, mime_type: str, data: bytes) -> "CandidateFile":
        return cls(name, mime_type, len(data), lambda: data)

    @classmethod
    def from_path(cls, path: str) -> "CandidateFile":
        mime_type, _ = mimetypes.guess_type(path)
        size = os.path.getsize(path)

        def read() -> bytes:
            with open(path, "rb") as handle:
                return handle.read()

        return cls(os.path.basename(path), mime_type or "", size, read)

    @classmethod
    def from_storage(cls, storage) -> "CandidateFile":
        """Wrap an uploaded werkzeug ``FileStorage``."""
        data = storage.read()
        return cls.from_bytes(storage.filename or "upload", storage.mimetype or "", data)

    def read(self) -> bytes:
        return self._reader()

    def __repr__(self):
        return f"CandidateFile({self.name!r}, {self.mime_type!r}, size={self.size})"


@dataclass(frozen=True)
class UploadedImage:
    id: str
    file: CandidateFile
    url: str
    name: str

    @property
    def size(self) -> int:
        return self.file.size

    def to_dict(self, include_url: bool = True) -> dict:
        data = {"id": self.id, "name": self.name, "size": self.size}
        if include_url:
            data["url"] = self.url
        return data


@dataclass
class IntakeResult:
    accepted: List[UploadedImage] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_file(candidate: CandidateFile) -> Optional[str]:
    if not candidate.mime_type.startswith("image/"):
        return f"{candidate.name} is not a valid image file"

    if candidate.size > MAX_IMAGE_BYTES:
        size_mb = candidate.size / 1024 / 1024
        return f"{candidate.name} is too large ({size_mb:.1f}MB). Maximum size is 10MB"

    if candidate.mime_type not in SUPPORTED_TYPES:
        return f"{candidate.name} format not supported. Please use JPG, PNG, GIF, or WebP"

    return None


def encode_data_url(candidate: CandidateFile) -> str:
    payload = base64.b64encode(candidate.read()).decode("ascii")
    return f"data:{candidate.mime_type};base64,{payload}"


class ImageIntake:
    """The active image set for one session.

    A batch is accepted whole or not at all: a batch larger than the free
    capacity, or one containing a single bad file, leaves the set untouched.
    Mutations hold a lock, so concurrent uploads cannot overshoot the cap.
    """

    def __init__(self, notify: Optional[Callable[[Notification], None]] = None, max_images: int = MAX_IMAGES):
        self.max_images = max_images
        self.error: Optional[str] = None
        self._images: List[UploadedImage] = []
        self._notify = notify or (lambda notification: None)
        self._lock = threading.Lock()

    @property
    def images(self) -> Tuple[UploadedImage, ...]:
        return tuple(self._images)

    @property
    def remaining(self) -> int:
        return self.max_images - len(self._images)

    @property
    def is_full(self) -> bool:
        return self.remaining <= 0

    @property
    def total_size(self) -> int:
        return sum(image.size for image in self._images)

    @property
    def total_size_mb(self) -> str:
        return f"{self.total_size / 1024 / 1024:.1f}"

    @property
    def status_line(self) -> str:
        return f"{len(self._images)} of {self.max_images} images uploaded"

    def submit(self, candidates: Sequence[CandidateFile]) -> IntakeResult:
        with self._lock:
            return self._submit(list(candidates))

    def _submit(self, candidates: List[CandidateFile]) -> IntakeResult:
        self.error = None
        if not candidates:
            return IntakeResult()

        remaining = self.remaining
        if len(candidates) > remaining:
            self.error = f"Can only upload {_plural(remaining, 'more image')}"
            logger.info("Rejected batch of %d: %s", len(candidates), self.error)
            return IntakeResult(errors=[self.error])

        accepted: List[UploadedImage] = []
        errors: List[str] = []
        for candidate in candidates:
            problem = validate_file(candidate)
            if problem:
                errors.append(problem)
                continue
            try:
                url = encode_data_url(candidate)
            except OSError as exc:
                logger.warning("Failed to read %s: %s", candidate.name, exc)
                errors.append(f"Failed to process {candidate.name}")
                continue
            accepted.append(UploadedImage(id=uuid.uuid4().hex, file=candidate, url=url, name=candidate.name))

        if errors:
            self.error = errors[0]
            logger.info("Rejected batch of %d: %s", len(candidates), "; ".join(errors))
            self._notify(Notification(
                "Upload Error",
                f"{_plural(len(errors), 'file')} could not be uploaded",
                "destructive",
            ))
            return IntakeResult(errors=errors)

        self._images.extend(accepted)
        self._notify(Notification(
            "Upload Successful",
            f"{_plural(len(accepted), 'image')} uploaded successfully",
        ))
        return IntakeResult(accepted=accepted)

    def remove(self, image_id: str) -> None:
        with self._lock:
            self._images = [image for image in self._images if image.id != image_id]
            self.error = None
        self._notify(Notification("Image Removed", "Image has been removed from upload"))

    def clear(self) -> None:
        with self._lock:
            self._images = []
            self.error = None
        self._notify(Notification("Images Cleared", "All images have been removed"))

    def get(self, image_id: str) -> Optional[UploadedImage]:
        return next((image for image in self._images if image.id == image_id), None)

    def to_dict(self) -> dict:
        # Data URLs stay server-side; the browser loads thumbnails by id.
        return {
            "images": [image.to_dict(include_url=False) for image in self._images],
            "count": len(self._images),
            "max_images": self.max_images,
            "total_size": self.total_size,
            "total_size_mb": self.total_size_mb,
            "status": self.status_line,
            "error": self.error,
        }
