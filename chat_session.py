"""Chat transcript, query validation and the request to the analysis endpoint."""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

import requests

from image_intake import (
    MAX_IMAGE_BYTES,
    MAX_IMAGES,
    ImageIntake,
    Notification,
    UploadedImage,
)

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 500

USER = "user"
BOT = "bot"
ERROR = "error"


class AnalysisRequestError(Exception):
    """The analysis endpoint could not be reached or answered with an error."""


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ChatMessage:
    kind: str
    content: str
    images: Tuple[UploadedImage, ...] = ()
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.kind,
            "content": self.content,
            "images": [image.to_dict(include_url=False) for image in self.images],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SendResult:
    status: str
    error: Optional[str] = None
    message: Optional[ChatMessage] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def validate_query(text: str) -> Optional[str]:
    if not text or not text.strip():
        return "Please enter a question about your images"
    if len(text.strip()) < MIN_QUERY_LENGTH:
        return f"Query must be at least {MIN_QUERY_LENGTH} characters long"
    if len(text) > MAX_QUERY_LENGTH:
        return f"Query must be less than {MAX_QUERY_LENGTH} characters"
    return None


def validate_images(images: Sequence[UploadedImage]) -> Optional[str]:
    if not images:
        return "Please upload at least one image before asking a question"
    if len(images) > MAX_IMAGES:
        return f"Maximum {MAX_IMAGES} images allowed"

    oversized = [image for image in images if image.size > MAX_IMAGE_BYTES]
    if oversized:
        names = ", ".join(image.name for image in oversized)
        return f"Image(s) too large: {names}. Maximum size is 10MB per image."
    return None


def build_payload(query: str, images: Sequence[UploadedImage]) -> dict:
    return {
        "query": query,
        "images": [{"url": image.url, "name": image.name} for image in images],
    }


def _interpret(status: int, body) -> str:
    if not 200 <= status < 300:
        message = body.get("error") if isinstance(body, dict) else None
        raise AnalysisRequestError(message or "Failed to analyze images")
    if not isinstance(body, dict) or not isinstance(body.get("response"), str):
        raise AnalysisRequestError("Malformed response from analysis endpoint")
    return body["response"]


class HttpAnalysisTransport:
    """POSTs the query to a remote ``/analyze`` endpoint."""

    def __init__(self, url: str, timeout: Optional[float] = 60.0, http=None):
        self.url = url
        self.timeout = timeout
        self.http = http or requests

    def analyze(self, query: str, images: Sequence[UploadedImage]) -> str:
        try:
            response = self.http.post(self.url, json=build_payload(query, images), timeout=self.timeout)
        except requests.RequestException as exc:
            raise AnalysisRequestError(str(exc)) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        return _interpret(response.status_code, body)


class LocalAnalysisTransport:
    """Calls the endpoint handler in-process, with the same status handling."""

    def __init__(self, handler: Callable[[dict], Tuple[dict, int]]):
        self.handler = handler

    def analyze(self, query: str, images: Sequence[UploadedImage]) -> str:
        body, status = self.handler(build_payload(query, images))
        return _interpret(status, body)


class ChatSession:
    """Everything one user sees: images, transcript, draft query and toasts."""

    def __init__(self, transport=None):
        self.transport = transport
        self.notifications: List[Notification] = []
        self.intake = ImageIntake(notify=self.notifications.append)
        self.query = ""
        self.error: Optional[str] = None
        self.is_processing = False
        self._messages: List[ChatMessage] = []
        self._lock = threading.Lock()

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def notify(self, title: str, description: str, variant: str = "default") -> None:
        self.notifications.append(Notification(title, description, variant))

    def drain_notifications(self) -> List[Notification]:
        # The intake holds a bound append on this list, so empty it in place.
        drained = list(self.notifications)
        del self.notifications[:]
        return drained

    def _append(self, kind: str, content: str, images: Sequence[UploadedImage] = ()) -> ChatMessage:
        message = ChatMessage(kind=kind, content=content, images=tuple(images))
        self._messages.append(message)
        return message

    def send(self, query: Optional[str] = None, images: Optional[Sequence[UploadedImage]] = None,
             transport=None) -> SendResult:
        self.error = None
        if query is None:
            query = self.query
        else:
            self.query = query
        if images is None:
            images = self.intake.images
        images = tuple(images)

        problem = validate_query(query) or validate_images(images)
        if problem:
            self.error = problem
            return SendResult("invalid", error=problem)

        transport = transport or self.transport
        if transport is None:
            raise RuntimeError("ChatSession has no analysis transport configured")

        with self._lock:
            if self.is_processing:
                return SendResult("busy", error="A query is already being processed")
            self.is_processing = True

        try:
            self._append(USER, query, images)
            try:
                text = transport.analyze(query, images)
            except AnalysisRequestError as exc:
                logger.warning("Analysis request failed: %s", exc)
                message = self._append(ERROR, str(exc) or "An unexpected error occurred. Please try again.")
                self.notify("Analysis Failed", "There was an error processing your request", "destructive")
                return SendResult("failed", error=message.content, message=message)
            except Exception:
                logger.exception("Unexpected error from analysis transport")
                message = self._append(ERROR, "An unexpected error occurred. Please try again.")
                self.notify("Analysis Failed", "There was an error processing your request", "destructive")
                return SendResult("failed", error=message.content, message=message)

            message = self._append(BOT, text)
            self.query = ""
            self.notify("Analysis Complete", f"Successfully analyzed {len(images)} image{'s' if len(images) > 1 else ''}")
            return SendResult("ok", message=message)
        finally:
            self.is_processing = False

    def copy_message(self, message_id: str, writer: Callable[[str], None]) -> bool:
        """Copy a bot answer through ``writer``; failures only raise a toast."""
        message = next((m for m in self._messages if m.id == message_id), None)
        try:
            if message is None or message.kind != BOT:
                raise LookupError(f"no answer with id {message_id}")
            writer(message.content)
        except Exception as exc:
            logger.info("Copy failed: %s", exc)
            self.notify("Copy Failed", "Unable to copy to clipboard", "destructive")
            return False
        self.notify("Copied", "Response copied to clipboard")
        return True

    def reset(self) -> None:
        self._messages = []
        self.query = ""
        self.error = None

    def to_dict(self) -> dict:
        return {
            "images": self.intake.to_dict(),
            "messages": [message.to_dict() for message in self._messages],
            "query": self.query,
            "is_processing": self.is_processing,
            "error": self.error,
        }
