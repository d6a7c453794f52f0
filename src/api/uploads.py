"""
Streaming Upload Parsing

Reads the multipart body of an upload request chunk by chunk, so limits are
enforced while the body arrives:
- the `image` part is checked against the MIME allow-list as soon as its
  headers are parsed, before any of its bytes are kept
- the image bytes are held in memory only up to the size ceiling
- the whole body is capped at the ceiling plus a small form overhead

A rejected upload is never spooled to disk.
"""

from typing import Dict, Optional

from fastapi import Request
from pydantic import BaseModel
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.core.metrics import record_upload_rejection

IMAGE_FIELD = "image"
FORMAT_FIELD = "outputFormat"

# Room for boundaries, part headers and the outputFormat field
FORM_OVERHEAD_BYTES = 64 * 1024
MAX_FIELD_BYTES = 1024

UPLOAD_FORM_SCHEMA = {
    "requestBody": {
        "required": True,
        "content": {
            "multipart/form-data": {
                "schema": {
                    "type": "object",
                    "required": [IMAGE_FIELD],
                    "properties": {
                        IMAGE_FIELD: {
                            "type": "string",
                            "format": "binary",
                            "description": "JPG, PNG or WEBP image"
                        },
                        FORMAT_FIELD: {
                            "type": "string",
                            "description": "png | jpeg | jpg | webp (default png)"
                        }
                    }
                }
            }
        }
    }
}


class ReceivedUpload(BaseModel):
    """An accepted upload, still in memory."""
    filename: Optional[str] = None
    content_type: str
    data: bytes
    output_format: Optional[str] = None


def reject(message: str, reason: str) -> ValidationError:
    record_upload_rejection(reason)
    return ValidationError(message, reason=reason)


def too_large() -> ValidationError:
    return reject(
        f"File too large. Maximum size is {settings.max_upload_size_mb:g} MB.",
        reason="size"
    )


def normalize_content_type(value: Optional[str]) -> str:
    return (value or "").split(";")[0].strip().lower()


class UploadStreamParser:
    """
    Incremental parser for the upload form.

    Feed body chunks to `write`; the first violation found is raised from
    `write` and nothing after it is buffered.
    """

    def __init__(self, boundary: bytes, max_file_size: int):
        self.max_file_size = max_file_size
        self.image_parts = 0
        self.filename: Optional[str] = None
        self.content_type: Optional[str] = None
        self.image = bytearray()
        self.output_format: Optional[str] = None
        self.complete = False

        self._part_name: Optional[str] = None
        self._headers: Dict[bytes, bytes] = {}
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._field_value = bytearray()
        self._error: Optional[ValidationError] = None

        self._parser = MultipartParser(boundary, callbacks={
            "on_part_begin": self._on_part_begin,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_end": self._on_end,
        })

    def write(self, chunk: bytes):
        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise reject("Malformed multipart body.", reason="malformed") from e

        if self._error is not None:
            raise self._error

    def result(self) -> ReceivedUpload:
        """Check the finished form and return the accepted upload."""
        if not self.complete:
            raise reject("Malformed multipart body.", reason="malformed")
        if self.image_parts == 0:
            raise reject("No image was provided for processing.", reason="missing")
        if not self.image:
            raise reject("The uploaded image is empty.", reason="empty")

        return ReceivedUpload(
            filename=self.filename,
            content_type=self.content_type,
            data=bytes(self.image),
            output_format=self.output_format,
        )

    def _fail(self, error: ValidationError):
        if self._error is None:
            self._error = error

    # -------------------------------------------------------------------------
    # python-multipart callbacks
    # -------------------------------------------------------------------------

    def _on_part_begin(self):
        self._part_name = None
        self._headers = {}
        self._field_value = bytearray()

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_field.extend(data[start:end])

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value.extend(data[start:end])

    def _on_header_end(self):
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field = bytearray()
        self._header_value = bytearray()

    def _on_headers_finished(self):
        _, options = parse_options_header(self._headers.get(b"content-disposition"))
        # Header bytes travel as latin-1; storage re-decodes UTF-8 filenames
        self._part_name = options.get(b"name", b"").decode("latin-1")

        if self._part_name != IMAGE_FIELD or self._error is not None:
            return

        self.image_parts += 1
        if self.image_parts > 1:
            self._fail(reject("Only one image can be processed per request.", reason="multiple"))
            return

        self.filename = options.get(b"filename", b"").decode("latin-1") or None
        self.content_type = self._headers.get(b"content-type", b"").decode("latin-1").strip()
        if normalize_content_type(self.content_type) not in settings.allowed_mime_types:
            self._fail(reject(
                "Unsupported file type. Only JPG, PNG and WEBP images are allowed.",
                reason="mime_type"
            ))

    def _on_part_data(self, data: bytes, start: int, end: int):
        if self._error is not None:
            return

        if self._part_name == IMAGE_FIELD:
            if len(self.image) + (end - start) > self.max_file_size:
                self._fail(too_large())
                return
            self.image.extend(data[start:end])
        elif self._part_name == FORMAT_FIELD:
            # Longer values cannot name a format anyway
            room = MAX_FIELD_BYTES - len(self._field_value)
            if room > 0:
                self._field_value.extend(data[start:min(end, start + room)])

    def _on_part_end(self):
        if self._part_name == FORMAT_FIELD and self._error is None:
            self.output_format = bytes(self._field_value).decode("utf-8", "replace")

    def _on_end(self):
        self.complete = True


async def read_upload_form(request: Request) -> ReceivedUpload:
    """
    Stream and validate the upload form of a request.

    Raises:
        ValidationError: Missing, duplicate, empty, oversized or disallowed
            image, or a malformed body
    """
    limit = settings.MAX_UPLOAD_SIZE_BYTES
    body_limit = limit + FORM_OVERHEAD_BYTES

    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > body_limit:
        raise too_large()

    media_type, options = parse_options_header(request.headers.get("content-type"))
    boundary = options.get(b"boundary")
    if media_type.strip().lower() != b"multipart/form-data" or not boundary:
        raise reject("No image was provided for processing.", reason="missing")

    parser = UploadStreamParser(boundary, max_file_size=limit)
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > body_limit:
            raise too_large()
        parser.write(chunk)

    return parser.result()
