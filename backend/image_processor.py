"""
Image Processor - capture checks and preview handling for KYC evidence files.
Validates uploads, builds data-URL previews, rotates captures and prepares
images for OCR.
"""

import io
import base64
import time
from typing import Optional, Tuple

from PIL import Image

from config.document_schema import UploadedFile


PDF_MIME_TYPE = "application/pdf"

# Size limits
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB
TARGET_SIZE = 1536  # Target size for OCR (higher for better text clarity)


class ImageProcessingError(Exception):
    """Raised when a capture cannot be accepted or processed."""

    code = "FILE_LOAD_ERROR"
    suggestion = "Please try uploading the file again"
    recoverable = True

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if suggestion:
            self.suggestion = suggestion


class FileTooLarge(ImageProcessingError):
    code = "FILE_TOO_LARGE"


class InvalidFileType(ImageProcessingError):
    code = "INVALID_FILE_TYPE"
    suggestion = "Please upload an image (PNG, JPG, WebP) or PDF file"


def validate_capture_file(
    file: UploadedFile,
    max_size: int = MAX_FILE_SIZE_BYTES,
    allow_pdf: bool = True,
) -> None:
    """
    Check an uploaded capture before it is stored.

    Raises:
        FileTooLarge: file exceeds max_size
        InvalidFileType: not image/* (or application/pdf when allowed)
    """
    if file.size > max_size:
        size_mb = max_size / (1024 * 1024)
        raise FileTooLarge(
            "File is too large",
            suggestion=f"Please upload a file smaller than {size_mb:.0f}MB",
        )

    content_type = (file.content_type or "").lower()
    if content_type.startswith("image/"):
        return
    if allow_pdf and content_type == PDF_MIME_TYPE:
        return
    if allow_pdf:
        raise InvalidFileType("Invalid file type")
    raise InvalidFileType("Invalid file type", suggestion="Please upload an image file")


def to_data_url(data: bytes, content_type: str) -> str:
    """Encode raw bytes as a data URL preview."""
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{content_type};base64,{encoded}"


def from_data_url(data_url: str) -> Tuple[bytes, str]:
    """Decode a data URL into (bytes, content_type)."""
    content_type = "application/octet-stream"
    payload = data_url
    if data_url.startswith("data:") and "," in data_url:
        header, payload = data_url.split(",", 1)
        content_type = header[5:].split(";")[0] or content_type
    try:
        return base64.b64decode(payload), content_type
    except Exception as e:
        raise ImageProcessingError(f"Invalid preview data: {str(e)}")


def load_image(file_bytes: bytes) -> Image.Image:
    """Load image from bytes, handling various formats."""
    try:
        image = Image.open(io.BytesIO(file_bytes))
        # Convert to RGB if necessary (handles RGBA, P mode, etc.)
        if image.mode in ('RGBA', 'P', 'LA'):
            # White background for transparency
            background = Image.new('RGB', image.size, (255, 255, 255))
            if image.mode == 'P':
                image = image.convert('RGBA')
            background.paste(image, mask=image.split()[-1] if 'A' in image.mode else None)
            image = background
        elif image.mode != 'RGB':
            image = image.convert('RGB')
        return image
    except Exception as e:
        raise ImageProcessingError(f"Failed to load image: {str(e)}")


def encode_jpeg(image: Image.Image, quality: int = 92) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='JPEG', quality=quality, optimize=True)
    return buffer.getvalue()


def build_preview(file: UploadedFile) -> str:
    """
    Decode a capture into its preview.
    Images must be decodable; PDFs are kept as-is.
    """
    if file.content_type.lower() != PDF_MIME_TYPE:
        load_image(file.data)
    return to_data_url(file.data, file.content_type)


def rotate_preview(data_url: str, degrees: int = 90) -> str:
    """Rotate a preview clockwise and re-encode it as JPEG."""
    data, content_type = from_data_url(data_url)
    if content_type == PDF_MIME_TYPE:
        raise ImageProcessingError("PDF documents cannot be rotated")

    image = load_image(data)
    # PIL rotates counter-clockwise
    rotated = image.rotate(-degrees, expand=True)
    return to_data_url(encode_jpeg(rotated), "image/jpeg")


def data_url_to_file(data_url: str, filename: str) -> UploadedFile:
    data, content_type = from_data_url(data_url)
    return UploadedFile(filename=filename, content_type=content_type, data=data)


def capture_filename(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}.jpg"


def resize_for_analysis(image: Image.Image, max_size: int = TARGET_SIZE) -> Image.Image:
    """
    Resize image for OCR while maintaining aspect ratio.

    Args:
        image: PIL Image object
        max_size: Maximum dimension (width or height)

    Returns:
        Resized image
    """
    width, height = image.size

    if width <= max_size and height <= max_size:
        return image

    if width > height:
        new_width = max_size
        new_height = int(height * (max_size / width))
    else:
        new_height = max_size
        new_width = int(width * (max_size / height))

    return image.resize((new_width, new_height), Image.Resampling.LANCZOS)


def prepare_for_ocr(file_bytes: bytes, content_type: str) -> Tuple[bytes, str]:
    """
    Downscale an image capture for the OCR model.
    PDFs are passed through untouched.
    """
    if content_type.lower() == PDF_MIME_TYPE:
        return file_bytes, content_type
    image = resize_for_analysis(load_image(file_bytes))
    return encode_jpeg(image), "image/jpeg"
