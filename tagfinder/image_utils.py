"""Image byte utilities: hashing and format sniffing."""
import hashlib
from io import BytesIO
from PIL import Image, UnidentifiedImageError

# Pillow format name -> (file extension, content type)
SUPPORTED_FORMATS = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "WEBP": ("webp", "image/webp"),
    "GIF": ("gif", "image/gif"),
}


def compute_content_hash(data: bytes) -> str:
    """Compute SHA256 hash of image data (for idempotency)."""
    return hashlib.sha256(data).hexdigest()


def open_image_from_bytes(data: bytes) -> Image.Image:
    """
    Open PIL Image from bytes.

    Args:
        data: Image bytes

    Returns:
        PIL Image object

    Raises:
        ValueError: If image cannot be opened
    """
    try:
        return Image.open(BytesIO(data))
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Invalid image data: {str(e)}") from e


def sniff_image_format(data: bytes) -> tuple:
    """
    Detect the image format from its bytes.

    Returns:
        Tuple of (extension, content_type)

    Raises:
        ValueError: If the bytes are not a png, jpeg, webp or gif image
    """
    image = open_image_from_bytes(data)
    try:
        fmt = image.format
    finally:
        image.close()

    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt}")
    return SUPPORTED_FORMATS[fmt]
