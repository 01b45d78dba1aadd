"""
Filename validation for audio uploads.

Filenames become part of an object key (``originals/{user}/{upload}/{filename}``),
so they are reduced to a single safe path segment before use, and only audio
extensions are accepted.
"""

import re

from pathlib import Path

from beatmarket.core.errors import ValidationError


# Filesystem and S3-friendly maximum segment length
MAX_FILENAME_LENGTH = 255


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename for use as one object key segment.

    - Strips any directory components (prevents ``../`` traversal)
    - Removes control and shell-special characters
    - Replaces whitespace with underscores
    - Lowercases the extension and preserves it
    - Truncates to 255 characters

    Example:
        >>> sanitize_filename("../../my beat (final).WAV")
        'my_beat_final.wav'
    """
    if not filename:
        return "unnamed_file"

    path = Path(filename.replace("\\", "/"))
    filename = path.name
    if not filename:
        return "unnamed_file"

    extension = path.suffix.lower()
    name = path.stem

    # Handle names that are only an extension (".wav")
    if not name and extension:
        name = extension[1:]
        extension = ""

    name = re.sub(r"[\x00-\x1f\x7f]", "", name)
    name = re.sub(r'[<>:"/\\|?*()]', "", name)
    name = re.sub(r"\.\.+", ".", name)
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"[^\w\-.]", "", name)
    name = re.sub(r"_+", "_", name)
    name = re.sub(r"-+", "-", name)
    name = name.strip("_-.")

    if not name:
        name = "unnamed_file"

    sanitized = f"{name}{extension}"
    if len(sanitized) > MAX_FILENAME_LENGTH:
        sanitized = f"{name[: MAX_FILENAME_LENGTH - len(extension)]}{extension}"

    return sanitized


def validate_audio_filename(filename: str | None, allowed_extensions: list[str]) -> str:
    """
    Validate and sanitize an uploaded audio filename.

    Args:
        filename: Filename supplied by the client.
        allowed_extensions: Lowercase extensions including the dot.

    Returns:
        str: The sanitized filename.

    Raises:
        ValidationError: If the filename is blank or not an allowed audio type.
    """
    if filename is None or not filename.strip():
        raise ValidationError("Title and filename are required", field="filename")

    sanitized = sanitize_filename(filename.strip())
    extension = Path(sanitized).suffix.lower()

    if extension not in allowed_extensions:
        raise ValidationError(
            f"File type '{extension or 'none'}' is not supported. "
            f"Allowed audio types: {', '.join(sorted(allowed_extensions))}",
            field="filename",
        )

    return sanitized
