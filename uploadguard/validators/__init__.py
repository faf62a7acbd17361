from typing import Dict

from uploadguard.services.mime_sniffing import is_archive_media_type
from uploadguard.validators.archive import ArchiveValidator
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget
from uploadguard.validators.generic import GenericValidator
from uploadguard.validators.image import ImageValidator
from uploadguard.validators.pdf import PdfValidator

# Image formats with a structural walker; anything else under image/ is generic
IMAGE_MEDIA_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/bmp",
    "image/webp",
    "image/tiff",
    "image/x-icon",
})

_PDF = PdfValidator()
_IMAGE = ImageValidator()
_ARCHIVE = ArchiveValidator()
_GENERIC = GenericValidator()

VALIDATORS: Dict[str, BaseValidator] = {
    v.name: v for v in (_PDF, _IMAGE, _ARCHIVE, _GENERIC)
}


def select_validator(media_type: str) -> BaseValidator:
    """Fixed dispatch from sniffed media type to validator; Generic by default."""
    if media_type == "application/pdf":
        return _PDF
    if media_type in IMAGE_MEDIA_TYPES:
        return _IMAGE
    if is_archive_media_type(media_type):
        return _ARCHIVE
    return _GENERIC


__all__ = [
    "ArchiveValidator",
    "BaseValidator",
    "FindingCollector",
    "GenericValidator",
    "ImageValidator",
    "PdfValidator",
    "VALIDATORS",
    "ValidationBudget",
    "select_validator",
]
