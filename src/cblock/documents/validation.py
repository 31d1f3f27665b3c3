"""Upload validation: file type/size and metadata bounds.

Runs before any content-store or ledger interaction, so a rejected upload
never touches the network or the local store.
"""

import math

from cblock.documents.models import DocumentMetadata, FileUpload
from cblock.errors import ValidationError

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "image/jpeg",
        "image/jpg",
        "image/png",
    }
)

MAX_FILE_SIZE = 10 * 1024 * 1024

MAX_PROJECT_NAME = 100
MAX_PROJECT_TYPE = 50
MAX_DESCRIPTION = 500
MAX_LOCATION = 100
MAX_ESTIMATED_CREDITS = 1_000_000


def validate_file(upload: FileUpload) -> None:
    if upload.mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            "Invalid file type. Please upload PDF, DOC, DOCX, TXT, JPG, or PNG files.",
            field="mime_type",
        )
    if upload.size > MAX_FILE_SIZE:
        raise ValidationError("File too large. Maximum size is 10MB.", field="file_size")
    if not upload.filename.strip():
        raise ValidationError("File must have a valid name", field="filename")


def validate_metadata(metadata: DocumentMetadata) -> None:
    name = metadata.project_name
    if not name or not name.strip():
        raise ValidationError("Project name is required", field="project_name")
    if len(name) > MAX_PROJECT_NAME:
        raise ValidationError(
            f"Project name must be {MAX_PROJECT_NAME} characters or less", field="project_name"
        )
    if len(metadata.project_type) > MAX_PROJECT_TYPE:
        raise ValidationError(
            f"Project type must be {MAX_PROJECT_TYPE} characters or less", field="project_type"
        )
    if len(metadata.description) > MAX_DESCRIPTION:
        raise ValidationError(
            f"Description must be {MAX_DESCRIPTION} characters or less", field="description"
        )
    if len(metadata.location) > MAX_LOCATION:
        raise ValidationError(
            f"Location must be {MAX_LOCATION} characters or less", field="location"
        )
    credits = metadata.estimated_credits
    if math.isnan(credits) or credits < 0 or credits > MAX_ESTIMATED_CREDITS:
        raise ValidationError(
            "Estimated credits must be a number between 0 and 1,000,000",
            field="estimated_credits",
        )
