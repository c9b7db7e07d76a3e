EVENT_CATEGORIES = [
    "Technical",
    "Non-Technical",
    "Administrative",
    "Spiritual",
]

DEFAULT_CATEGORY = "Technical"

DEFAULT_ID_PREFIX = "SOU"

# Batch lifecycle, driven only by the batch generator
BATCH_PENDING = "pending"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"

BATCH_STATUSES = (BATCH_PENDING, BATCH_PROCESSING, BATCH_COMPLETED, BATCH_FAILED)

SURFACE_PDF = "pdf"
SURFACE_IMAGE = "image"

PARTICIPANT_NAME_MAX = 255
PARTICIPANT_EMAIL_MAX = 255
CERTIFICATE_ID_MAX = 50
