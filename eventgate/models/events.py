"""
Inbound event models handed to the ingestion front door.
"""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Type discriminator for inbound events."""
    MESSAGE = "message"
    STATUS = "status"
    ERROR = "error"
    PAYMENT = "payment"


class InboundEvent(BaseModel):
    """
    Decoded external event.

    Attributes:
        event_type: Discriminator used for routing
        natural_id: Provider-assigned identifier, if the payload carries one
        source: Delivering system ("whatsapp", "stripe", ...)
        body: Decoded event body
    """
    model_config = ConfigDict(use_enum_values=True)

    event_type: EventType
    natural_id: Optional[str] = None
    source: str = "whatsapp"
    body: dict[str, Any] = Field(default_factory=dict)


class IngestStatus(str, Enum):
    """Outcome of a single ingestion."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"


class IngestResult(BaseModel):
    """Result returned by IngestionService.ingest()."""
    model_config = ConfigDict(use_enum_values=True)

    status: IngestStatus
    key: str
    job_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """Duplicates are terminal successes for the delivering source."""
        return self.status in (IngestStatus.ACCEPTED, IngestStatus.DUPLICATE)
