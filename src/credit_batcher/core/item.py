"""
Work item model.

Represents a single file submitted for classification and the result it
produced.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple


class ItemStatus(str, Enum):
    """Status of a work item."""
    PENDING = "pending"           # Submitted, not yet started
    PROCESSING = "processing"     # Provider call in flight
    COMPLETED = "completed"       # Provider returned an output
    FAILED = "failed"             # Validation or provider failure


@dataclass
class WorkItem:
    """
    A single file submitted as part of a batch.

    Attributes:
        index: Position of the item in the submitted batch
        payload: Raw file bytes
        media_type: Declared media type of the payload
        filename: Original file name, if known
        status: Current processing status
        updated_at: Last status change
    """

    index: int
    payload: bytes
    media_type: str
    filename: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        """Validate and normalize after initialization."""
        if isinstance(self.status, str):
            self.status = ItemStatus(self.status)

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.payload)

    @property
    def label(self) -> str:
        """Name used in logs and messages."""
        return self.filename or f"item-{self.index}"

    def mark_processing(self) -> None:
        """Mark item as being processed."""
        self.status = ItemStatus.PROCESSING
        self.updated_at = datetime.utcnow()

    def mark_completed(self) -> None:
        """Mark item as completed."""
        self.status = ItemStatus.COMPLETED
        self.updated_at = datetime.utcnow()

    def mark_failed(self) -> None:
        """Mark item as failed."""
        self.status = ItemStatus.FAILED
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (payload omitted)."""
        return {
            "index": self.index,
            "filename": self.filename,
            "media_type": self.media_type,
            "size": self.size,
            "status": self.status.value,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ItemResult:
    """
    Outcome of processing one work item.

    Exactly one of ``output`` and ``error`` is set.
    """

    index: int
    success: bool
    output: Optional[Any] = None
    error: Optional[Exception] = None
    filename: Optional[str] = None

    @classmethod
    def succeeded(cls, item: WorkItem, output: Any) -> "ItemResult":
        return cls(index=item.index, success=True, output=output, filename=item.filename)

    @classmethod
    def failed(cls, item: WorkItem, error: Exception) -> "ItemResult":
        return cls(index=item.index, success=False, error=error, filename=item.filename)

    @property
    def error_kind(self) -> Optional[str]:
        """Taxonomy class of the error, if any."""
        if self.error is None:
            return None
        kind = getattr(self.error, "kind", None)
        if kind is None:
            return "unknown"
        return kind.value if isinstance(kind, Enum) else str(kind)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def to_dict(self) -> dict:
        data = {
            "index": self.index,
            "filename": self.filename,
            "success": self.success,
        }
        if self.success:
            data["output"] = self.output
        else:
            data["error"] = {
                "kind": self.error_kind,
                "message": self.error_message,
            }
        return data


def build_items(files: Iterable[Tuple[bytes, str, Optional[str]]]) -> List[WorkItem]:
    """
    Create work items indexed by position.

    Args:
        files: (payload, media_type, filename) tuples in submission order
    """
    return [
        WorkItem(index=i, payload=payload, media_type=media_type, filename=filename)
        for i, (payload, media_type, filename) in enumerate(files)
    ]
