from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

IMPORT_PENDING = "pending"
IMPORT_PLANNING = "planning"
IMPORT_RUNNING = "running"
IMPORT_COMPLETED = "completed"
IMPORT_FAILED = "failed"
IMPORT_CANCELLED = "cancelled"

IMPORT_ACTIVE_STATUSES = (IMPORT_PENDING, IMPORT_PLANNING, IMPORT_RUNNING)
IMPORT_TERMINAL_STATUSES = (IMPORT_COMPLETED, IMPORT_FAILED, IMPORT_CANCELLED)

SCHEDULE_PENDING = "pending"
SCHEDULE_IMPORTING = "importing"
SCHEDULE_COMPLETED = "completed"
SCHEDULE_FAILED = "failed"


@dataclass(frozen=True)
class ItemRef:
    id: str | None
    url: str
    price: int | None = None
    display_price: str | None = None
    address: str | None = None
    property_type: str | None = None
    bedrooms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "price": self.price,
            "display_price": self.display_price,
            "address": self.address,
            "property_type": self.property_type,
            "bedrooms": self.bedrooms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ItemRef":
        item_id = data.get("id")
        return cls(
            id=str(item_id) if item_id is not None else None,
            url=str(data.get("url") or ""),
            price=data.get("price"),
            display_price=data.get("display_price"),
            address=data.get("address"),
            property_type=data.get("property_type"),
            bedrooms=data.get("bedrooms"),
        )


@dataclass(frozen=True)
class RangeNode:
    min: int
    max: int
    depth: int

    @property
    def width(self) -> int:
        return self.max - self.min

    def label(self) -> str:
        return f"{self.min:,}-{self.max:,}"


@dataclass(frozen=True)
class LeafRecord:
    min: int
    max: int
    depth: int
    reported_count: int
    items_found: int
    unique_added: int
    reason: str
    capped: bool
    probe_failed: bool = False
    failed_pages: int = 0


@dataclass
class SplitStats:
    total_splits: int = 0
    max_depth_reached: int = 0
    probes: int = 0
    leaves: list[LeafRecord] = field(default_factory=list)

    @property
    def capped_leaves(self) -> int:
        return sum(1 for leaf in self.leaves if leaf.capped)


@dataclass(frozen=True)
class DetailRecord:
    item_id: str
    url: str
    price: int | None
    fields: dict[str, Any]
    history: list[dict[str, Any]] | None
    fetched_at: str


@dataclass(frozen=True)
class ImportJob:
    id: str
    schedule_id: str | None
    source_query: dict[str, Any]
    status: str
    total_chunks: int | None
    completed_chunks: int
    failed_chunks: int
    total_items: int | None
    imported_items: int
    failed_items: int
    chunk_plan: list[list[dict[str, Any]]] | None
    split_stats: dict[str, Any] | None
    message: str | None
    error_message: str | None
    created_at: str
    started_at: str | None
    finished_at: str | None

    @property
    def processed_chunks(self) -> int:
        return self.completed_chunks + self.failed_chunks

    @property
    def is_terminal(self) -> bool:
        return self.status in IMPORT_TERMINAL_STATUSES


@dataclass(frozen=True)
class ScheduleEntry:
    id: str
    name: str
    query_definition: dict[str, Any]
    status: str
    import_job_id: str | None
    discovery_completed: bool
    details_completed: bool
    error_message: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    finished_at: str | None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    parent_id: str | None
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
