"""Pydantic v2 models for the entities and results exposed by the stores.

The cache and queue treat payloads as opaque JSON; these models give the
store layer typed access at the boundary. Field aliases match the camelCase
JSON the remote API returns.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)


class Farmer(_ApiModel):
    """Registered farmer."""
    id: Optional[str] = None
    first_name: str = Field(default="", alias="firstName")
    middle_name: Optional[str] = Field(default=None, alias="middleName")
    last_name: str = Field(default="", alias="lastName")
    phone: Optional[str] = None
    nin: Optional[str] = None
    email: Optional[str] = None
    state: Optional[str] = None
    cluster_id: Optional[str] = Field(default=None, alias="clusterId")
    status: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.middle_name, self.last_name) if p)

    def matches(self, query: str) -> bool:
        """Case-insensitive match on name, phone, NIN or email."""
        needle = query.lower().strip()
        if not needle:
            return True
        haystack = (self.full_name, self.phone or "", self.nin or "", self.email or "")
        return any(needle in value.lower() for value in haystack)


class Farm(_ApiModel):
    """Farm plot belonging to a farmer."""
    id: Optional[str] = None
    farmer_id: Optional[str] = Field(default=None, alias="farmerId")
    farm_size: Optional[float] = Field(default=None, alias="farmSize")
    primary_crop: Optional[str] = Field(default=None, alias="primaryCrop")
    farm_state: Optional[str] = Field(default=None, alias="farmState")
    farm_location: Optional[str] = Field(default=None, alias="farmLocation")


class Cluster(_ApiModel):
    """Farmer cluster as returned by the clusters endpoint."""
    id: Optional[str] = None
    title: Optional[str] = None
    cluster_lead_first_name: Optional[str] = Field(default=None, alias="clusterLeadFirstName")
    cluster_lead_last_name: Optional[str] = Field(default=None, alias="clusterLeadLastName")
    legacy_id: Optional[str] = Field(default=None, alias="_id")
    count: Dict[str, int] = Field(default_factory=dict, alias="_count")

    def to_option(self) -> "ClusterOption":
        """Format for a dropdown/picker."""
        if self.cluster_lead_first_name and self.cluster_lead_last_name:
            lead = f"{self.cluster_lead_first_name} {self.cluster_lead_last_name}"
        else:
            lead = "No Lead Assigned"
        return ClusterOption(
            label=self.title or "Unnamed Cluster",
            value=self.id or self.legacy_id or "",
            cluster_lead=lead,
            farmer_count=self.count.get("farmers", 0),
        )


class ClusterOption(BaseModel):
    """Dropdown entry for cluster selection."""
    label: str
    value: str
    cluster_lead: str = "No Lead Assigned"
    farmer_count: int = 0


class ReadState(str, Enum):
    """What the caller should show for a read."""
    FRESH = "fresh"                # Data came from, or was confirmed by, the network
    OFFLINE_DATA = "offline_data"  # Cached data served without the network
    NO_DATA = "no_data"            # Nothing cached and the network is unreachable


class ReadResult(BaseModel):
    """Store read outcome; never an exception for offline conditions."""
    data: Any = None
    state: ReadState
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_offline(self) -> bool:
        return self.state != ReadState.FRESH

    @property
    def items(self) -> List[Any]:
        return self.data if isinstance(self.data, list) else []


class WriteStatus(str, Enum):
    SYNCED = "synced"   # Remote API accepted the write
    QUEUED = "queued"   # Saved offline, pending sync


class WriteResult(BaseModel):
    """Store write outcome."""
    status: WriteStatus
    data: Any = None
    operation_id: Optional[str] = None
    message: str = ""

    @property
    def is_queued(self) -> bool:
        return self.status == WriteStatus.QUEUED
