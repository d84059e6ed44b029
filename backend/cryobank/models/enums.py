"""All enum types for the cryobank data model."""

import enum


# --- Sample Enums ---

class SampleType(str, enum.Enum):
    SPERM = "sperm"
    OOCYTE = "oocyte"
    EMBRYO = "embryo"


class SampleStatus(str, enum.Enum):
    COLLECTED = "collected"
    QUALITY_CHECKED = "quality_checked"
    STORED = "stored"
    FROZEN = "frozen"
    THAWED = "thawed"
    FERTILIZED = "fertilized"
    CULTURED_EMBRYO = "cultured_embryo"
    DISCARDED = "discarded"
    EXPIRED = "expired"


# A sample in one of these states occupies the slot of its latest import.
ACTIVE_STORAGE_STATUSES: frozenset[SampleStatus] = frozenset({
    SampleStatus.FROZEN,
    SampleStatus.STORED,
})


# --- Storage Enums ---

class LocationType(str, enum.Enum):
    TANK = "tank"
    CANISTER = "canister"
    GOBLET = "goblet"
    SLOT = "slot"


# --- Audit Enums ---

class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
