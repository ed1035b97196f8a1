"""Pydantic models for device records returned by the inventory APIs.

One model covers both Defender for Endpoint machines and Intune managed
devices; field aliases absorb the naming differences between the two.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

# Defender reports this value for machines that stopped checking in
INACTIVE_HEALTH_STATUS = "Inactive"


class VmMetadata(BaseModel):
    """Cloud VM metadata attached to Defender machines."""

    model_config = {"extra": "ignore", "frozen": True}

    subscription_id: str | None = Field(None, alias="subscriptionId")
    resource_id: str | None = Field(None, alias="resourceId")
    vm_id: str | None = Field(None, alias="vmId")
    cloud_provider: str | None = Field(None, alias="cloudProvider")


class Device(BaseModel):
    """Snapshot of one managed endpoint as of fetch time."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    id: str = Field(min_length=1)
    name: str | None = Field(
        None, validation_alias=AliasChoices("computerDnsName", "deviceName", "computerName")
    )
    operating_system: str | None = Field(
        None, validation_alias=AliasChoices("osPlatform", "operatingSystem")
    )
    os_version: str | None = Field(None, validation_alias=AliasChoices("osVersion"))
    health_status: str | None = Field(None, validation_alias=AliasChoices("healthStatus"))
    last_seen: datetime | None = Field(
        None, validation_alias=AliasChoices("lastSeen", "lastSyncDateTime")
    )
    machine_tags: tuple[str, ...] = Field(
        default_factory=tuple, validation_alias=AliasChoices("machineTags")
    )
    vm_metadata: VmMetadata | None = Field(None, validation_alias=AliasChoices("vmMetadata"))

    @field_validator("last_seen", mode="after")
    @classmethod
    def normalize_last_seen(cls, v: datetime | None) -> datetime | None:
        # Graph reports never-synced devices as 0001-01-01T00:00:00Z
        if v is None or v.year <= 1:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @field_validator("machine_tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Any) -> Any:
        if v is None:
            return ()
        return v

    @property
    def subscription_id(self) -> str | None:
        return self.vm_metadata.subscription_id if self.vm_metadata else None

    @property
    def is_inactive(self) -> bool:
        return self.health_status == INACTIVE_HEALTH_STATUS

    def has_tag(self, tag: str) -> bool:
        """Check tag membership, ignoring case."""
        wanted = tag.casefold()
        return any(existing.casefold() == wanted for existing in self.machine_tags)

    def days_since_last_seen(self, now: datetime | None = None) -> int | None:
        """Whole days elapsed since last contact, or None if never seen."""
        if self.last_seen is None:
            return None
        return ((now or datetime.now(UTC)) - self.last_seen).days
