"""Removal of stale Intune managed devices.

Devices that have not synced for a configurable number of days are deleted
one by one. Deletion is irreversible, so Apply mode demands an explicit
confirmation flag in addition to the mode itself; the automation host has
no console to prompt on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .api import ApiClient, ApiError, is_success
from .config import Config, ConfigurationError, RunMode
from .inventory import GRAPH_MANAGED_DEVICES_PATH
from .models import Device
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovalCriteria:
    """Selection of devices to remove.

    Attributes:
        days_inactive: Minimum days since last sync. Never-synced devices
            always qualify.
        operating_systems: Restrict to these platforms (case-insensitive);
            empty means every platform.
    """

    days_inactive: int
    operating_systems: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.days_inactive < 1:
            raise ConfigurationError("DaysInactive must be at least 1 for device removal")

    def matches(self, device: Device, now: datetime) -> bool:
        if self.operating_systems:
            platform = (device.operating_system or "").casefold()
            if platform not in {os_name.casefold() for os_name in self.operating_systems}:
                return False
        days = device.days_since_last_seen(now)
        return days is None or days >= self.days_inactive


@dataclass
class DeviceRemoval:
    """Outcome of one device deletion."""

    device_id: str
    device_name: str | None
    succeeded: bool
    status_code: int | None = None
    error: str | None = None


@dataclass
class RemovalResult:
    """Result of a stale-device removal run."""

    mode: RunMode
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    inventory_count: int = 0
    candidates: list[Device] = field(default_factory=list)
    removals: list[DeviceRemoval] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def removed_count(self) -> int:
        return sum(1 for r in self.removals if r.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.removals if not r.succeeded)

    @property
    def exit_code(self) -> int:
        return 0 if self.failed_count == 0 else 1

    def summary(self) -> str:
        if self.mode == RunMode.WHAT_IF:
            return (
                f"WhatIf: {len(self.candidates)} of {self.inventory_count} device(s) "
                f"would be removed ({self.duration_seconds:.1f}s)"
            )
        return (
            f"{self.removed_count}/{len(self.candidates)} removed, "
            f"{self.failed_count} failed ({self.duration_seconds:.1f}s)"
        )


class StaleDeviceRemover:
    """Deletes managed devices matching RemovalCriteria."""

    def __init__(
        self,
        client: ApiClient,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep

    def select(
        self, devices: Iterable[Device], criteria: RemovalCriteria, now: datetime | None = None
    ) -> list[Device]:
        reference = now or datetime.now(UTC)
        return [d for d in devices if criteria.matches(d, reference)]

    def remove(
        self,
        devices: Sequence[Device],
        criteria: RemovalCriteria,
        mode: RunMode = RunMode.WHAT_IF,
        *,
        confirm: bool = False,
        now: datetime | None = None,
    ) -> RemovalResult:
        """Delete every selected device.

        Raises:
            ConfigurationError: If Apply mode is requested without confirm.
        """
        if mode == RunMode.APPLY and not confirm:
            raise ConfigurationError("Device removal requires explicit confirmation (--confirm)")

        result = RemovalResult(mode=mode, inventory_count=len(devices))
        result.candidates = self.select(devices, criteria, now)

        logger.info(
            "Stale devices selected",
            extra={
                "inventory_count": result.inventory_count,
                "candidates": len(result.candidates),
                "days_inactive": criteria.days_inactive,
                "mode": mode.value,
            },
        )

        if mode == RunMode.WHAT_IF:
            for device in result.candidates:
                logger.info(
                    "WhatIf: would remove device",
                    extra={
                        "device_id": device.id,
                        "device_name": device.name,
                        "last_seen": device.last_seen.isoformat() if device.last_seen else None,
                    },
                )
            return self._finish(result)

        for position, device in enumerate(result.candidates):
            if position > 0:
                self._sleep(self._config.inter_batch_delay_seconds)
            result.removals.append(self._remove_device(device))

        if result.removals:
            log_security_audit_event(
                "delete",
                target=GRAPH_MANAGED_DEVICES_PATH,
                action="Remove",
                result="success" if result.failed_count == 0 else "partial",
                count=result.removed_count,
            )

        return self._finish(result)

    def _remove_device(self, device: Device) -> DeviceRemoval:
        path = f"{GRAPH_MANAGED_DEVICES_PATH}/{device.id}"
        try:
            status_code = self._client.delete(path)
        except ApiError as e:
            logger.error(
                "Device removal failed", extra={"device_id": device.id, "error": str(e)}
            )
            return DeviceRemoval(device.id, device.name, succeeded=False, error=str(e))

        if is_success(status_code):
            logger.info("Device removed", extra={"device_id": device.id, "device_name": device.name})
            return DeviceRemoval(device.id, device.name, succeeded=True, status_code=status_code)

        logger.error(
            "Device removal failed",
            extra={"device_id": device.id, "status_code": status_code},
        )
        return DeviceRemoval(
            device.id,
            device.name,
            succeeded=False,
            status_code=status_code,
            error=f"HTTP {status_code}",
        )

    def _finish(self, result: RemovalResult) -> RemovalResult:
        result.end_time = datetime.now(UTC)
        logger.info(
            "Removal complete",
            extra={
                "mode": result.mode.value,
                "candidates": len(result.candidates),
                "removed": result.removed_count,
                "failed": result.failed_count,
                "duration_seconds": round(result.duration_seconds, 2),
            },
        )
        return result
