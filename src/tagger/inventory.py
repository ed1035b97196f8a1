"""Device inventory fetcher.

Reads the complete device collection from Defender for Endpoint or Intune
and parses it into Device snapshots, in the order the server returned them.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import ValidationError

from .api import ApiClient, FetchError
from .models import Device

logger = logging.getLogger(__name__)

DEFENDER_MACHINES_PATH = "machines"
GRAPH_MANAGED_DEVICES_PATH = "deviceManagement/managedDevices"


class DeviceInventoryFetcher:
    """Paginated inventory reads over an ApiClient."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    def fetch_machines(self) -> list[Device]:
        """Fetch every Defender machine."""
        return self._fetch(DEFENDER_MACHINES_PATH)

    def fetch_managed_devices(self) -> list[Device]:
        """Fetch every Intune managed device."""
        return self._fetch(GRAPH_MANAGED_DEVICES_PATH)

    def _fetch(self, path: str) -> list[Device]:
        start_time = time.monotonic()
        records = self._client.get_paged(path)
        devices = parse_devices(records)

        logger.info(
            "Inventory fetched",
            extra={
                "collection": path,
                "device_count": len(devices),
                "fetch_time_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return devices


def parse_devices(records: list[dict[str, Any]]) -> list[Device]:
    """Parse raw records, rejecting the whole inventory on any bad record.

    Raises:
        FetchError: If a record cannot be parsed.
    """
    devices: list[Device] = []
    for index, record in enumerate(records):
        try:
            devices.append(Device.model_validate(record))
        except ValidationError as e:
            raise FetchError(
                f"Device record {index} is malformed: {e.error_count()} validation error(s)"
            ) from e
    return devices
