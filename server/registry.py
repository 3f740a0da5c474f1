"""Device registry.

Maps connection ids to `DeviceRecord`s in connection order. Entries are
created on connect, updated in place by registrations and dropped on
disconnect. Roles are labels only; several devices may claim `controller`.
"""

from __future__ import annotations
import logging
from typing import Dict, List, Optional

from shared.models import DeviceRecord, DeviceRole, UNKNOWN_DEVICE_NAME

logger = logging.getLogger(__name__)


def sanitize_name(name: object) -> str:
    if isinstance(name, str) and name.strip():
        return name.strip()
    return UNKNOWN_DEVICE_NAME


def sanitize_role(role: object) -> Optional[DeviceRole]:
    if isinstance(role, DeviceRole):
        return role
    if isinstance(role, str):
        try:
            return DeviceRole(role)
        except ValueError:
            return None
    return None


class DeviceRegistry:
    def __init__(self):
        self._devices: Dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._devices

    def add(self, conn_id: str) -> DeviceRecord:
        """Create the placeholder record for a fresh connection."""
        record = DeviceRecord(id=conn_id, name=UNKNOWN_DEVICE_NAME, role=None)
        self._devices[conn_id] = record
        return record

    def register(self, conn_id: str, payload: object) -> Optional[DeviceRecord]:
        """Upsert the caller's record from a `register-device` payload.

        Returns None (and changes nothing) when the payload is not a mapping.
        An existing entry keeps its position in the listing.
        """
        if not isinstance(payload, dict):
            logger.debug("Ignoring malformed registration from %s: %r", conn_id, payload)
            return None
        record = DeviceRecord(
            id=conn_id,
            name=sanitize_name(payload.get("name")),
            role=sanitize_role(payload.get("role")),
        )
        self._devices[conn_id] = record
        logger.info("Registered device %s as %r (role=%s)", conn_id, record.name, record.role.value if record.role else None)
        return record

    def remove(self, conn_id: str) -> bool:
        return self._devices.pop(conn_id, None) is not None

    def get(self, conn_id: str) -> Optional[DeviceRecord]:
        return self._devices.get(conn_id)

    def list_devices(self) -> List[DeviceRecord]:
        return [d.model_copy() for d in self._devices.values()]
