from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, StrictBool


ComplianceStatus = Literal["COMPLIANT", "NON_COMPLIANT"]

POSTURE_FIELDS = (
    "disk_encryption_enabled",
    "screen_lock_enabled",
    "firewall_enabled",
    "system_integrity_enabled",
    "auto_update_enabled",
)


class DevicePosture(BaseModel):
    """Posture report sent by the endpoint agent on every checkin."""

    # Unknown keys are kept in the raw checkin but ignored by the rules.
    model_config = {"extra": "allow", "populate_by_name": True}

    disk_encryption_enabled: StrictBool = Field(alias="diskEncryptionEnabled")
    screen_lock_enabled: StrictBool = Field(alias="screenLockEnabled")
    firewall_enabled: StrictBool = Field(alias="firewallEnabled")
    system_integrity_enabled: StrictBool = Field(
        validation_alias=AliasChoices(
            "systemIntegrityEnabled",
            "systemIntegrityProtectionEnabled",
            "system_integrity_enabled",
        ),
        serialization_alias="systemIntegrityEnabled",
    )
    auto_update_enabled: StrictBool = Field(alias="autoUpdateEnabled")
    os_version: str | None = Field(default=None, alias="osVersion", max_length=128)
    hostname: str | None = Field(default=None, max_length=255)

    def flags(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in POSTURE_FIELDS}

    def raw(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def classify_posture(posture: DevicePosture) -> ComplianceStatus:
    return "COMPLIANT" if all(posture.flags().values()) else "NON_COMPLIANT"
