"""
Alert taxonomy: closed set of alert types plus the vendor code table that maps
device alert strings onto it.
New vendor strings are added to VENDOR_ALERT_CODES; nothing else changes.
"""
import enum
from typing import Optional


class AlertType(str, enum.Enum):
    IGNITION_ON = "ignition_on"
    IGNITION_OFF = "ignition_off"
    POWER_CUT = "power_cut"
    JAMMING = "jamming"
    LOW_BACKUP_BATTERY = "low_backup_battery"
    UNKNOWN = "unknown"


# Upper-cased, whitespace-collapsed vendor text -> AlertType
VENDOR_ALERT_CODES = {
    # Suntech
    "ENGINE ON": AlertType.IGNITION_ON,
    "ENGINE OFF": AlertType.IGNITION_OFF,
    # Queclink
    "TURN ON": AlertType.IGNITION_ON,
    "TURN OFF": AlertType.IGNITION_OFF,
    # Teltonika / generic gateway labels
    "IGNITION ON": AlertType.IGNITION_ON,
    "IGNITION OFF": AlertType.IGNITION_OFF,
    "POWER CUT": AlertType.POWER_CUT,
    "POWER DISCONNECT": AlertType.POWER_CUT,
    "MAIN POWER DISCONNECTED": AlertType.POWER_CUT,
    "JAMMING": AlertType.JAMMING,
    "GSM JAMMING": AlertType.JAMMING,
    "JAMMING DETECTED": AlertType.JAMMING,
    "LOW BACKUP BATTERY": AlertType.LOW_BACKUP_BATTERY,
    "BACKUP BATTERY LOW": AlertType.LOW_BACKUP_BATTERY,
}

ALERT_SEVERITY = {
    AlertType.IGNITION_ON: 1,
    AlertType.IGNITION_OFF: 1,
    AlertType.LOW_BACKUP_BATTERY: 2,
    AlertType.POWER_CUT: 3,
    AlertType.JAMMING: 3,
    AlertType.UNKNOWN: 1,
}


def normalize_code(raw: str) -> str:
    return " ".join(raw.split()).upper()


def classify_alert(raw: Optional[str]) -> Optional[AlertType]:
    """Map a vendor alert string to an AlertType; None when the message carries no alert."""
    if raw is None:
        return None
    code = normalize_code(str(raw))
    if not code:
        return None
    return VENDOR_ALERT_CODES.get(code, AlertType.UNKNOWN)


def severity_for(alert_type: AlertType) -> int:
    return ALERT_SEVERITY.get(alert_type, 1)
