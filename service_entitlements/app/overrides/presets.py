"""
Named maintenance presets.

A preset maps feature keys to "available" (True) or "under maintenance"
(False). Available features fall back to normal policy; features under
maintenance are force-disabled with their maintenance notice.
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class MaintenanceNotice:
    reason: str
    message: str
    expected_date: Optional[str] = None


DEFAULT_REASON = "Maintenance"
DEFAULT_MESSAGE = "This feature is temporarily unavailable."

MAINTENANCE_NOTICES: Dict[str, MaintenanceNotice] = {
    "search": MaintenanceNotice(
        reason="TEA Registration in Progress",
        message="Job search functionality is temporarily unavailable while we complete "
                "our Department of Labour registration.",
        expected_date="2024-06-15",
    ),
    "jobApplications": MaintenanceNotice(
        reason="Legal Compliance",
        message="Job application features will be available once our TEA registration is complete.",
        expected_date="2024-06-15",
    ),
    "jobPosting": MaintenanceNotice(
        reason="Platform Development",
        message="Employer job posting features are coming soon.",
        expected_date="2024-07-01",
    ),
    "workerPlacement": MaintenanceNotice(
        reason="TEA Registration Required",
        message="Worker placement services require completion of our Department of Labour registration.",
        expected_date="2024-06-15",
    ),
}

PRESETS: Dict[str, Dict[str, bool]] = {
    "FULL_LAUNCH": {
        "search": True,
        "jobApplications": True,
        "jobPosting": True,
        "workerPlacement": True,
    },
    # Job posting may need additional licensing.
    "TEA_COMPLIANT": {
        "search": True,
        "jobApplications": True,
        "workerPlacement": True,
        "jobPosting": False,
    },
    "PREVIEW_MODE": {
        "search": True,
        "jobApplications": False,
        "workerPlacement": False,
        "jobPosting": False,
    },
    "DEVELOPMENT": {
        "search": False,
        "jobApplications": False,
        "workerPlacement": False,
        "jobPosting": False,
    },
}


def notice_for(feature_key: str) -> MaintenanceNotice:
    return MAINTENANCE_NOTICES.get(feature_key, MaintenanceNotice(DEFAULT_REASON, DEFAULT_MESSAGE))
