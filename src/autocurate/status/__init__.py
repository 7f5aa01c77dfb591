"""Status detection for the scene open in the UI.

Public API:
- StatusDetector: confidence cascade per provider plus the organized flag
- StatusTracker: snapshot holder with update callbacks and completion view
- DetectionResult: outcome of one cascade
- DomStrategy / ProtocolStrategy / PageStrategy: cascade entries
"""

from __future__ import annotations

from .detector import StatusDetector
from .providers import ORGANIZED_ASPECT, menu_matches
from .strategies import DetectionResult, DomStrategy, PageStrategy, ProtocolStrategy, run_cascade
from .tracker import AUTOMATION_ASPECT, ProviderStatus, StatusSnapshot, StatusTracker

__all__ = [
    "AUTOMATION_ASPECT",
    "DetectionResult",
    "DomStrategy",
    "ORGANIZED_ASPECT",
    "PageStrategy",
    "ProtocolStrategy",
    "ProviderStatus",
    "StatusDetector",
    "StatusSnapshot",
    "StatusTracker",
    "menu_matches",
    "run_cascade",
]
