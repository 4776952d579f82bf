"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales Targets - Models Package                                              ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import Target, TargetCreate, TargetStatus, etc.                 ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from .target import (
    InvalidAmount,
    TargetStatus,
    AttributionType,
    VALID_TARGET_STATUSES,
    validate_amount,
    compute_achievement_rate,
    HistoryEntry,
    AttributionRecord,
    TargetCreate,
    AchievementCreate,
    Target,
    target_summary,
)

__all__ = [
    "InvalidAmount",
    "TargetStatus",
    "AttributionType",
    "VALID_TARGET_STATUSES",
    "validate_amount",
    "compute_achievement_rate",
    "HistoryEntry",
    "AttributionRecord",
    "TargetCreate",
    "AchievementCreate",
    "Target",
    "target_summary",
]
