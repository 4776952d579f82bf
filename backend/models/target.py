"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales Targets - Modèle Target (objectif client × commercial)                ║
║                                                                              ║
║  Un target = objectif de CA pour un client et un commercial, sur une         ║
║  période calendaire (monthly / quarterly / yearly), récurrent ou non.        ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - current_period_start <= current_period_end, alignés sur le calendrier     ║
║  - achievement_rate TOUJOURS recalculé avant persistance (jamais saisi)      ║
║  - achieved_amount >= 0, remis à 0 au rollover                               ║
║  - historical_performance: au plus UNE entrée par label de période           ║
║  - revision: +1 à chaque écriture, period_sequence: +1 à chaque rollover     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import math
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import ensure_utc, to_iso, utc_now
from services.periods import (
    PeriodType,
    next_period_label,
    next_period_window,
    period_label,
    period_window,
)


class InvalidAmount(Exception):
    """Montant négatif, non numérique ou non fini"""
    pass


class TargetStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    PAUSED = "paused"


class AttributionType(str, Enum):
    ORDER = "order"
    INVOICE = "invoice"


VALID_TARGET_STATUSES = [s.value for s in TargetStatus]


def validate_amount(amount: Any) -> float:
    """
    Valide un montant d'achievement.
    Refuse: bool, non numérique, NaN / infini, négatif.
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise InvalidAmount(f"Amount must be numeric, got {type(amount).__name__}")
    value = float(amount)
    if not math.isfinite(value):
        raise InvalidAmount(f"Amount must be finite, got {amount}")
    if value < 0:
        raise InvalidAmount(f"Amount must be >= 0, got {amount}")
    return value


def compute_achievement_rate(achieved_amount: float, target_amount: float) -> float:
    """achieved / target * 100, ou 0 si target = 0"""
    if target_amount > 0:
        return achieved_amount * 100 / target_amount
    return 0.0


class HistoryEntry(BaseModel):
    """Snapshot d'une période passée"""
    period: str
    target_amount: float
    achieved_amount: float
    achievement_rate: float
    archived_at: Optional[datetime] = None


class AttributionRecord(BaseModel):
    """Commande ou facture ayant contribué à la période courante"""
    source_id: Optional[str] = None
    doc_type: AttributionType = AttributionType.INVOICE
    doc_entry: Optional[int] = None
    doc_total: float = 0.0
    doc_date: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class TargetCreate(BaseModel):
    """
    Création d'un target

    Exemple:
    {
        "card_code": "C10023",
        "card_name": "Boulangerie Martin",
        "sales_agent_id": "agent-uuid",
        "target_amount": 5000,
        "period": "monthly",
        "is_recurring": true
    }
    """
    card_code: str
    card_name: str
    sales_agent_id: str
    target_amount: float = Field(ge=0)
    period: PeriodType = PeriodType.MONTHLY
    is_recurring: bool = True
    achievement_source: str = "invoices"  # orders | invoices
    client_existing_average: float = Field(default=0.0, ge=0)
    notes: Optional[str] = ""
    created_by: Optional[str] = None

    @field_validator('card_code', 'card_name')
    @classmethod
    def strip_required(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("Champ obligatoire")
        return v

    @field_validator('achievement_source')
    @classmethod
    def validate_source(cls, v):
        if v not in ("orders", "invoices"):
            raise ValueError("achievement_source doit être orders ou invoices")
        return v


class AchievementCreate(BaseModel):
    """Montant attribué à un target par le flux commandes/factures"""
    amount: Any
    attribution: Optional[AttributionRecord] = None


class Target(BaseModel):
    """Document customer_targets"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Identité
    card_code: str
    card_name: str
    sales_agent_id: str
    created_by: Optional[str] = None

    # Définition
    target_amount: float = Field(ge=0)
    period: PeriodType = PeriodType.MONTHLY
    is_recurring: bool = True
    achievement_source: str = "invoices"
    client_existing_average: float = 0.0
    notes: Optional[str] = ""

    # Fenêtre courante
    current_period_start: datetime
    current_period_end: datetime
    deadline: datetime  # = current_period_end, gardé pour les anciens lecteurs
    start_date: datetime

    # Accumulateur
    achieved_amount: float = 0.0
    achievement_rate: float = 0.0

    status: TargetStatus = TargetStatus.ACTIVE

    # Attribution (période courante uniquement)
    orders: List[AttributionRecord] = []
    transactions: List[AttributionRecord] = []

    historical_performance: List[HistoryEntry] = []

    # Concurrence optimiste
    revision: int = 0
    period_sequence: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_recalculated: datetime = Field(default_factory=utc_now)

    @field_validator(
        "current_period_start", "current_period_end", "deadline", "start_date",
        "created_at", "updated_at", "last_recalculated",
    )
    @classmethod
    def coerce_utc(cls, v):
        return ensure_utc(v)

    # ==================== CONSTRUCTION ====================

    @classmethod
    def new(cls, data: TargetCreate, now: datetime) -> "Target":
        """Nouveau target avec sa fenêtre initiale calculée depuis `now`"""
        start, end = period_window(now, data.period)
        return cls(
            **data.model_dump(),
            current_period_start=start,
            current_period_end=end,
            deadline=end,
            start_date=now,
            created_at=now,
            updated_at=now,
            last_recalculated=now,
        )

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "Target":
        return cls.model_validate(doc)

    def to_mongo(self) -> Dict[str, Any]:
        """Sérialise pour Mongo: dates en ISO UTC (format unique)"""
        return _iso_dates(self.model_dump())

    # ==================== PÉRIODE ====================

    def current_period_label(self) -> str:
        return period_label(self.current_period_start, self.period)

    def next_period_label(self) -> str:
        return next_period_label(self.current_period_end, self.period)

    def has_history(self, label: str) -> bool:
        return any(h.period == label for h in self.historical_performance)

    def is_due(self, now: datetime) -> bool:
        """Période courante entièrement écoulée"""
        return self.current_period_end < ensure_utc(now)

    def is_rollover_candidate(self, now: datetime) -> bool:
        return (
            self.is_recurring
            and self.status == TargetStatus.ACTIVE
            and self.is_due(now)
        )

    # ==================== MUTATIONS ====================

    def recompute_achievement_rate(self) -> float:
        self.achievement_rate = compute_achievement_rate(
            self.achieved_amount, self.target_amount
        )
        return self.achievement_rate

    def record_achievement(
        self,
        amount: Any,
        now: datetime,
        attribution: Optional[AttributionRecord] = None,
    ) -> "Target":
        value = validate_amount(amount)
        self.achieved_amount += value
        if attribution is not None:
            if attribution.doc_type == AttributionType.ORDER:
                self.orders.append(attribution)
            else:
                self.transactions.append(attribution)
        self.recompute_achievement_rate()
        self.last_recalculated = now
        self.updated_at = now
        return self

    def archive_current_period(self, now: datetime) -> bool:
        """
        Ajoute la période courante à l'historique si absente.
        Retourne False si le label y est déjà (crash après écriture historique).
        """
        label = self.current_period_label()
        if self.has_history(label):
            return False
        self.recompute_achievement_rate()
        self.historical_performance.append(HistoryEntry(
            period=label,
            target_amount=self.target_amount,
            achieved_amount=self.achieved_amount,
            achievement_rate=self.achievement_rate,
            archived_at=now,
        ))
        return True

    def start_new_period(self, now: datetime) -> "Target":
        """
        Clôture la période courante et ouvre la suivante.
        La fenêtre suivante part du lendemain de current_period_end, jamais de `now`.
        """
        self.archive_current_period(now)

        start, end = next_period_window(self.current_period_end, self.period)
        self.current_period_start = start
        self.current_period_end = end
        self.deadline = end

        self.achieved_amount = 0.0
        self.achievement_rate = 0.0
        self.orders = []
        self.transactions = []

        self.period_sequence += 1
        self.last_recalculated = now
        self.updated_at = now
        return self

    def mark_expired(self, now: datetime) -> "Target":
        self.status = TargetStatus.EXPIRED
        self.updated_at = now
        return self


def _iso_dates(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {k: _iso_dates(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_iso_dates(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def target_summary(target: Target) -> Dict[str, Any]:
    """Vue courte pour les logs / réponses API"""
    return {
        "id": target.id,
        "card_code": target.card_code,
        "card_name": target.card_name,
        "period": target.period,
        "current_period": target.current_period_label(),
        "current_period_start": to_iso(target.current_period_start),
        "current_period_end": to_iso(target.current_period_end),
        "achieved_amount": target.achieved_amount,
        "achievement_rate": target.achievement_rate,
        "status": target.status,
    }
