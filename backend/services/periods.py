"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales Targets - Calcul des périodes (mois / trimestre / année)              ║
║                                                                              ║
║  Fonctions pures, aucune dépendance DB ni horloge.                           ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  - Fenêtre alignée sur le calendrier: début = 1er jour 00:00:00.000,         ║
║    fin = dernier jour 23:59:59.999 (UTC)                                     ║
║  - Résolution milliseconde: toute référence est tronquée à la ms            ║
║  - Label dérivé UNIQUEMENT du début de période, jamais de "maintenant"       ║
║  - Période suivante calculée depuis le lendemain de la fin courante          ║
║    (pas de dérive, un rollover en retard avance d'une seule période)         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Tuple


class PeriodType(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


VALID_PERIOD_TYPES = [p.value for p in PeriodType]

# Nombre de mois couverts par une période
PERIOD_MONTHS = {
    PeriodType.MONTHLY: 1,
    PeriodType.QUARTERLY: 3,
    PeriodType.YEARLY: 12,
}


def get_period_type_or_raise(period_type) -> PeriodType:
    """Valide un type de période (str ou enum)"""
    try:
        return PeriodType(period_type)
    except ValueError:
        raise ValueError(
            f"Invalid period type: {period_type}. Must be one of {VALID_PERIOD_TYPES}"
        )


def _as_utc(value: datetime) -> datetime:
    """UTC, tronqué à la milliseconde (même résolution que la fin de période)"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _first_month(month: int, period_type: PeriodType) -> int:
    span = PERIOD_MONTHS[period_type]
    return ((month - 1) // span) * span + 1


def period_window(reference: datetime, period_type) -> Tuple[datetime, datetime]:
    """
    Retourne (start, end) de la période calendaire contenant `reference`.

    monthly   -> 1er du mois .. dernier jour du mois
    quarterly -> 1er du trimestre .. dernier jour du trimestre
    yearly    -> 1er janvier .. 31 décembre
    """
    period_type = get_period_type_or_raise(period_type)
    reference = _as_utc(reference)

    first_month = _first_month(reference.month, period_type)
    last_month = first_month + PERIOD_MONTHS[period_type] - 1
    last_day = calendar.monthrange(reference.year, last_month)[1]

    start = datetime(reference.year, first_month, 1, tzinfo=timezone.utc)
    end = datetime(
        reference.year, last_month, last_day,
        23, 59, 59, 999000, tzinfo=timezone.utc
    )
    return start, end


def period_label(period_start: datetime, period_type) -> str:
    """
    Label canonique et triable de la période:
    monthly -> "YYYY-MM", quarterly -> "YYYY-Q{1-4}", yearly -> "YYYY"
    """
    period_type = get_period_type_or_raise(period_type)
    period_start = _as_utc(period_start)
    year, month = period_start.year, period_start.month

    if period_type == PeriodType.MONTHLY:
        return f"{year}-{month:02d}"
    if period_type == PeriodType.QUARTERLY:
        return f"{year}-Q{(month - 1) // 3 + 1}"
    return f"{year}"


def next_period_window(current_end: datetime, period_type) -> Tuple[datetime, datetime]:
    """Fenêtre de la période qui commence le lendemain de `current_end`"""
    current_end = _as_utc(current_end)
    day_after = datetime(
        current_end.year, current_end.month, current_end.day, tzinfo=timezone.utc
    ) + timedelta(days=1)
    return period_window(day_after, period_type)


def next_period_label(current_end: datetime, period_type) -> str:
    """Label de la période qui suit celle se terminant à `current_end`"""
    start, _ = next_period_window(current_end, period_type)
    return period_label(start, period_type)

