"""Compliance -> compliance streak -> badges, for one user and one day.

Shared by the nightly batch and the manual check endpoint so both paths go
through the same ledger and awarder contracts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from streakline.features.badges.service import BadgeAwarder
from streakline.features.streaks.compliance import ComplianceCalculator, DayCompliance
from streakline.features.streaks.service import StreakLedger
from streakline.models.badge import BadgeAward
from streakline.models.streak import COMPLIANCE, StreakRecord, StreakUpdate

logger = logging.getLogger("streakline.streaks")


@dataclass(frozen=True)
class DailyCheckOutcome:
    compliance: DayCompliance
    record: StreakRecord
    update: Optional[StreakUpdate] = None
    awards: List[BadgeAward] = field(default_factory=list)

    @property
    def is_compliant(self) -> bool:
        return self.compliance.is_compliant


class DailyComplianceCheck:
    def __init__(self, calculator: ComplianceCalculator, ledger: StreakLedger, awarder: BadgeAwarder):
        self.calculator = calculator
        self.ledger = ledger
        self.awarder = awarder

    def run(self, session: Session, user_id: str, day: date) -> DailyCheckOutcome:
        """Advance the compliance streak for ``day`` if the day met the threshold.

        A non-compliant day changes nothing: the streak resets lazily on the
        next compliant day.
        """
        compliance = self.calculator.evaluate(session, user_id, day)
        if not compliance.is_compliant:
            return DailyCheckOutcome(compliance=compliance, record=self.ledger.get(session, user_id, COMPLIANCE))

        update = self.ledger.record_day(session, user_id, COMPLIANCE, day)
        awards = self.awarder.evaluate(session, user_id, day)
        return DailyCheckOutcome(compliance=compliance, record=update.record, update=update, awards=awards)

    def snapshot(self, session: Session, user_id: str, today: date) -> dict:
        record = self.ledger.get(session, user_id, COMPLIANCE)
        compliance = self.calculator.evaluate(session, user_id, today)
        return {
            "streak": {**record.to_response(), "status": record.state(today)},
            "todayCompliance": compliance.to_response(),
            "canIncrementToday": record.last_completed_day is None or record.last_completed_day < today,
        }
