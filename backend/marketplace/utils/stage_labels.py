"""Friendly labels and progress percentages for booking display stages.

Presentation only: nothing in the ledger or the stage machine reads these.
"""

from typing import Dict

from ..models.booking_status import DisplayStage

STAGE_LABELS: Dict[DisplayStage, str] = {
    DisplayStage.FINDING_CONTRACTOR: "Finding a contractor",
    DisplayStage.ASSIGNED: "Contractor assigned",
    DisplayStage.ARRIVING: "Contractor on the way",
    DisplayStage.IN_PROGRESS: "Work in progress",
    DisplayStage.AWAITING_PAYMENT: "Work completed, awaiting payment",
    DisplayStage.PAYMENT_COMPLETED: "Paid",
    DisplayStage.CANCELLED: "Cancelled",
}

STAGE_PROGRESS: Dict[DisplayStage, int] = {
    DisplayStage.FINDING_CONTRACTOR: 0,
    DisplayStage.ASSIGNED: 20,
    DisplayStage.ARRIVING: 40,
    DisplayStage.IN_PROGRESS: 60,
    DisplayStage.AWAITING_PAYMENT: 80,
    DisplayStage.PAYMENT_COMPLETED: 100,
    DisplayStage.CANCELLED: 0,
}


def stage_label(stage: DisplayStage) -> str:
    return STAGE_LABELS[DisplayStage(stage)]


def stage_progress(stage: DisplayStage) -> int:
    return STAGE_PROGRESS[DisplayStage(stage)]
