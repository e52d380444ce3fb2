from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from ..models.booking_status import BookingStatus, DisplayStage, PaymentState


class ChangeEvent(BaseModel):
    """Row-level change notification delivered by the change feed.

    ``seq`` is the row's monotonic ``version``; consumers drop any update whose
    ``seq`` is not newer than the last one they applied for the same entity.
    """

    v: int = 1
    entity: Literal["booking", "bid"]
    op: Literal["insert", "update"]
    id: int
    booking_id: int
    seq: int
    record: Dict[str, Any] = Field(default_factory=dict)
    topic: Optional[str] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.entity, self.id)


class StageEvent(BaseModel):
    """Booking stage change fanned out to both parties."""

    booking_id: int
    status: BookingStatus
    stage: DisplayStage
    payment_state: PaymentState
    seq: int
    contractor_id: Optional[int] = None

    def to_change_event(self) -> ChangeEvent:
        return ChangeEvent(
            entity="booking",
            op="update",
            id=self.booking_id,
            booking_id=self.booking_id,
            seq=self.seq,
            record={
                "status": self.status.value,
                "current_stage": self.stage.value,
                "payment_state": self.payment_state.value,
                "contractor_id": self.contractor_id,
            },
        )
