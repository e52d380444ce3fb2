import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from .. import models, schemas
from ..models.booking_status import BookingStatus
from ..realtime import bus
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class CRUDBooking:
    def get_booking(self, db: Session, booking_id: int) -> Optional[models.Booking]:
        return db.query(models.Booking).filter(models.Booking.id == booking_id).first()

    def get_bookings_by_customer(
        self, db: Session, customer_id: int, skip: int = 0, limit: int = 100
    ) -> List[models.Booking]:
        return (
            db.query(models.Booking)
            .filter(models.Booking.customer_id == customer_id)
            .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_bookings_by_contractor(
        self, db: Session, contractor_id: int, skip: int = 0, limit: int = 100
    ) -> List[models.Booking]:
        return (
            db.query(models.Booking)
            .filter(models.Booking.contractor_id == contractor_id)
            .order_by(models.Booking.status_changed_at.desc(), models.Booking.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def list_open_bookings(
        self, db: Session, service_type: Optional[str] = None, limit: int = 200
    ) -> List[models.Booking]:
        """Bookings still collecting bids, newest first."""
        query = db.query(models.Booking).filter(
            models.Booking.status == BookingStatus.AWAITING_BIDS,
            models.Booking.contractor_id.is_(None),
        )
        if service_type:
            query = query.filter(models.Booking.service_type == service_type)
        return query.order_by(models.Booking.created_at.desc()).limit(limit).all()

    def create_booking(
        self,
        db: Session,
        booking_in: schemas.BookingCreate,
        customer_id: int,
        now: Optional[datetime] = None,
    ) -> models.Booking:
        now = now or utcnow()
        data = booking_in.model_dump()
        db_booking = models.Booking(
            **data,
            customer_id=customer_id,
            status=BookingStatus.AWAITING_BIDS,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(db_booking)
        db.commit()
        db.refresh(db_booking)
        logger.info(
            "Booking %s posted by customer %s (service=%s tier=%s)",
            db_booking.id,
            customer_id,
            db_booking.service_type,
            db_booking.tier.value,
        )
        bus.fanout_booking(db_booking, op="insert")
        return db_booking


booking = CRUDBooking()
