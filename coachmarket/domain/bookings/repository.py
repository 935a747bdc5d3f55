"""Booking repository - Database operations for sessions and Cal.com bookings"""

from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models import CalBooking, CalendlyIntegration, CoachingSession, CoachProfile, SessionStatus, User

# Sessions that no longer hold their time slot
RELEASED_STATUSES = (SessionStatus.CANCELLED, SessionStatus.RESCHEDULED, SessionStatus.REFUNDED)


class BookingRepository:
    """Repository for session and booking database operations"""

    @staticmethod
    def get_session(db: Session, session_ulid: str) -> Optional[CoachingSession]:
        return db.query(CoachingSession).filter(CoachingSession.ulid == session_ulid).first()

    @staticmethod
    def get_user_sessions(
        db: Session, user_ulid: str, status: Optional[str] = None, role: Optional[str] = None
    ) -> list[CoachingSession]:
        """Sessions where the user is coach, mentee, or either"""
        query = db.query(CoachingSession)
        if role == "coach":
            query = query.filter(CoachingSession.coach_ulid == user_ulid)
        elif role == "mentee":
            query = query.filter(CoachingSession.mentee_ulid == user_ulid)
        else:
            query = query.filter(
                or_(CoachingSession.coach_ulid == user_ulid, CoachingSession.mentee_ulid == user_ulid)
            )
        if status:
            query = query.filter(CoachingSession.status == status)
        return query.order_by(CoachingSession.start_time.desc()).all()

    @staticmethod
    def get_cal_booking(db: Session, booking_ulid: str) -> Optional[CalBooking]:
        return db.query(CalBooking).filter(CalBooking.ulid == booking_ulid).first()

    @staticmethod
    def get_cal_booking_by_uid(db: Session, booking_uid: str) -> Optional[CalBooking]:
        return db.query(CalBooking).filter(CalBooking.cal_booking_uid == booking_uid).first()

    @staticmethod
    def update_session(db: Session, session: CoachingSession, **updates) -> CoachingSession:
        """Update a session; None values clear the column"""
        for key, value in updates.items():
            if hasattr(session, key):
                setattr(session, key, value)
        db.commit()
        db.refresh(session)
        return session

    @staticmethod
    def get_user(db: Session, user_ulid: str) -> Optional[User]:
        return db.query(User).filter(User.ulid == user_ulid).first()

    @staticmethod
    def get_coach_profile(db: Session, user_ulid: str) -> Optional[CoachProfile]:
        return db.query(CoachProfile).filter(CoachProfile.user_ulid == user_ulid).first()

    @staticmethod
    def get_calendly_integration(db: Session, user_ulid: str) -> Optional[CalendlyIntegration]:
        return db.query(CalendlyIntegration).filter(CalendlyIntegration.user_ulid == user_ulid).first()

    @staticmethod
    def find_overlapping_session(
        db: Session, coach_ulid: str, start_time, end_time
    ) -> Optional[CoachingSession]:
        return (
            db.query(CoachingSession)
            .filter(
                CoachingSession.coach_ulid == coach_ulid,
                CoachingSession.status.notin_(RELEASED_STATUSES),
                CoachingSession.start_time < end_time,
                CoachingSession.end_time > start_time,
            )
            .first()
        )

    @staticmethod
    def get_session_for_booking(db: Session, booking_ulid: str) -> Optional[CoachingSession]:
        return db.query(CoachingSession).filter(CoachingSession.cal_booking_ulid == booking_ulid).first()

    @staticmethod
    def create_session(db: Session, **session_data) -> CoachingSession:
        session = CoachingSession(**session_data)
        db.add(session)
        db.commit()
        db.refresh(session)
        return session
