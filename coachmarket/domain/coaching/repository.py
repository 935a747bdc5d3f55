"""Coaching repository - Database operations for coach profiles and applications"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import ApplicationStatus, CoachApplication, CoachProfile


class CoachingRepository:
    @staticmethod
    def get_profile(db: Session, user_ulid: str) -> Optional[CoachProfile]:
        return db.query(CoachProfile).filter(CoachProfile.user_ulid == user_ulid).first()

    @staticmethod
    def create_profile(db: Session, user_ulid: str, **profile_data) -> CoachProfile:
        profile = CoachProfile(user_ulid=user_ulid, **profile_data)
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    @staticmethod
    def update_profile(db: Session, profile: CoachProfile, **updates) -> CoachProfile:
        for key, value in updates.items():
            if hasattr(profile, key):
                setattr(profile, key, value)
        db.commit()
        db.refresh(profile)
        return profile

    @staticmethod
    def get_application(db: Session, application_ulid: str) -> Optional[CoachApplication]:
        return db.query(CoachApplication).filter(CoachApplication.ulid == application_ulid).first()

    @staticmethod
    def get_pending_application(db: Session, applicant_ulid: str) -> Optional[CoachApplication]:
        return (
            db.query(CoachApplication)
            .filter(
                CoachApplication.applicant_ulid == applicant_ulid,
                CoachApplication.status == ApplicationStatus.PENDING,
            )
            .first()
        )

    @staticmethod
    def list_applications(
        db: Session, status: Optional[str] = None, applicant_ulid: Optional[str] = None
    ) -> list[CoachApplication]:
        query = db.query(CoachApplication)
        if status:
            query = query.filter(CoachApplication.status == status)
        if applicant_ulid:
            query = query.filter(CoachApplication.applicant_ulid == applicant_ulid)
        return query.order_by(CoachApplication.application_date.desc()).all()

    @staticmethod
    def create_application(db: Session, applicant_ulid: str, **application_data) -> CoachApplication:
        application = CoachApplication(applicant_ulid=applicant_ulid, **application_data)
        db.add(application)
        db.commit()
        db.refresh(application)
        return application
