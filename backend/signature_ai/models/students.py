from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from signature_ai.core.database import Base

ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")


class Student(Base):
    """
    Student row owned by the attendance admin panel.
    This service only reads it, plus the legacy signature URL columns that
    predate the signature_images table.
    """
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)

    # Institution-issued code shown in the UI (e.g. "2021-00042")
    student_id = Column(String(64), nullable=False, index=True)
    firstname = Column(String, nullable=False)
    surname = Column(String, nullable=False)

    # Legacy upload columns, migrated into signature_images on first training
    signature_urls = Column(JSON, nullable=True)
    signature_url = Column(String, nullable=True)

    signature_images = relationship("SignatureImage", back_populates="student")

    def __repr__(self):
        return f"<Student(id={self.id}, student_id={self.student_id})>"


class AttendanceRecord(Base):
    """
    One attendance mark per (session, student). A successful signature match
    with a session id upserts the row with status 'present'.
    """
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_attendance_session_student"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, nullable=False, index=True)

    # One of ATTENDANCE_STATUSES
    status = Column(String(16), nullable=False, default="present")
    time_in = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<AttendanceRecord(session_id={self.session_id}, "
            f"student_id={self.student_id}, status={self.status})>"
        )
