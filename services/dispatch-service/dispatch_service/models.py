from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Integer, JSON, String

from shared.database import Base


class RequestRecord(Base):
    __tablename__ = "dispatch_requests"

    id = Column(String, primary_key=True)
    car_id = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, index=True)
    mechanic_id = Column(String, nullable=True, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    urgency = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)  # see schemas.RequestStatus
    car_make = Column(String, nullable=True)
    service_tag = Column(String, nullable=True)
    title = Column(String, nullable=True)
    description = Column(String, nullable=True)

    slot_released = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class AvailabilityRecord(Base):
    __tablename__ = "mechanic_availability"

    mechanic_id = Column(String, primary_key=True)
    is_available = Column(Boolean, nullable=False, default=True)
    max_concurrent_jobs = Column(Integer, nullable=False)
    current_active_jobs = Column(Integer, nullable=False, default=0)

    # denormalized from base_location for bounding-box prefiltering
    latitude = Column(Float, nullable=False, index=True)
    longitude = Column(Float, nullable=False, index=True)
    base_location = Column(JSON, nullable=False)

    service_radius_km = Column(Float, nullable=False)
    specializations = Column(JSON, nullable=False)
    hourly_rate = Column(Float, nullable=False)
    emergency_service = Column(Boolean, nullable=False, default=False)
    working_hours = Column(JSON, nullable=False)
    rating = Column(Float, nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "current_active_jobs >= 0 AND current_active_jobs <= max_concurrent_jobs",
            name="ck_mechanic_availability_active_jobs",
        ),
    )
