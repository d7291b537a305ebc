from sqlalchemy import Column, Integer, BigInteger, Boolean, CheckConstraint, Float, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


# --- Calendar item status state machine (sync-relevant subset) ---
CALENDAR_STATUS_PLANNED = "PLANNED"
CALENDAR_STATUS_MODIFIED = "MODIFIED"
CALENDAR_STATUS_SYNCED_DRAFT = "COMPLETED_SYNCED_DRAFT"
CALENDAR_STATUS_SYNCED = "COMPLETED_SYNCED"
CALENDAR_STATUS_COMPLETED_MANUAL = "COMPLETED_MANUAL"
CALENDAR_STATUS_SKIPPED = "SKIPPED"
CALENDAR_PENDING_STATUSES = (CALENDAR_STATUS_PLANNED, CALENDAR_STATUS_MODIFIED)

# --- Sync intent lifecycle ---
INTENT_STATUS_PENDING = "PENDING"
INTENT_STATUS_PROCESSING = "PROCESSING"
INTENT_STATUS_DONE = "DONE"
INTENT_STATUS_FAILED = "FAILED"

STRAVA_SOURCE = "STRAVA"


class Athlete(Base):
    """
    Account/profile row the sync engine reads from.

    Owned by the wider product (auth, onboarding, coach assignment); this
    subsystem only needs the timezone used to project activities onto the
    calendar and the owning coach stamped on materialised calendar items.
    """
    __tablename__ = "athlete"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)  # IANA timezone (e.g. "Australia/Brisbane")
    coach_id = Column(Uuid, nullable=True, index=True)  # Owning coach (user id)

    # --- RELATIONSHIPS ---
    strava_connection = relationship("StravaConnection", back_populates="athlete", uselist=False)


class StravaConnection(Base):
    """
    One Strava OAuth connection per athlete.

    Tokens are Fernet-encrypted at rest (services.token_encryption). Only the
    token manager rotates them: access token, refresh token, expiry and scope
    are always written together in one UPDATE.
    """
    __tablename__ = "strava_connection"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id"), nullable=False, unique=True)
    strava_athlete_id = Column(BigInteger, nullable=True, unique=True)  # Provider owner id
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=False)  # Encrypted
    expires_at = Column(DateTime(timezone=True), nullable=False)  # When access token expires
    scope = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)  # Last successful pull
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    athlete = relationship("Athlete", back_populates="strava_connection")


class StravaSyncIntent(Base):
    """
    Durable, leasable unit of sync work.

    strava_activity_id set   -> fetch that one activity
    strava_activity_id null  -> poll the athlete's recent-activity window

    Exclusivity comes from conditional UPDATEs (id + expected status), never
    from in-process locks, so overlapping cron runs are safe.
    """
    __tablename__ = "strava_sync_intent"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id"), nullable=False, index=True)
    strava_activity_id = Column(Text, nullable=True)
    # 'webhook' | 'sweep' | 'manual'
    source = Column(Text, nullable=False, default="manual")

    status = Column(Text, nullable=False, default=INTENT_STATUS_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)  # Truncated to 500 chars
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DONE', 'FAILED')",
            name="ck_strava_sync_intent_status",
        ),
        Index("ix_strava_sync_intent_eligible", "status", "next_attempt_at", "created_at"),
    )


class CompletedActivity(Base):
    """
    An ingested provider activity.

    (athlete_id, source, external_activity_id) is the idempotency key:
    re-ingesting the same provider id converges on this one row.
    metrics_json is namespaced per provider ({"strava": {...}}) so merges
    never clobber sibling payloads.
    """
    __tablename__ = "completed_activity"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id"), nullable=False, index=True)
    source = Column(Text, nullable=False, default=STRAVA_SOURCE)
    external_provider = Column(Text, nullable=True)
    external_activity_id = Column(Text, nullable=False)

    start_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    distance_km = Column(Float, nullable=True)
    metrics_json = Column(JSONType, nullable=False, default=dict)

    calendar_item_id = Column(Uuid, ForeignKey("calendar_item.id"), nullable=True, unique=True)
    match_day_diff = Column(Integer, nullable=True)  # 0 same day, 1 adjacent day
    # Set when a human reviews the synced activity (outside this engine).
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    pain_flag = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # --- THE ARMOR: Unique Constraint prevents duplicates at the DB level ---
    __table_args__ = (
        UniqueConstraint("athlete_id", "source", "external_activity_id", name="uq_completed_activity_athlete_source_external"),
    )

    calendar_item = relationship("CalendarItem", back_populates="completed_activity")


class CalendarItem(Base):
    """
    A planned (or materialised) workout on an athlete's calendar.

    Items created by a coach start PLANNED. Items synthesised from an
    unmatched Strava activity carry origin='STRAVA' plus the provider id;
    (athlete_id, origin, source_activity_id) is their natural key.
    """
    __tablename__ = "calendar_item"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id"), nullable=False)
    coach_id = Column(Uuid, nullable=True)

    date = Column(Date, nullable=False)  # Athlete-local calendar day
    planned_start_time_local = Column(Text, nullable=True)  # "HH:MM"
    discipline = Column(Text, nullable=False)  # 'RUN', 'BIKE', 'SWIM', 'OTHER'
    subtype = Column(Text, nullable=True)  # Provider sport type for materialised items
    title = Column(Text, nullable=False)

    planned_duration_minutes = Column(Integer, nullable=True)
    planned_distance_km = Column(Float, nullable=True)
    distance_meters = Column(Float, nullable=True)

    status = Column(Text, nullable=False, default=CALENDAR_STATUS_PLANNED)
    # 'PLANNED' for coach-authored items, 'UNPLANNED' for materialised ones
    planning_status = Column(Text, nullable=False, default="PLANNED")
    origin = Column(Text, nullable=True)
    source_activity_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("athlete_id", "origin", "source_activity_id", name="uq_calendar_item_athlete_origin_source"),
        Index("ix_calendar_item_athlete_discipline_date", "athlete_id", "discipline", "date"),
        CheckConstraint(
            "status IN ('PLANNED', 'MODIFIED', 'COMPLETED_SYNCED_DRAFT', 'COMPLETED_SYNCED', 'COMPLETED_MANUAL', 'SKIPPED')",
            name="ck_calendar_item_status",
        ),
    )

    completed_activity = relationship("CompletedActivity", back_populates="calendar_item", uselist=False)
