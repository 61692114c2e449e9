from sqlmodel import SQLModel, Field
from sqlalchemy import DDL, DateTime, UniqueConstraint, event
from sqlalchemy.types import TypeDecorator
import datetime
from typing import Literal, Optional


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_utc(value: datetime.datetime) -> datetime.datetime:
    """Normalise to aware UTC; naive input is assumed to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


class UTCTimestamp(TypeDecorator):
    """Aware UTC datetimes in and out, including on SQLite which stores them naive."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return to_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return to_utc(value)


PrinterStatus = Literal["available", "in_use", "maintenance", "offline"]
BookingStatus = Literal["scheduled", "active", "completed", "cancelled", "failed"]
IssueSeverity = Literal["low", "medium", "high", "critical"]
IssueStatus = Literal["open", "in_progress", "resolved", "closed"]
NotificationType = Literal["info", "success", "warning", "error"]

MIN_BOOKING_MINUTES = 15
MAX_BOOKING_MINUTES = 480

OVERLAP_CONSTRAINT = "booking_no_overlap_per_printer"


############
# USER MODEL
############


class UserBase(SQLModel):
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class User(UserBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # imported accounts have no password until one is set
    hashed_password: Optional[str] = None
    is_admin: bool = False
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: int
    is_admin: bool
    created_at: datetime.datetime


class UserAdminUpdate(SQLModel):
    is_admin: bool


######################
# CREDENTIAL MODELS
######################


class CredentialTypeBase(SQLModel):
    name: str = Field(index=True, unique=True, max_length=255)
    description: Optional[str] = None
    is_required: bool = True


class CredentialType(CredentialTypeBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class CredentialTypeCreate(CredentialTypeBase):
    pass


class CredentialTypeRead(CredentialTypeBase):
    id: int


class UserCredential(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "credential_type_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", index=True)
    credential_type_id: int = Field(
        foreign_key="credentialtype.id", ondelete="CASCADE"
    )
    completed_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class UserCredentialRead(SQLModel):
    id: int
    user_id: int
    credential_type_id: int
    completed_at: datetime.datetime


class CredentialAward(SQLModel):
    credential_type_id: int


#################
# TRAINING MODELS
#################


class TrainingVideoBase(SQLModel):
    credential_type_id: int = Field(
        foreign_key="credentialtype.id", ondelete="CASCADE", index=True
    )
    title: str = Field(max_length=255)
    description: Optional[str] = None
    video_url: str
    duration: Optional[int] = None  # seconds
    order: int = 0


class TrainingVideo(TrainingVideoBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class TrainingVideoCreate(TrainingVideoBase):
    pass


class TrainingVideoRead(TrainingVideoBase):
    id: int


class TrainingVideoUpdate(SQLModel):
    title: Optional[str] = None
    description: Optional[str] = None
    video_url: Optional[str] = None
    duration: Optional[int] = None
    order: Optional[int] = None


class UserVideoProgress(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "video_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", index=True)
    video_id: int = Field(foreign_key="trainingvideo.id", ondelete="CASCADE")
    watched_duration: int = 0  # seconds
    completed: bool = False
    last_watched_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class VideoProgressUpdate(SQLModel):
    video_id: int
    watched_duration: int = Field(default=0, ge=0)
    completed: bool = False


class VideoProgressRead(SQLModel):
    video_id: int
    watched_duration: int
    completed: bool


###############
# PRINTER MODEL
###############


class PrinterBase(SQLModel):
    name: str = Field(max_length=255)
    model: str = Field(default="Prusa Mini", max_length=255)
    location: str = Field(max_length=255)
    status: str = "available"


class Printer(PrinterBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    last_used: Optional[datetime.datetime] = Field(default=None, sa_type=UTCTimestamp)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class PrinterCreate(PrinterBase):
    status: PrinterStatus = "available"


class PrinterRead(PrinterBase):
    id: int
    last_used: Optional[datetime.datetime] = None


class PrinterUpdate(SQLModel):
    name: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    status: Optional[PrinterStatus] = None


class PrinterStatusUpdate(SQLModel):
    status: PrinterStatus


###############
# BOOKING MODEL
###############


class BookingBase(SQLModel):
    printer_id: int = Field(foreign_key="printer.id", ondelete="CASCADE", index=True)
    start_time: datetime.datetime = Field(sa_type=UTCTimestamp)
    end_time: datetime.datetime = Field(sa_type=UTCTimestamp)
    duration: int  # minutes
    pla_confirmed: bool = False
    notes: Optional[str] = None


class Booking(BookingBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", index=True)
    status: str = "scheduled"
    print_progress: float = 0
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class BookingCreate(BookingBase):
    duration: int = Field(ge=MIN_BOOKING_MINUTES, le=MAX_BOOKING_MINUTES)
    pla_confirmed: bool


class BookingRead(BookingBase):
    id: int
    user_id: int
    status: str
    print_progress: float
    created_at: datetime.datetime


class BookingUpdate(SQLModel):
    notes: Optional[str] = None


class BookingStatusUpdate(SQLModel):
    status: BookingStatus


class BookingProgressUpdate(SQLModel):
    print_progress: float = Field(ge=0, le=100)


# Postgres closes the check-then-insert race at commit time as well.
event.listen(
    Booking.__table__,
    "after_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(
        dialect="postgresql"
    ),
)
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        f"ALTER TABLE booking ADD CONSTRAINT {OVERLAP_CONSTRAINT} "
        "EXCLUDE USING gist ("
        "printer_id WITH =, tstzrange(start_time, end_time, '[)') WITH &&"
        ") WHERE (status IN ('scheduled', 'active', 'completed'))"
    ).execute_if(dialect="postgresql"),
)


#############
# ISSUE MODEL
#############


class IssueBase(SQLModel):
    printer_id: int = Field(foreign_key="printer.id", ondelete="CASCADE")
    booking_id: Optional[int] = Field(
        default=None, foreign_key="booking.id", ondelete="SET NULL"
    )
    title: str = Field(max_length=255)
    description: Optional[str] = None
    severity: str = "medium"


class Issue(IssueBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE")
    status: str = "open"
    resolved_at: Optional[datetime.datetime] = Field(default=None, sa_type=UTCTimestamp)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class IssueCreate(IssueBase):
    severity: IssueSeverity = "medium"


class IssueRead(IssueBase):
    id: int
    user_id: int
    status: str
    resolved_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime


class IssueUpdate(SQLModel):
    description: Optional[str] = None
    severity: Optional[IssueSeverity] = None
    status: Optional[IssueStatus] = None


####################
# NOTIFICATION MODEL
####################


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", index=True)
    title: str = Field(max_length=255)
    message: str
    type: str = "info"
    read: bool = False
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class NotificationRead(SQLModel):
    id: int
    title: str
    message: str
    type: str
    read: bool
    created_at: datetime.datetime
