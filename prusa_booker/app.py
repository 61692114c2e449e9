from contextlib import asynccontextmanager
from typing import Annotated, Optional
from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.security import OAuth2PasswordRequestForm
from datetime import timedelta
from sqlmodel import Session, SQLModel, select
import logging
import os

from .auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    Token,
    authenticate_user,
    create_access_token,
    get_current_user,
    register_user,
    require_admin,
)
from .bookings import (
    can_drive_status,
    cancel_booking,
    ensure_can_manage,
    get_booking,
    list_bookings,
    list_user_bookings,
    submit_booking,
    transition_booking,
    update_progress,
)
from .credentials import (
    create_credential_type,
    grant_credential,
    list_credential_types,
    list_user_credentials,
    revoke_credential,
)
from .database import engine, get_session
from .errors import BookerError, booker_error_handler, request_validation_handler
from .importer import ImportResult, import_users
from .models import (
    BookingCreate,
    BookingProgressUpdate,
    BookingRead,
    BookingStatusUpdate,
    BookingUpdate,
    CredentialAward,
    CredentialTypeCreate,
    CredentialTypeRead,
    Issue,
    IssueCreate,
    IssueRead,
    IssueUpdate,
    NotificationRead,
    Printer,
    PrinterCreate,
    PrinterRead,
    PrinterStatusUpdate,
    PrinterUpdate,
    TrainingVideoCreate,
    TrainingVideoRead,
    TrainingVideoUpdate,
    User,
    UserAdminUpdate,
    UserCreate,
    UserCredentialRead,
    UserRead,
    VideoProgressRead,
    VideoProgressUpdate,
    utcnow,
)
from .notifications import list_notifications, mark_read
from .training import (
    award_completed_training,
    create_video,
    delete_video,
    get_progress,
    list_videos,
    record_progress,
    update_video,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    SQLModel.metadata.create_all(engine)
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Prusa Booker API",
    description="API to manage printer bookings, training and credentials for a shared 3D-printing facility.",
    version="1.0.0",
)
app.add_exception_handler(BookerError, booker_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


def get_printer_or_404(session: Session, id: int) -> Printer:
    printer = session.get(Printer, id)
    if not printer:
        raise HTTPException(status_code=404, detail="Printer not found")
    return printer


# --- Users ---
@app.post(
    "/register",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    summary="Register new user",
    response_description="User data",
    tags=["Users"],
)
def register(user: UserCreate, session: Session = Depends(get_session)):
    """
    Register new user.
    """
    return register_user(session, user)


@app.post(
    "/token", summary="Log in", response_description="Bearer token", tags=["Users"]
)
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session),
) -> Token:
    """Obtain token for login"""
    user = authenticate_user(session, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.username}, expires_delta=access_token_expires
    )
    return Token(access_token=access_token, token_type="bearer")


@app.get(
    "/users/me",
    response_model=UserRead,
    summary="Get current user",
    response_description="Current user data",
    tags=["Users"],
)
def read_users_me(current_user: CurrentUser):
    """Get current user data."""
    return current_user


# --- Printers ---
@app.get(
    "/printers",
    response_model=list[PrinterRead],
    summary="List printers",
    tags=["Printers"],
)
def list_printers(
    current_user: CurrentUser,
    session: Session = Depends(get_session),
    status_filter: Optional[str] = Query(
        None, alias="status", description="Filter by printer status"
    ),
):
    query = select(Printer).order_by(Printer.name)
    if status_filter:
        query = query.where(Printer.status == status_filter)
    return session.exec(query).all()


@app.get(
    "/printers/{id}",
    response_model=PrinterRead,
    summary="Get printer",
    tags=["Printers"],
)
def read_printer(id: int, current_user: CurrentUser, session: Session = Depends(get_session)):
    return get_printer_or_404(session, id)


@app.post(
    "/printers",
    response_model=PrinterRead,
    status_code=status.HTTP_201_CREATED,
    summary="Add printer",
    tags=["Printers"],
)
def create_printer(
    printer: PrinterCreate, admin: AdminUser, session: Session = Depends(get_session)
):
    """Add a printer to the facility. Admin access only."""
    db_printer = Printer(**printer.model_dump())
    session.add(db_printer)
    session.commit()
    session.refresh(db_printer)
    logger.info("Admin %s added printer %r", admin.id, db_printer.name)
    return db_printer


@app.patch(
    "/printers/{id}",
    response_model=PrinterRead,
    summary="Update printer",
    tags=["Printers"],
)
def update_printer(
    id: int,
    updated_printer: PrinterUpdate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    """
    Update printer details. Admin access only.
    - **id**: Printer ID.
    """
    printer = get_printer_or_404(session, id)
    for key, value in updated_printer.model_dump(exclude_unset=True).items():
        setattr(printer, key, value)
    session.add(printer)
    session.commit()
    session.refresh(printer)
    return printer


@app.patch(
    "/printers/{id}/status",
    response_model=PrinterRead,
    summary="Set printer status",
    tags=["Printers"],
)
def update_printer_status(
    id: int,
    update: PrinterStatusUpdate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    printer = get_printer_or_404(session, id)
    printer.status = update.status
    session.add(printer)
    session.commit()
    session.refresh(printer)
    logger.info("Printer %s status set to %s", id, update.status)
    return printer


@app.delete(
    "/printers/{id}",
    summary="Delete printer",
    tags=["Printers"],
)
def delete_printer(id: int, admin: AdminUser, session: Session = Depends(get_session)):
    """Remove a printer. Admin access only."""
    printer = get_printer_or_404(session, id)
    session.delete(printer)
    session.commit()
    return {"ok": True}


# --- Bookings ---
@app.get(
    "/bookings",
    response_model=list[BookingRead],
    summary="List my bookings",
    response_description="List of bookings",
    tags=["Bookings"],
)
def read_my_bookings(current_user: CurrentUser, session: Session = Depends(get_session)):
    return list_user_bookings(session, current_user.id)


@app.get(
    "/bookings/all",
    response_model=list[BookingRead],
    summary="List all bookings",
    tags=["Bookings"],
)
def read_all_bookings(
    admin: AdminUser,
    session: Session = Depends(get_session),
    printer_id: Optional[int] = Query(None, description="Show only one printer"),
    user_id: Optional[int] = Query(None, description="Show only certain user"),
    status_filter: Optional[str] = Query(
        None, alias="status", description="Show only one booking status"
    ),
):
    """List every booking. Admin access only.
    - **printer_id**: Optional filter for which printer to show bookings for
    - **user_id**: Optional filter for which user to show bookings for
    - **status**: Optional filter on booking status
    """
    return list_bookings(
        session, printer_id=printer_id, user_id=user_id, status=status_filter
    )


@app.post(
    "/bookings",
    response_model=BookingRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create new booking",
    response_description="Booking data",
    tags=["Bookings"],
    responses={
        400: {"description": "Invalid booking data"},
        403: {"description": "Missing required credential"},
        409: {"description": "Time slot conflicts with existing booking"},
    },
)
def create_booking(
    booking: BookingCreate,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    """Book a printer if the user holds every required credential and the slot is free.
    - **printer_id**: Printer requested
    - **start_time**: Start of the booking (ISO-8601)
    - **end_time**: End of the booking (ISO-8601)
    - **duration**: Length in minutes, 15 to 480
    - **pla_confirmed**: Must be true; only PLA may be printed
    """
    return submit_booking(
        session,
        user_id=current_user.id,
        printer_id=booking.printer_id,
        start_time=booking.start_time,
        end_time=booking.end_time,
        duration=booking.duration,
        pla_confirmed=booking.pla_confirmed,
        notes=booking.notes,
    )


@app.get(
    "/bookings/{id}",
    response_model=BookingRead,
    summary="Get booking",
    tags=["Bookings"],
)
def read_booking(id: int, current_user: CurrentUser, session: Session = Depends(get_session)):
    booking = get_booking(session, id)
    ensure_can_manage(current_user, booking)
    return booking


@app.patch(
    "/bookings/{id}",
    response_model=BookingRead,
    summary="Update booking notes",
    tags=["Bookings"],
)
def update_booking(
    id: int,
    updated_booking: BookingUpdate,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    """
    Update the notes on an existing booking. To move a booking, cancel it and book again.
    - **id**: Booking ID
    """
    booking = get_booking(session, id)
    ensure_can_manage(current_user, booking)
    for key, value in updated_booking.model_dump(exclude_unset=True).items():
        setattr(booking, key, value)
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


@app.post(
    "/bookings/{id}/cancel",
    response_model=BookingRead,
    summary="Cancel booking",
    tags=["Bookings"],
)
def cancel(id: int, current_user: CurrentUser, session: Session = Depends(get_session)):
    """
    Cancel a scheduled booking.
    -**id**: Booking ID.
    """
    booking = get_booking(session, id)
    return cancel_booking(session, current_user, booking)


@app.patch(
    "/bookings/{id}/status",
    response_model=BookingRead,
    summary="Change booking status",
    tags=["Bookings"],
)
def update_booking_status(
    id: int,
    update: BookingStatusUpdate,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    """Move a booking along scheduled -> active -> completed/failed, or cancel it."""
    booking = get_booking(session, id)
    if not can_drive_status(current_user, booking):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorised to change booking status",
        )
    return transition_booking(session, booking, update.status)


@app.patch(
    "/bookings/{id}/progress",
    response_model=BookingRead,
    summary="Report print progress",
    tags=["Bookings"],
)
def update_booking_progress(
    id: int,
    update: BookingProgressUpdate,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    booking = get_booking(session, id)
    if not can_drive_status(current_user, booking):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorised to report progress",
        )
    return update_progress(session, booking, update.print_progress)


# --- Credentials ---
@app.get(
    "/credentials/types",
    response_model=list[CredentialTypeRead],
    summary="List credential types",
    tags=["Credentials"],
)
def read_credential_types(current_user: CurrentUser, session: Session = Depends(get_session)):
    return list_credential_types(session)


@app.post(
    "/credentials/types",
    response_model=CredentialTypeRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create credential type",
    tags=["Credentials"],
)
def add_credential_type(
    credential_type: CredentialTypeCreate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    return create_credential_type(session, credential_type)


@app.get(
    "/credentials/me",
    response_model=list[UserCredentialRead],
    summary="List my credentials",
    tags=["Credentials"],
)
def read_my_credentials(current_user: CurrentUser, session: Session = Depends(get_session)):
    return list_user_credentials(session, current_user.id)


@app.post(
    "/credentials/award",
    response_model=UserCredentialRead,
    status_code=status.HTTP_201_CREATED,
    summary="Claim credential after training",
    tags=["Credentials"],
)
def claim_credential(
    award: CredentialAward,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    """Award a credential to the current user once all of its training videos are completed."""
    return award_completed_training(session, current_user.id, award.credential_type_id)


# --- Training ---
@app.get(
    "/training/videos/{credential_type_id}",
    response_model=list[TrainingVideoRead],
    summary="List training videos for a credential",
    tags=["Training"],
)
def read_training_videos(
    credential_type_id: int,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    return list_videos(session, credential_type_id)


@app.post(
    "/training/videos",
    response_model=TrainingVideoRead,
    status_code=status.HTTP_201_CREATED,
    summary="Add training video",
    tags=["Training"],
)
def add_training_video(
    video: TrainingVideoCreate, admin: AdminUser, session: Session = Depends(get_session)
):
    return create_video(session, video)


@app.patch(
    "/training/videos/{id}",
    response_model=TrainingVideoRead,
    summary="Update training video",
    tags=["Training"],
)
def edit_training_video(
    id: int,
    updates: TrainingVideoUpdate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    return update_video(session, id, updates)


@app.delete(
    "/training/videos/{id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete training video",
    tags=["Training"],
)
def remove_training_video(id: int, admin: AdminUser, session: Session = Depends(get_session)):
    delete_video(session, id)


@app.get(
    "/training/progress/{video_id}",
    response_model=VideoProgressRead,
    summary="Get my progress on a video",
    tags=["Training"],
)
def read_video_progress(
    video_id: int, current_user: CurrentUser, session: Session = Depends(get_session)
):
    progress = get_progress(session, current_user.id, video_id)
    if progress is None:
        return VideoProgressRead(video_id=video_id, watched_duration=0, completed=False)
    return progress


@app.post(
    "/training/progress",
    response_model=VideoProgressRead,
    summary="Record progress on a video",
    tags=["Training"],
)
def save_video_progress(
    update: VideoProgressUpdate,
    current_user: CurrentUser,
    session: Session = Depends(get_session),
):
    """Record watch progress. Completing the last video of a credential awards it."""
    return record_progress(session, current_user.id, update)


# --- Issues ---
@app.get(
    "/issues",
    response_model=list[IssueRead],
    summary="List reported issues",
    tags=["Issues"],
)
def read_issues(
    admin: AdminUser,
    session: Session = Depends(get_session),
    status_filter: Optional[str] = Query(
        None, alias="status", description="Filter by issue status"
    ),
):
    query = select(Issue).order_by(Issue.created_at.desc())
    if status_filter:
        query = query.where(Issue.status == status_filter)
    return session.exec(query).all()


@app.post(
    "/issues",
    response_model=IssueRead,
    status_code=status.HTTP_201_CREATED,
    summary="Report an issue with a printer",
    tags=["Issues"],
)
def report_issue(
    issue: IssueCreate, current_user: CurrentUser, session: Session = Depends(get_session)
):
    get_printer_or_404(session, issue.printer_id)
    if issue.booking_id is not None:
        get_booking(session, issue.booking_id)
    db_issue = Issue(**issue.model_dump(), user_id=current_user.id)
    session.add(db_issue)
    session.commit()
    session.refresh(db_issue)
    logger.info(
        "User %s reported %s issue on printer %s",
        current_user.id,
        db_issue.severity,
        db_issue.printer_id,
    )
    return db_issue


@app.patch(
    "/issues/{id}",
    response_model=IssueRead,
    summary="Update issue",
    tags=["Issues"],
)
def update_issue(
    id: int,
    updates: IssueUpdate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    issue = session.get(Issue, id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    for key, value in updates.model_dump(exclude_unset=True).items():
        setattr(issue, key, value)
    if updates.status == "resolved" and issue.resolved_at is None:
        issue.resolved_at = utcnow()
    session.add(issue)
    session.commit()
    session.refresh(issue)
    return issue


# --- Notifications ---
@app.get(
    "/notifications",
    response_model=list[NotificationRead],
    summary="List my notifications",
    tags=["Notifications"],
)
def read_notifications(current_user: CurrentUser, session: Session = Depends(get_session)):
    return list_notifications(session, current_user.id)


@app.patch(
    "/notifications/{id}/read",
    response_model=NotificationRead,
    summary="Mark notification read",
    tags=["Notifications"],
)
def read_notification(id: int, current_user: CurrentUser, session: Session = Depends(get_session)):
    return mark_read(session, id, current_user.id)


# --- Admin ---
@app.get(
    "/admin/users",
    response_model=list[UserRead],
    summary="List users",
    tags=["Admin"],
)
def list_users(admin: AdminUser, session: Session = Depends(get_session)):
    return session.exec(select(User).order_by(User.username)).all()


@app.patch(
    "/admin/users/{id}",
    response_model=UserRead,
    summary="Grant or revoke admin rights",
    tags=["Admin"],
)
def update_user_role(
    id: int,
    update: UserAdminUpdate,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    user = session.get(User, id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.id == admin.id and not update.is_admin:
        raise HTTPException(status_code=400, detail="Admins cannot revoke their own access")
    user.is_admin = update.is_admin
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Admin %s set is_admin=%s on user %s", admin.id, update.is_admin, id)
    return user


@app.post(
    "/admin/users/{id}/credentials",
    response_model=UserCredentialRead,
    status_code=status.HTTP_201_CREATED,
    summary="Grant credential to user",
    tags=["Admin"],
)
def grant_user_credential(
    id: int,
    award: CredentialAward,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    return grant_credential(session, id, award.credential_type_id, notify=True)


@app.delete(
    "/admin/users/{id}/credentials/{credential_type_id}",
    summary="Revoke credential from user",
    tags=["Admin"],
)
def revoke_user_credential(
    id: int,
    credential_type_id: int,
    admin: AdminUser,
    session: Session = Depends(get_session),
):
    revoke_credential(session, id, credential_type_id)
    return {"ok": True}


@app.post(
    "/admin/import-users",
    response_model=ImportResult,
    summary="Import users from CSV",
    tags=["Admin"],
)
def import_users_csv(
    admin: AdminUser,
    csv_file: UploadFile = File(...),
    session: Session = Depends(get_session),
):
    """Create or update users from a CSV upload and grant the credentials it lists."""
    try:
        content = csv_file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded")
    return import_users(session, content)
