import logging
from typing import Optional

from sqlmodel import Session, select

from .credentials import grant_credential
from .errors import AuthorizationError, NotFoundError
from .models import (
    CredentialType,
    TrainingVideo,
    TrainingVideoCreate,
    TrainingVideoUpdate,
    UserCredential,
    UserVideoProgress,
    VideoProgressUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


def list_videos(session: Session, credential_type_id: int) -> list[TrainingVideo]:
    query = (
        select(TrainingVideo)
        .where(TrainingVideo.credential_type_id == credential_type_id)
        .order_by(TrainingVideo.order, TrainingVideo.id)
    )
    return list(session.exec(query).all())


def create_video(session: Session, data: TrainingVideoCreate) -> TrainingVideo:
    if not session.get(CredentialType, data.credential_type_id):
        raise NotFoundError("Credential type not found")
    video = TrainingVideo(**data.model_dump())
    session.add(video)
    session.commit()
    session.refresh(video)
    return video


def get_video(session: Session, video_id: int) -> TrainingVideo:
    video = session.get(TrainingVideo, video_id)
    if not video:
        raise NotFoundError("Training video not found")
    return video


def update_video(
    session: Session, video_id: int, updates: TrainingVideoUpdate
) -> TrainingVideo:
    video = get_video(session, video_id)
    for key, value in updates.model_dump(exclude_unset=True).items():
        setattr(video, key, value)
    session.add(video)
    session.commit()
    session.refresh(video)
    return video


def delete_video(session: Session, video_id: int) -> None:
    video = get_video(session, video_id)
    for progress in session.exec(
        select(UserVideoProgress).where(UserVideoProgress.video_id == video_id)
    ).all():
        session.delete(progress)
    session.delete(video)
    session.commit()


def get_progress(
    session: Session, user_id: int, video_id: int
) -> Optional[UserVideoProgress]:
    return session.exec(
        select(UserVideoProgress)
        .where(UserVideoProgress.user_id == user_id)
        .where(UserVideoProgress.video_id == video_id)
    ).first()


def training_complete(session: Session, user_id: int, credential_type_id: int) -> bool:
    """True once the user has completed every video for the credential type."""
    video_ids = {video.id for video in list_videos(session, credential_type_id)}
    if not video_ids:
        return False
    completed = set(
        session.exec(
            select(UserVideoProgress.video_id)
            .where(UserVideoProgress.user_id == user_id)
            .where(UserVideoProgress.completed == True)  # noqa: E712
            .where(UserVideoProgress.video_id.in_(list(video_ids)))
        ).all()
    )
    return completed == video_ids


def record_progress(
    session: Session, user_id: int, update: VideoProgressUpdate
) -> UserVideoProgress:
    """
    Store watch progress for a video.

    Progress never moves backwards: the longest watched duration is kept and
    a completed video stays completed. Completing the last video of a
    credential type grants that credential.
    """
    video = get_video(session, update.video_id)
    progress = get_progress(session, user_id, video.id)
    if progress is None:
        progress = UserVideoProgress(user_id=user_id, video_id=video.id)
    progress.watched_duration = max(progress.watched_duration, update.watched_duration)
    progress.completed = progress.completed or update.completed
    progress.last_watched_at = utcnow()
    session.add(progress)
    session.commit()
    session.refresh(progress)

    if progress.completed and training_complete(
        session, user_id, video.credential_type_id
    ):
        grant_credential(session, user_id, video.credential_type_id, notify=True)
    return progress


def award_completed_training(
    session: Session, user_id: int, credential_type_id: int
) -> UserCredential:
    credential_type = session.get(CredentialType, credential_type_id)
    if not credential_type:
        raise NotFoundError("Credential type not found")
    if not training_complete(session, user_id, credential_type_id):
        raise AuthorizationError(
            f"Training for {credential_type.name} is not complete"
        )
    return grant_credential(session, user_id, credential_type_id, notify=True)
