"""
Credential ledger: which credential types exist and which users hold them.

The read helpers are side-effect free. Grants and revocations commit their
own transaction.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import ConflictError, NotFoundError
from .models import CredentialType, CredentialTypeCreate, User, UserCredential
from .notifications import create_notification

logger = logging.getLogger(__name__)


def list_credential_types(session: Session) -> list[CredentialType]:
    return list(session.exec(select(CredentialType).order_by(CredentialType.name)).all())


def required_credential_types(session: Session) -> list[CredentialType]:
    query = (
        select(CredentialType)
        .where(CredentialType.is_required == True)  # noqa: E712
        .order_by(CredentialType.name)
    )
    return list(session.exec(query).all())


def held_credential_type_ids(session: Session, user_id: int) -> set[int]:
    query = select(UserCredential.credential_type_id).where(
        UserCredential.user_id == user_id
    )
    return set(session.exec(query).all())


def first_missing_credential(session: Session, user_id: int) -> Optional[CredentialType]:
    """Return the first required credential type (by name) the user lacks."""
    held = held_credential_type_ids(session, user_id)
    for credential_type in required_credential_types(session):
        if credential_type.id not in held:
            return credential_type
    return None


def list_user_credentials(session: Session, user_id: int) -> list[UserCredential]:
    query = select(UserCredential).where(UserCredential.user_id == user_id)
    return list(session.exec(query).all())


def get_credential_type_by_name(session: Session, name: str) -> Optional[CredentialType]:
    return session.exec(select(CredentialType).where(CredentialType.name == name)).first()


def create_credential_type(session: Session, data: CredentialTypeCreate) -> CredentialType:
    if get_credential_type_by_name(session, data.name):
        raise ConflictError(f"Credential type already exists: {data.name}")
    credential_type = CredentialType(**data.model_dump())
    session.add(credential_type)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Credential type already exists: {data.name}") from exc
    session.refresh(credential_type)
    logger.info("Created credential type %r", credential_type.name)
    return credential_type


def ensure_credential_type(
    session: Session, name: str, description: Optional[str] = None
) -> CredentialType:
    existing = get_credential_type_by_name(session, name)
    if existing:
        return existing
    return create_credential_type(
        session, CredentialTypeCreate(name=name, description=description)
    )


def _get_held(session: Session, user_id: int, credential_type_id: int):
    return session.exec(
        select(UserCredential)
        .where(UserCredential.user_id == user_id)
        .where(UserCredential.credential_type_id == credential_type_id)
    ).first()


def grant_credential(
    session: Session, user_id: int, credential_type_id: int, notify: bool = False
) -> UserCredential:
    """Grant a credential. Granting one the user already holds is a no-op."""
    credential_type = session.get(CredentialType, credential_type_id)
    if not credential_type:
        raise NotFoundError("Credential type not found")
    if not session.get(User, user_id):
        raise NotFoundError("User not found")

    existing = _get_held(session, user_id, credential_type_id)
    if existing:
        return existing

    credential = UserCredential(user_id=user_id, credential_type_id=credential_type_id)
    session.add(credential)
    if notify:
        create_notification(
            session,
            user_id,
            title="Credential Earned",
            message=f"Congratulations! You've earned the {credential_type.name} credential.",
            type="success",
        )
    try:
        session.commit()
    except IntegrityError:
        # granted concurrently
        session.rollback()
        return _get_held(session, user_id, credential_type_id)
    session.refresh(credential)
    logger.info("Granted credential %r to user %s", credential_type.name, user_id)
    return credential


def revoke_credential(session: Session, user_id: int, credential_type_id: int) -> None:
    credential = _get_held(session, user_id, credential_type_id)
    if not credential:
        raise NotFoundError("User does not hold this credential")
    session.delete(credential)
    session.commit()
    logger.info("Revoked credential %s from user %s", credential_type_id, user_id)
