"""
Bulk user import from CSV.

Expected columns are ``email``, ``first_name`` (or ``firstName``),
``last_name`` (or ``lastName``) and optionally ``username`` and ``password``.
Any other column naming a credential type, or one of the legacy aliases
``orientation`` and ``3dPrintingBasics``, grants that credential when its
value is truthy. Header names are matched case-insensitively. Accounts
imported without a password cannot log in.
"""

import csv
import io
import logging

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .auth import get_password_hash, get_user_by_email, get_user_by_username
from .credentials import ensure_credential_type, grant_credential, list_credential_types
from .errors import BookerError, ValidationError
from .models import User

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_TYPES = {
    "Makerspace Orientation": "Basic safety and equipment orientation for the makerspace",
    "3D Printing Basics": "Fundamental knowledge of 3D printing processes and safety",
}

CREDENTIAL_ALIASES = {
    "orientation": "Makerspace Orientation",
    "3dprintingbasics": "3D Printing Basics",
}

USER_COLUMNS = {"email", "username", "password", "first_name", "firstname", "last_name", "lastname"}

TRUTHY = {"true", "1", "yes"}


class ImportResult(BaseModel):
    message: str
    imported: int
    skipped: int


def _column(row: dict, *names: str):
    for name in names:
        value = row.get(name)
        if value:
            return value.strip()
    return None


def _upsert_user(session: Session, row: dict) -> User:
    email = _column(row, "email")
    if not email:
        raise ValidationError("Row has no email")

    user = get_user_by_email(session, email)
    if user is None:
        username = _column(row, "username") or email
        if get_user_by_username(session, username):
            raise ValidationError(f"Username already taken: {username}")
        user = User(username=username, email=email)

    user.first_name = _column(row, "first_name", "firstname") or user.first_name
    user.last_name = _column(row, "last_name", "lastname") or user.last_name
    password = _column(row, "password")
    if password:
        user.hashed_password = get_password_hash(password)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def import_users(session: Session, content: str) -> ImportResult:
    reader = csv.DictReader(io.StringIO(content))
    if reader.fieldnames:
        reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
    if not reader.fieldnames or "email" not in reader.fieldnames:
        raise ValidationError("CSV must have an email column")

    for name, description in DEFAULT_CREDENTIAL_TYPES.items():
        ensure_credential_type(session, name, description)
    type_ids = {ct.name.lower(): ct.id for ct in list_credential_types(session)}

    column_to_type_id = {}
    for column in reader.fieldnames:
        if column in USER_COLUMNS:
            continue
        type_name = CREDENTIAL_ALIASES.get(column, column)
        if type_name in type_ids:
            column_to_type_id[column] = type_ids[type_name]

    imported = skipped = 0
    for line, row in enumerate(reader, start=2):
        try:
            user = _upsert_user(session, row)
            for column, type_id in column_to_type_id.items():
                if (row.get(column) or "").strip().lower() in TRUTHY:
                    grant_credential(session, user.id, type_id)
        except (BookerError, SQLAlchemyError) as exc:
            session.rollback()
            skipped += 1
            logger.warning("Skipped CSV line %s: %s", line, exc)
            continue
        imported += 1

    logger.info("Imported %s users from CSV, skipped %s", imported, skipped)
    return ImportResult(
        message=f"Successfully imported {imported} users",
        imported=imported,
        skipped=skipped,
    )
