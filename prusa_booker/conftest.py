import datetime
import os

import pytest

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["INITIAL_ADMIN_USERNAME"] = "admin"

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from .app import app  # noqa: E402
from .auth import get_current_user, get_password_hash  # noqa: E402
from .database import engine  # noqa: E402
from .models import CredentialType, Printer, User, UserCredential  # noqa: E402

JAN_1 = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


def at(hour: int, minute: int = 0) -> datetime.datetime:
    return JAN_1.replace(hour=hour, minute=minute)


@pytest.fixture(autouse=True)
def reset_database():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    app.dependency_overrides = {}


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def client():
    return TestClient(app)


def make_user(session: Session, username: str, is_admin: bool = False) -> int:
    user = User(
        username=username,
        email=f"{username}@example.com",
        hashed_password=get_password_hash(f"{username}spass"),
        is_admin=is_admin,
    )
    session.add(user)
    session.commit()
    return user.id


def login_as(user_id: int):
    def current_user():
        with Session(engine) as session:
            return session.get(User, user_id)

    app.dependency_overrides[get_current_user] = current_user


@pytest.fixture
def user_id(session):
    return make_user(session, "johndoe")


@pytest.fixture
def other_user_id(session):
    return make_user(session, "janedoe")


@pytest.fixture
def admin_id(session):
    return make_user(session, "admin", is_admin=True)


@pytest.fixture
def printer_id(session):
    printer = Printer(name="Mini 1", location="Lab A")
    session.add(printer)
    session.commit()
    return printer.id


@pytest.fixture
def required_types(session):
    orientation = CredentialType(name="Makerspace Orientation")
    basics = CredentialType(name="3D Printing Basics")
    optional = CredentialType(name="Advanced Slicing", is_required=False)
    session.add_all([orientation, basics, optional])
    session.commit()
    return {ct.name: ct.id for ct in (orientation, basics, optional)}


def give_credentials(session: Session, user_id: int, *type_ids: int):
    session.add_all(
        [UserCredential(user_id=user_id, credential_type_id=type_id) for type_id in type_ids]
    )
    session.commit()


@pytest.fixture
def credentialed_user_id(session, user_id, required_types):
    give_credentials(
        session,
        user_id,
        required_types["Makerspace Orientation"],
        required_types["3D Printing Basics"],
    )
    return user_id
