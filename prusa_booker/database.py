from sqlalchemy import event
from sqlmodel import create_engine, Session
from dotenv import load_dotenv

import os

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI")
if not DATABASE_URL or DATABASE_URL == "":
    raise ValueError("DATABASE URL not set")

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # TestClient runs sync endpoints in a threadpool
    connect_args["check_same_thread"] = False

engine = create_engine(DATABASE_URL, echo=SQL_ECHO, connect_args=connect_args)

if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # ondelete cascades are only honoured with this pragma on
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session
