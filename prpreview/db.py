"""SQLite persistence for PR sessions."""

import os
from threading import Lock
from typing import Optional

from sqlalchemy import Engine
from sqlmodel import Field, Session as DBSession, SQLModel, create_engine, select

from prpreview.models import PRSession, PRTestRun, SessionState


class SessionRecord(SQLModel, table=True):
    """Row mirroring :class:`~prpreview.models.PRSession`."""

    __tablename__ = "pr_sessions"

    pr_number: int = Field(primary_key=True)
    temp_dir: Optional[str] = None
    repo_url: str
    repo_name: str
    branch: str
    state: str = SessionState.CREATED.value
    process_id: Optional[int] = None
    port: Optional[int] = None
    exit_code: Optional[int] = None
    last_error: Optional[str] = None
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    # JSON-encoded PRTestRun.
    test_results: Optional[str] = None

    @classmethod
    def from_session(cls, session: PRSession) -> "SessionRecord":
        data = session.model_dump(mode="json", exclude={"test_results"})
        if session.test_results is not None:
            data["test_results"] = session.test_results.model_dump_json()
        return cls(**data)

    def to_session(self) -> PRSession:
        data = self.model_dump()
        raw = data.pop("test_results", None)
        session = PRSession.model_validate(data)
        if raw:
            session.test_results = PRTestRun.model_validate_json(raw)
        return session


class Database:
    """Owns the engine for one ``sessions.db`` file."""

    def __init__(self, data_dir: str) -> None:
        os.makedirs(data_dir, exist_ok=True)
        self.path = os.path.join(data_dir, "sessions.db")
        self._engine: Engine = create_engine(
            f"sqlite:///{self.path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        self._lock = Lock()
        SQLModel.metadata.create_all(bind=self._engine)

    def session(self) -> DBSession:
        return DBSession(self._engine)

    def load_all(self) -> list[PRSession]:
        with self._lock, self.session() as db:
            return [row.to_session() for row in db.exec(select(SessionRecord)).all()]

    def save(self, session: PRSession) -> None:
        with self._lock, self.session() as db:
            db.merge(SessionRecord.from_session(session))
            db.commit()

    def delete(self, pr_number: int) -> None:
        with self._lock, self.session() as db:
            row = db.get(SessionRecord, pr_number)
            if row is not None:
                db.delete(row)
                db.commit()

    def dispose(self) -> None:
        self._engine.dispose()
