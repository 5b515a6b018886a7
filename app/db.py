# app/db.py
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, create_engine, or_
from sqlalchemy.orm import Session, declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = _make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(150), unique=True, nullable=False)
    # null for accounts created through Google login
    password = Column(String(128))
    email = Column(String(254), unique=True)
    google_id = Column(String(64), index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {"id": self.id, "username": self.username, "email": self.email}


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")


def get_db():
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def find_by_username_or_email(db: Session, username: str, email: Optional[str]) -> Optional[User]:
    clauses = [User.username == username]
    if email:
        clauses.append(User.email == email)
    return db.query(User).filter(or_(*clauses)).first()


def find_by_username(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def find_by_google_id_or_email(db: Session, google_id: str, email: Optional[str]) -> Optional[User]:
    clauses = [User.google_id == google_id]
    if email:
        clauses.append(User.email == email)
    return db.query(User).filter(or_(*clauses)).first()


def available_username(db: Session, base: str) -> str:
    """``base`` if free, otherwise the first free ``base-N``."""
    base = (base or "user").strip() or "user"
    candidate, n = base, 1
    while find_by_username(db, candidate) is not None:
        n += 1
        candidate = f"{base}-{n}"
    return candidate


def create_user(db: Session, username: str, email: Optional[str] = None,
                password_hash: Optional[str] = None, google_id: Optional[str] = None) -> User:
    user = User(username=username, email=email, password=password_hash, google_id=google_id)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s (id=%s)", username, user.id)
    return user
