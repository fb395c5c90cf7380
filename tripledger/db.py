"""
Database access for users, login sessions, trips and expenses.

``DbClient`` wraps a SQLAlchemy engine and exposes one method per query. Rows
are converted to plain dataclass records before they leave a session so that
callers never touch detached ORM instances.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    and_,
    create_engine,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

IN_MEMORY_SQLITE_URL = "sqlite+pysqlite:///:memory:"


class EntityNotFoundError(RuntimeError):
    """Raised when an entity cannot be located in the database."""


class EntityConflictError(RuntimeError):
    """Raised when a unique constraint is violated."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_in_memory_sqlite(database_url: str) -> bool:
    if not database_url.startswith("sqlite"):
        return False
    return ":memory:" in database_url or database_url.endswith("://")


@dataclass
class UserRecord:
    id: int
    username: str
    password_hash: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    bio: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class TripRecord:
    id: int
    user_id: int
    name: str
    description: str = ""
    created_at: Optional[datetime] = None


@dataclass
class ExpenseRecord:
    id: int
    user_id: int
    type: str
    date: date
    vendor: str
    location: str
    cost: Decimal
    trip_name: str
    receipt_path: Optional[str] = None
    comments: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


USER_PROFILE_FIELDS = ("first_name", "last_name", "phone_number", "email", "bio")
TRIP_FIELDS = ("name", "description")
EXPENSE_FIELDS = (
    "type",
    "date",
    "vendor",
    "location",
    "cost",
    "trip_name",
    "comments",
    "receipt_path",
)


class DbClient:
    """
    SQLAlchemy-backed data access. Accepts any SQLAlchemy URL (Postgres in
    production, SQLite for local runs and tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("database_url is required for DbClient")
        if _is_in_memory_sqlite(database_url):
            # Share the single in-memory database across threadpool workers.
            self.engine = create_engine(
                database_url,
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                database_url,
                future=True,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    # --- users ---

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            password_hash=row.password_hash,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            phone_number=row.phone_number,
            bio=row.bio,
            created_at=row.created_at,
        )

    def _ensure_unique_user(
        self,
        session: Session,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> None:
        if username is not None:
            stmt = select(UserRow.id).where(UserRow.username == username)
            found = session.execute(stmt).scalar_one_or_none()
            if found is not None and found != exclude_id:
                raise EntityConflictError("Username already exists")
        if email is not None:
            stmt = select(UserRow.id).where(UserRow.email == email)
            found = session.execute(stmt).scalar_one_or_none()
            if found is not None and found != exclude_id:
                raise EntityConflictError("Email already exists")

    def create_user(
        self,
        *,
        username: str,
        password_hash: str,
        email: str,
        first_name: str = "",
        last_name: str = "",
        phone_number: str = "",
    ) -> UserRecord:
        with self.Session() as session:
            self._ensure_unique_user(session, username=username, email=email)
            row = UserRow(
                username=username,
                password_hash=password_hash,
                email=email,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
                created_at=_utcnow(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise EntityConflictError("Username or email already exists") from exc
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.username == username).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.email == email).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def update_user_profile(
        self, user_id: int, changes: Mapping[str, Any]
    ) -> UserRecord:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                raise EntityNotFoundError(f"User {user_id} not found")
            if "email" in changes:
                self._ensure_unique_user(
                    session, email=changes["email"], exclude_id=user_id
                )
            for key, value in changes.items():
                if key not in USER_PROFILE_FIELDS:
                    raise ValueError(f"Unknown profile field: {key}")
                setattr(row, key, value)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise EntityConflictError("Email already exists") from exc
            session.refresh(row)
            return self._to_user_record(row)

    def update_user_password(self, user_id: int, password_hash: str) -> None:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                raise EntityNotFoundError(f"User {user_id} not found")
            row.password_hash = password_hash
            session.commit()

    # --- login sessions ---

    def create_session(self, user_id: int, max_age_seconds: int) -> str:
        """Store a new login session and return its opaque id."""
        token = secrets.token_urlsafe(32)
        now = _utcnow()
        with self.Session.begin() as session:
            session.execute(delete(SessionRow).where(SessionRow.expires_at <= now))
            session.add(
                SessionRow(
                    id=token,
                    user_id=user_id,
                    created_at=now,
                    expires_at=now + timedelta(seconds=max_age_seconds),
                )
            )
        return token

    def get_session_user_id(self, token: str) -> Optional[int]:
        """Return the user behind a live session, or None if unknown or expired."""
        with self.Session() as session:
            stmt = select(SessionRow.user_id).where(
                and_(SessionRow.id == token, SessionRow.expires_at > _utcnow())
            )
            return session.execute(stmt).scalar_one_or_none()

    def delete_session(self, token: str) -> None:
        with self.Session.begin() as session:
            session.execute(delete(SessionRow).where(SessionRow.id == token))

    def delete_user_sessions(self, user_id: int, keep: Optional[str] = None) -> int:
        """End every session of a user except ``keep``. Returns how many ended."""
        stmt = delete(SessionRow).where(SessionRow.user_id == user_id)
        if keep:
            stmt = stmt.where(SessionRow.id != keep)
        with self.Session.begin() as session:
            return session.execute(stmt).rowcount

    # --- trips ---

    def _to_trip_record(self, row: "TripRow") -> TripRecord:
        return TripRecord(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            description=row.description or "",
            created_at=row.created_at,
        )

    def get_trip(self, trip_id: int) -> Optional[TripRecord]:
        with self.Session() as session:
            row = session.get(TripRow, trip_id)
            return self._to_trip_record(row) if row else None

    def list_trips(self, user_id: int) -> list[TripRecord]:
        with self.Session() as session:
            stmt = (
                select(TripRow)
                .where(TripRow.user_id == user_id)
                .order_by(TripRow.created_at.desc(), TripRow.id.desc())
            )
            return [self._to_trip_record(row) for row in session.scalars(stmt)]

    def create_trip(
        self, user_id: int, name: str, description: Optional[str] = None
    ) -> TripRecord:
        if not name:
            raise ValueError("Trip name is required")
        with self.Session() as session:
            row = TripRow(
                user_id=user_id,
                name=name,
                description=description or "",
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_trip_record(row)

    def update_trip(self, trip_id: int, changes: Mapping[str, Any]) -> TripRecord:
        """
        Apply a partial update. Renaming a trip carries the owner's expenses
        over to the new name in the same transaction.
        """
        with self.Session.begin() as session:
            row = session.get(TripRow, trip_id)
            if not row:
                raise EntityNotFoundError(f"Trip {trip_id} not found")
            for key, value in changes.items():
                if key not in TRIP_FIELDS:
                    raise ValueError(f"Unknown trip field: {key}")
            new_name = changes.get("name")
            if new_name is not None and new_name != row.name:
                session.execute(
                    update(ExpenseRow)
                    .where(
                        and_(
                            ExpenseRow.user_id == row.user_id,
                            ExpenseRow.trip_name == row.name,
                        )
                    )
                    .values(trip_name=new_name, updated_at=_utcnow())
                )
            for key, value in changes.items():
                if key == "description" and value is None:
                    value = ""
                setattr(row, key, value)
            session.flush()
            return self._to_trip_record(row)

    def delete_trip(self, trip_id: int) -> list[ExpenseRecord]:
        """
        Delete a trip and every expense grouped under it, atomically.

        Returns the deleted expenses so callers can clean up their receipts.
        """
        with self.Session.begin() as session:
            row = session.get(TripRow, trip_id)
            if not row:
                raise EntityNotFoundError(f"Trip {trip_id} not found")
            stmt = select(ExpenseRow).where(
                and_(
                    ExpenseRow.user_id == row.user_id,
                    ExpenseRow.trip_name == row.name,
                )
            )
            removed = [self._to_expense_record(e) for e in session.scalars(stmt)]
            session.execute(
                delete(ExpenseRow).where(
                    and_(
                        ExpenseRow.user_id == row.user_id,
                        ExpenseRow.trip_name == row.name,
                    )
                )
            )
            session.delete(row)
        logger.info(
            "Deleted trip %s with %d expense(s)", trip_id, len(removed)
        )
        return removed

    # --- expenses ---

    def _to_expense_record(self, row: "ExpenseRow") -> ExpenseRecord:
        return ExpenseRecord(
            id=row.id,
            user_id=row.user_id,
            type=row.type,
            date=row.date,
            vendor=row.vendor,
            location=row.location,
            cost=Decimal(row.cost).quantize(Decimal("0.01")),
            trip_name=row.trip_name,
            receipt_path=row.receipt_path,
            comments=row.comments or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get_expense(self, expense_id: int) -> Optional[ExpenseRecord]:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            return self._to_expense_record(row) if row else None

    def list_expenses(
        self, user_id: int, trip_name: Optional[str] = None
    ) -> list[ExpenseRecord]:
        with self.Session() as session:
            stmt = select(ExpenseRow).where(ExpenseRow.user_id == user_id)
            if trip_name is not None:
                stmt = stmt.where(ExpenseRow.trip_name == trip_name)
            stmt = stmt.order_by(ExpenseRow.date.desc(), ExpenseRow.id.desc())
            return [self._to_expense_record(row) for row in session.scalars(stmt)]

    def receipt_in_use(self, receipt_path: str) -> bool:
        with self.Session() as session:
            stmt = (
                select(ExpenseRow.id)
                .where(ExpenseRow.receipt_path == receipt_path)
                .limit(1)
            )
            return session.execute(stmt).first() is not None

    def create_expense(
        self,
        user_id: int,
        *,
        type: str,
        date: date,
        vendor: str,
        location: str,
        cost: Decimal,
        trip_name: str,
        comments: Optional[str] = None,
        receipt_path: Optional[str] = None,
    ) -> ExpenseRecord:
        if cost < 0:
            raise ValueError("Expense cost must not be negative")
        now = _utcnow()
        with self.Session() as session:
            row = ExpenseRow(
                user_id=user_id,
                type=type,
                date=date,
                vendor=vendor,
                location=location,
                cost=cost,
                trip_name=trip_name,
                comments=comments or "",
                receipt_path=receipt_path or None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_expense_record(row)

    def update_expense(
        self, expense_id: int, changes: Mapping[str, Any]
    ) -> ExpenseRecord:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            if not row:
                raise EntityNotFoundError(f"Expense {expense_id} not found")
            for key, value in changes.items():
                if key not in EXPENSE_FIELDS:
                    raise ValueError(f"Unknown expense field: {key}")
                if key == "cost" and value is not None and value < 0:
                    raise ValueError("Expense cost must not be negative")
                setattr(row, key, value)
            row.updated_at = _utcnow()
            session.commit()
            session.refresh(row)
            return self._to_expense_record(row)

    def delete_expense(self, expense_id: int) -> ExpenseRecord:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            if not row:
                raise EntityNotFoundError(f"Expense {expense_id} not found")
            record = self._to_expense_record(row)
            session.delete(row)
            session.commit()
            return record


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    password_hash = Column("password", String, nullable=False)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    phone_number = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)
    bio = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SessionRow(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class TripRow(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ExpenseRow(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    vendor = Column(String, nullable=False)
    location = Column(String, nullable=False)
    cost = Column(Numeric(10, 2), nullable=False)
    comments = Column(Text, nullable=True, default="")
    trip_name = Column(String, nullable=False, index=True)
    receipt_path = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
