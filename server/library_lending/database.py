"""
Lending record store.

One row per loan in `borrowed_books`. A loan is created Active by a
borrow and moves to Returned exactly once; rows are only ever deleted by
`clear_all`. The reference image captured at borrow time is kept on the
row and is the only biometric reference for that loan.

Uses SQLite by default - any SQLAlchemy URL works.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, String, Text, case, create_engine
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker, validates
from sqlalchemy.pool import StaticPool

from library_lending.errors import (
    InvalidStateError, LendingError, NotFoundError, PersistenceError, ValidationError
)
from library_lending.image_processor import load_image
from library_lending.settings import DEFAULT_STUDENT_CLASSES
from library_lending.verification import VerificationOutcome

logger = logging.getLogger(__name__)

Base = declarative_base()

MAX_IMAGE_CHARS = 10_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoanState(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class BorrowRecord(Base):
    """A single loan of a book to a student."""
    __tablename__ = "borrowed_books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String, nullable=False, index=True)
    student_class = Column(String, nullable=False)
    book_code = Column(String, nullable=False, index=True)
    borrow_date = Column(DateTime, nullable=False, default=utcnow)
    return_date = Column(DateTime, nullable=True)
    state = Column(String(16), nullable=False, default=LoanState.ACTIVE.value)
    image = Column(Text, nullable=False)  # data URL captured at borrow time

    # Written once by the return transition
    return_similarity = Column(Float, nullable=True)
    return_verified = Column(Boolean, nullable=True)

    @validates("image")
    def _freeze_image(self, key, value):
        if self.image is not None and value != self.image:
            raise ValueError("Reference image cannot be changed once set")
        return value

    @property
    def returned(self) -> bool:
        return self.state == LoanState.RETURNED.value

    def __repr__(self) -> str:
        return (
            f"<BorrowRecord id={self.id} student={self.student_id} "
            f"book={self.book_code} state={self.state}>"
        )


class VerificationAudit(Base):
    """
    Audit log of return attempts (without storing the live capture).
    Manual-override returns are the rows worth reviewing.
    """
    __tablename__ = "verification_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    decision = Column(String(32), nullable=False)
    similarity = Column(Float, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    manual_override = Column(Boolean, nullable=False, default=False)
    image_hash = Column(String(64), nullable=True)  # SHA256 of the live capture
    message = Column(Text, nullable=True)


def _make_engine(database_url: str):
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url:
            # Single shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def _clean(value) -> str:
    return str(value).strip() if value is not None else ""


class LendingRecordStore:
    """
    Handle on the lending database, owned by the application.

    Every mutation runs in its own transaction under a write lock, so a
    caller only sees a mutation acknowledged once it is committed.
    """

    def __init__(
        self,
        database_url: str,
        student_classes: Optional[Sequence[str]] = None,
        max_image_chars: int = MAX_IMAGE_CHARS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database_url = database_url
        self.student_classes = list(student_classes or DEFAULT_STUDENT_CLASSES.split(","))
        self.max_image_chars = max_image_chars
        self.clock = clock
        self.engine = _make_engine(database_url)
        self._sessionmaker = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        self._write_lock = threading.Lock()

    def init_db(self):
        """Create tables if they do not exist."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to initialize database: {e}")

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Database operation failed: {e}")
        except LendingError:
            session.rollback()
            raise
        finally:
            session.close()

    # ========================================================================
    # Loan Operations
    # ========================================================================

    def create_loan(
        self,
        student_id: str,
        student_class: str,
        book_code: str,
        image: str,
    ) -> BorrowRecord:
        """
        Record a new loan. Never overwrites earlier loans of the same
        book/student; historical rows stay.

        Raises:
            ValidationError: missing field, unknown class, oversized image
            InvalidImageError: image does not decode (a ValidationError)
        """
        student_id, student_class, book_code = _clean(student_id), _clean(student_class), _clean(book_code)
        missing = [
            name for name, value in
            (("studentId", student_id), ("studentClass", student_class), ("bookCode", book_code))
            if not value
        ]
        if missing:
            raise ValidationError(
                "studentId, studentClass, and bookCode are required.",
                details={"missing": missing},
            )

        image = _clean(image)
        if not image:
            raise ValidationError("Image is required.", details={"missing": ["image"]})
        if len(image) > self.max_image_chars:
            raise ValidationError(
                f"Image is too large ({len(image)} characters, limit {self.max_image_chars}).",
            )
        if student_class not in self.student_classes:
            raise ValidationError(
                f"Unknown class '{student_class}'. Expected one of: {', '.join(self.student_classes)}.",
            )
        load_image(image)

        record = BorrowRecord(
            student_id=student_id,
            student_class=student_class,
            book_code=book_code,
            borrow_date=self.clock(),
            state=LoanState.ACTIVE.value,
            image=image,
        )
        with self._write_lock, self.session() as session:
            session.add(record)
            session.flush()

        logger.info(
            "Borrow record saved: id=%s student=%s class=%s book=%s",
            record.id, record.student_id, record.student_class, record.book_code,
        )
        return record

    def find_active_loan(self, student_id: str, book_code: str) -> BorrowRecord:
        """Most recently borrowed Active record for the pair."""
        student_id, book_code = _clean(student_id), _clean(book_code)
        if not student_id or not book_code:
            raise ValidationError("studentId and bookCode are required.")

        with self.session() as session:
            record = (
                session.query(BorrowRecord)
                .filter(
                    BorrowRecord.student_id == student_id,
                    BorrowRecord.book_code == book_code,
                    BorrowRecord.state == LoanState.ACTIVE.value,
                )
                .order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc())
                .first()
            )

        if record is None:
            raise NotFoundError(
                "No active borrow record found for this student and book.",
                details={"studentId": student_id, "bookCode": book_code},
            )
        return record

    def get(self, record_id: int) -> BorrowRecord:
        with self.session() as session:
            record = session.get(BorrowRecord, record_id)
        if record is None:
            raise NotFoundError(f"Borrow record {record_id} not found.")
        return record

    def complete_return(
        self,
        record_id: int,
        similarity: Optional[float] = None,
        verified: bool = True,
        audit: Optional[VerificationAudit] = None,
    ) -> BorrowRecord:
        """
        Active -> Returned. Atomic: the update only applies while the row is
        still Active, so two racing returns cannot both succeed. `audit`, when
        given, is committed in the same transaction as the transition.

        Raises:
            NotFoundError: unknown id
            InvalidStateError: record already returned
        """
        with self._write_lock, self.session() as session:
            record = session.get(BorrowRecord, record_id)
            if record is None:
                raise NotFoundError(f"Borrow record {record_id} not found.")
            if record.state != LoanState.ACTIVE.value:
                raise InvalidStateError(
                    f"Borrow record {record_id} has already been returned.",
                    details={"returnDate": record.return_date.isoformat() if record.return_date else None},
                )

            updated = (
                session.query(BorrowRecord)
                .filter(BorrowRecord.id == record_id, BorrowRecord.state == LoanState.ACTIVE.value)
                .update(
                    {
                        BorrowRecord.state: LoanState.RETURNED.value,
                        BorrowRecord.return_date: self.clock(),
                        BorrowRecord.return_similarity: similarity,
                        BorrowRecord.return_verified: verified,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise InvalidStateError(f"Borrow record {record_id} has already been returned.")
            if audit is not None:
                session.add(audit)
            session.refresh(record)

        logger.info(
            "Borrow record returned: id=%s student=%s book=%s verified=%s",
            record.id, record.student_id, record.book_code, verified,
        )
        return record

    def list_active(self, student: Optional[str] = None, book: Optional[str] = None) -> List[BorrowRecord]:
        """
        Active loans ordered by class (configured class order), then newest
        borrow first. `student` / `book` are case-insensitive substring filters.
        """
        class_order = case(
            {name: index for index, name in enumerate(self.student_classes)},
            value=BorrowRecord.student_class,
            else_=len(self.student_classes),
        )
        with self.session() as session:
            query = session.query(BorrowRecord).filter(BorrowRecord.state == LoanState.ACTIVE.value)
            if student:
                query = query.filter(BorrowRecord.student_id.icontains(student.strip(), autoescape=True))
            if book:
                query = query.filter(BorrowRecord.book_code.icontains(book.strip(), autoescape=True))
            return (
                query.order_by(
                    class_order,
                    BorrowRecord.student_class,
                    BorrowRecord.borrow_date.desc(),
                    BorrowRecord.id.desc(),
                )
                .all()
            )

    def group_active_by_class(self, student: Optional[str] = None, book: Optional[str] = None) -> Dict[str, List[BorrowRecord]]:
        grouped: Dict[str, List[BorrowRecord]] = {}
        for record in self.list_active(student=student, book=book):
            grouped.setdefault(record.student_class, []).append(record)
        return grouped

    def count_active(self) -> int:
        with self.session() as session:
            return session.query(BorrowRecord).filter(BorrowRecord.state == LoanState.ACTIVE.value).count()

    def clear_all(self) -> int:
        """Irreversibly delete every loan and audit row. Returns loans deleted."""
        with self._write_lock, self.session() as session:
            session.query(VerificationAudit).delete(synchronize_session=False)
            deleted = session.query(BorrowRecord).delete(synchronize_session=False)

        logger.warning("All borrowed books cleared (%d records)", deleted)
        return deleted

    # ========================================================================
    # Audit Log
    # ========================================================================

    def build_attempt(
        self,
        record_id: int,
        outcome: VerificationOutcome,
        manual_override: bool = False,
        image_hash: Optional[str] = None,
    ) -> VerificationAudit:
        """Unsaved audit row; persist with `save_attempt` or `complete_return(audit=...)`."""
        return VerificationAudit(
            record_id=record_id,
            created_at=self.clock(),
            decision=outcome.decision.value,
            similarity=outcome.similarity,
            attempts=outcome.attempts,
            manual_override=manual_override,
            image_hash=image_hash,
            message=outcome.message,
        )

    def save_attempt(self, entry: VerificationAudit) -> VerificationAudit:
        with self._write_lock, self.session() as session:
            session.add(entry)
            session.flush()
        return entry


    def list_attempts(self, record_id: int) -> List[VerificationAudit]:
        with self.session() as session:
            return (
                session.query(VerificationAudit)
                .filter(VerificationAudit.record_id == record_id)
                .order_by(VerificationAudit.id)
                .all()
            )
