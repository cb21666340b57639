"""
Library Management Models
Book inventory, borrower loans and the audit trail
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Date, Enum, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from models import Base
from datetime import datetime, date
import enum


# ===== ENUMS =====
class LoanStatusEnum(enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"


class AuditActionEnum(enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RETURN = "RETURN"


def _iso(value):
    return value.isoformat() if value else None


# ===== MODELS =====

class Book(Base):
    """Library books inventory"""
    __tablename__ = 'books'

    id = Column(Integer, primary_key=True)
    sequence_number = Column(Integer, nullable=False)  # Display ordering, assigned at creation

    # Book Information
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=True)
    registration_code = Column(String(100), nullable=True)
    sig_top = Column(String(100), nullable=True)  # Shelf location code
    edition = Column(String(100), nullable=True)
    registration_date = Column(Date, nullable=True)

    # Availability
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    loans = relationship("Loan", back_populates="book")

    __table_args__ = (
        UniqueConstraint('sequence_number', name='uq_book_sequence_number'),
        Index('idx_book_title', 'title'),
        Index('idx_book_author', 'author'),
        Index('idx_book_registration_code', 'registration_code'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'sequence_number': self.sequence_number,
            'title': self.title,
            'author': self.author,
            'registration_code': self.registration_code,
            'sig_top': self.sig_top,
            'edition': self.edition,
            'registration_date': _iso(self.registration_date),
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Book #{self.sequence_number}: {self.title}>'


class Loan(Base):
    """Borrower loan tracking"""
    __tablename__ = 'loans'

    id = Column(Integer, primary_key=True)
    # Nulled only when a book with no active loans is deleted
    book_id = Column(Integer, ForeignKey('books.id'), nullable=True)
    book_title = Column(String(255), nullable=False)  # Snapshot for history
    operator_user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    # Borrower
    borrower_name = Column(String(200), nullable=False)
    borrower_id_number = Column(String(50), nullable=False)  # Kept as text: leading zeros matter
    borrower_email = Column(String(120), nullable=True)

    # Dates
    loan_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(Date, nullable=False)
    return_date = Column(DateTime, nullable=True)

    # Status
    status = Column(Enum(LoanStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=LoanStatusEnum.ACTIVE, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    book = relationship("Book", back_populates="loans")
    operator = relationship("User", back_populates="operated_loans")

    __table_args__ = (
        Index('idx_loan_borrower_status', 'borrower_id_number', 'status'),
        Index('idx_loan_book_status', 'book_id', 'status'),
        Index('idx_loan_operator', 'operator_user_id'),
        Index('idx_loan_loan_date', 'loan_date'),
    )

    def __repr__(self):
        return f'<Loan {self.id}: Book#{self.book_id} to {self.borrower_id_number}>'

    @property
    def is_overdue(self):
        """Overdue is derived: still active and past the due date"""
        if self.status == LoanStatusEnum.ACTIVE and self.due_date < date.today():
            return True
        return False

    @property
    def days_overdue(self):
        """Calculate number of days overdue"""
        if self.is_overdue:
            return (date.today() - self.due_date).days
        return 0

    @property
    def display_status(self):
        return "OVERDUE" if self.is_overdue else self.status.value

    def to_dict(self, include_relations=True):
        data = {
            'id': self.id,
            'book_id': self.book_id,
            'book_title': self.book_title,
            'operator_user_id': self.operator_user_id,
            'borrower_name': self.borrower_name,
            'borrower_id_number': self.borrower_id_number,
            'borrower_email': self.borrower_email,
            'loan_date': _iso(self.loan_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'status': self.status.value,
            'display_status': self.display_status,
            'notes': self.notes,
        }
        if include_relations:
            data['book'] = self.book.to_dict() if self.book else None
            data['operator'] = self.operator.to_dict() if self.operator else None
        return data


class AuditEntry(Base):
    """Append-only record of mutating actions"""
    __tablename__ = 'audit_entries'

    id = Column(Integer, primary_key=True)
    action = Column(Enum(AuditActionEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    entity_type = Column(String(20), nullable=False)  # Book, Loan, User
    entity_id = Column(Integer, nullable=True)
    acting_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    acting_user = relationship("User", back_populates="audit_entries")

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_acting_user', 'acting_user_id'),
        Index('idx_audit_created_at', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'acting_user_id': self.acting_user_id,
            'details': self.details,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<AuditEntry {self.action.value} {self.entity_type}#{self.entity_id}>'
