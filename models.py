"""
Core Models
Declarative base and staff accounts shared by every library module
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, Index
from sqlalchemy.orm import declarative_base, relationship
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
import enum

Base = declarative_base()


# ===== ENUMS =====
class RoleEnum(enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


# ===== USER MODEL =====
class User(Base, UserMixin):
    """Front-desk staff and administrator accounts"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    email = Column(String(120), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(RoleEnum, values_callable=lambda obj: [e.value for e in obj]), default=RoleEnum.USER, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    operated_loans = relationship("Loan", back_populates="operator")
    audit_entries = relationship("AuditEntry", back_populates="acting_user")

    __table_args__ = (
        Index('idx_user_role', 'role'),
    )

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == RoleEnum.ADMIN

    def to_dict(self):
        """Serialize without the password hash"""
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value if self.role else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<User {self.email} ({self.role.value if self.role else None})>'
