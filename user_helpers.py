"""
User Management Helper Functions
Staff accounts: administrator-only creation and deletion, self-service edits
"""

from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models import User, RoleEnum
from library_models import AuditActionEnum
from library_access import require_authenticated, require_admin, require_admin_or_self, is_admin
from library_errors import library_action, NotFound, Conflict, Forbidden, ValidationError
from library_validators import FieldError, LibraryValidator, validate_user_create, validate_user_update
from audit_helpers import record_audit, ENTITY_USER

logger = logging.getLogger(__name__)


def _email_taken(session: Session, email: str, exclude_user_id: int = None) -> bool:
    query = session.query(User).filter(func.lower(User.email) == email.lower())
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    return session.query(query.exists()).scalar()


def _coerce_user_id(user_id) -> int:
    try:
        return LibraryValidator.validate_id(user_id, 'user_id')
    except FieldError as e:
        raise ValidationError({e.field: [e.message]})


def _get_user_or_404(session: Session, user_id) -> User:
    user = session.get(User, _coerce_user_id(user_id))
    if not user:
        raise NotFound("User not found")
    return user


@library_action
def create_user(session: Session, caller, data: dict) -> User:
    """
    Create a staff account (admin only)

    Validations:
    - email unique (case-insensitive)
    - password stored as a salted one-way hash
    """
    require_admin(caller)
    cleaned = validate_user_create(data)

    if _email_taken(session, cleaned['email']):
        raise Conflict(f"A user with the email {cleaned['email']} already exists")

    user = User(name=cleaned['name'], email=cleaned['email'], role=cleaned['role'])
    user.set_password(cleaned['password'])
    session.add(user)
    session.flush()

    record_audit(session, caller.user_id, AuditActionEnum.CREATE, ENTITY_USER,
                 f"User created: {user.email} with role {user.role.value}", entity_id=user.id)

    logger.info(f"User created: user_id={user.id}, role={user.role.value}")
    return user


@library_action
def update_user(session: Session, caller, user_id, data: dict) -> User:
    """Update a user (admin or the user themself); only admins change roles"""
    require_authenticated(caller)
    require_admin_or_self(caller, _coerce_user_id(user_id))
    user = _get_user_or_404(session, user_id)
    cleaned = validate_user_update(data)

    new_role = cleaned.pop('role', None)
    if new_role is not None and new_role != user.role:
        if not is_admin(caller):
            raise Forbidden("Only administrators can change roles.")
        user.role = new_role

    if 'email' in cleaned and cleaned['email'] != user.email:
        if _email_taken(session, cleaned['email'], exclude_user_id=user.id):
            raise Conflict("The email is already in use by another user")
        user.email = cleaned['email']

    if 'name' in cleaned:
        user.name = cleaned['name']

    if 'password' in cleaned:
        user.set_password(cleaned['password'])

    record_audit(session, caller.user_id, AuditActionEnum.UPDATE, ENTITY_USER,
                 f"User updated: {user.email}", entity_id=user.id)

    logger.info(f"User updated: user_id={user.id} by user {caller.user_id}")
    return user


@library_action
def delete_user(session: Session, caller, user_id) -> dict:
    """
    Delete a user (admin only, never yourself, never an operator of loans).
    The user's audit history is reassigned to the deleting administrator.
    """
    require_admin(caller)
    target = _get_user_or_404(session, user_id)

    if target.id == caller.user_id:
        raise Forbidden("You cannot delete your own account")

    loan_count = len(target.operated_loans)
    if loan_count > 0:
        raise Conflict(
            f"Cannot delete. The user recorded {loan_count} loan(s). Reassign or remove those loans first."
        )

    admin = session.get(User, caller.user_id)
    if admin is None:
        raise NotFound("Acting administrator not found")

    reassigned = 0
    for entry in list(target.audit_entries):
        entry.acting_user = admin
        reassigned += 1

    deleted_id = target.id
    record_audit(session, caller.user_id, AuditActionEnum.DELETE, ENTITY_USER,
                 f"User deleted: {target.email} ({target.name})", entity_id=deleted_id)
    session.delete(target)

    logger.info(f"User deleted: user_id={deleted_id}, audit entries reassigned={reassigned}")
    return {'id': deleted_id, 'reassigned_audit_entries': reassigned}


@library_action
def get_user(session: Session, caller, user_id) -> User:
    require_authenticated(caller)
    require_admin_or_self(caller, _coerce_user_id(user_id))
    return _get_user_or_404(session, user_id)


@library_action
def list_users(session: Session, caller):
    """All users, newest first (admin only)"""
    require_admin(caller)
    return session.query(User).order_by(User.created_at.desc(), User.id.desc()).all()


def authenticate(session: Session, email: str, password: str):
    """Return the user when the credentials match, else None"""
    if not email or not password:
        return None
    user = session.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
    if user and user.check_password(password):
        return user
    return None


def ensure_admin(session: Session, email: str, password: str, name: str = "Administrator"):
    """Create the default administrator unless the email already exists"""
    email = email.strip().lower()
    existing = session.query(User).filter(func.lower(User.email) == email).first()
    if existing:
        return existing, False
    admin = User(name=name, email=email, role=RoleEnum.ADMIN)
    admin.set_password(password)
    session.add(admin)
    session.flush()
    return admin, True
