"""
Access checks for library operations
The caller's identity travels explicitly as a CallerContext
"""

from collections import namedtuple

from models import RoleEnum
from library_errors import Unauthenticated, Forbidden


CallerContext = namedtuple('CallerContext', ['user_id', 'role'])


def caller_from_user(user):
    """Build a CallerContext from a Flask-Login user (anonymous gives None)"""
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    return CallerContext(user_id=user.id, role=user.role)


def is_admin(caller):
    return caller is not None and caller.role == RoleEnum.ADMIN


def require_authenticated(caller):
    if caller is None or caller.user_id is None:
        raise Unauthenticated()
    return caller


def require_admin(caller):
    require_authenticated(caller)
    if not is_admin(caller):
        raise Forbidden("Access denied. Only administrators can perform this action.")
    return caller


def require_admin_or_self(caller, user_id):
    require_authenticated(caller)
    if not is_admin(caller) and caller.user_id != user_id:
        raise Forbidden("You do not have permission to edit this user.")
    return caller
