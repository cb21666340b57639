"""
Library Error Taxonomy and Operation Boundary
Domain operations raise LibraryError subclasses; library_action turns every
outcome into a {success, data} / {success, error, field_errors} result
"""

from functools import wraps
from sqlalchemy.exc import IntegrityError
import logging

from db_single import get_session

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Unexpected error while processing the request"


class LibraryError(Exception):
    """Base class for expected business-rule failures"""
    code = "conflict"

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class Unauthenticated(LibraryError):
    code = "unauthenticated"

    def __init__(self, message="Not authorized. You must sign in."):
        super().__init__(message)


class Forbidden(LibraryError):
    code = "forbidden"

    def __init__(self, message="Access denied."):
        super().__init__(message)


class ValidationError(LibraryError):
    """Malformed input, with messages indexed by field"""
    code = "validation_error"

    def __init__(self, field_errors, message="Invalid data"):
        self.field_errors = field_errors
        super().__init__(message)


class NotFound(LibraryError):
    code = "not_found"


class Conflict(LibraryError):
    code = "conflict"


def success(data=None):
    return {'success': True, 'data': data}


def failure(error, code="conflict", field_errors=None):
    result = {'success': False, 'error': error, 'code': code}
    if field_errors:
        result['field_errors'] = field_errors
    return result


def serialize(value):
    """Convert models (and containers of models) into plain structures"""
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


def library_action(func):
    """
    Run a domain operation as one transaction and return a tagged result.

    The wrapped function takes ``(session, caller, ...)``. Callers invoke the
    wrapper as ``action(caller, ...)``; pass ``session=`` to reuse an open
    session, otherwise a new one is opened and closed around the call.
    """
    @wraps(func)
    def wrapper(caller, *args, session=None, **kwargs):
        owns_session = session is None
        if owns_session:
            session = get_session()
        try:
            value = func(session, caller, *args, **kwargs)
            session.commit()
            return success(serialize(value))
        except ValidationError as e:
            session.rollback()
            logger.warning(f"{func.__name__} rejected: {e.message} {e.field_errors}")
            return failure(e.message, e.code, e.field_errors)
        except LibraryError as e:
            session.rollback()
            logger.warning(f"{func.__name__} rejected: {e.message}")
            return failure(e.message, e.code)
        except IntegrityError:
            session.rollback()
            logger.exception(f"{func.__name__} hit an integrity error")
            return failure("The change conflicts with existing records", Conflict.code)
        except Exception:
            session.rollback()
            logger.exception(f"{func.__name__} failed")
            return failure(GENERIC_ERROR_MESSAGE, Conflict.code)
        finally:
            if owns_session:
                session.close()

    return wrapper
