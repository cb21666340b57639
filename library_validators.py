"""
Library Form Validation Utilities
Field checks for book, loan and user payloads
"""

import re
from datetime import datetime, date
from dateutil import parser as date_parser

from db_single import get_config
from library_errors import ValidationError
from models import RoleEnum


EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

BOOK_TEXT_FIELDS = ('author', 'registration_code', 'sig_top', 'edition')
BOOK_UPDATE_FIELDS = ('title',) + BOOK_TEXT_FIELDS + ('registration_date', 'total_copies')
USER_UPDATE_FIELDS = ('name', 'email', 'password', 'role')


class FieldError(Exception):
    """A single field failed validation"""
    def __init__(self, field, message):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class FieldCollector:
    """Collects field errors so one request reports every bad field"""

    def __init__(self):
        self.errors = {}

    def check(self, validator, *args, **kwargs):
        try:
            return validator(*args, **kwargs)
        except FieldError as e:
            self.errors.setdefault(e.field, []).append(e.message)
            return None

    def raise_if_errors(self):
        if self.errors:
            raise ValidationError(self.errors)


class LibraryValidator:
    """Validates library form data"""

    @staticmethod
    def clean_text(value):
        """Strip strings; empty becomes None"""
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @staticmethod
    def validate_required_text(value, field, min_length=1, label=None):
        """
        Validate a required text field
        Returns:
            Stripped text
        Raises:
            FieldError if missing or shorter than min_length
        """
        label = label or field.replace('_', ' ').capitalize()
        cleaned = LibraryValidator.clean_text(value)
        if not cleaned:
            raise FieldError(field, f"{label} is required")
        if len(cleaned) < min_length:
            raise FieldError(field, f"{label} must have at least {min_length} characters")
        return cleaned

    @staticmethod
    def validate_int(value, field, minimum=None):
        """Coerce form values to int and check the lower bound"""
        if isinstance(value, bool):
            raise FieldError(field, "must be a whole number")
        try:
            number = int(str(value).strip()) if not isinstance(value, int) else value
        except (TypeError, ValueError):
            raise FieldError(field, "must be a whole number")
        if minimum is not None and number < minimum:
            raise FieldError(field, f"must be at least {minimum}")
        return number

    @staticmethod
    def validate_date(value, field, required=False):
        """
        Validate a date given as a date, datetime or string
        Returns:
            date object or None when optional and empty
        Raises:
            FieldError if missing (when required) or unparseable
        """
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        cleaned = LibraryValidator.clean_text(value)
        if not cleaned:
            if required:
                raise FieldError(field, "is required")
            return None
        try:
            return date_parser.isoparse(cleaned).date()
        except ValueError:
            try:
                return date_parser.parse(cleaned).date()
            except (ValueError, OverflowError):
                raise FieldError(field, "is not a valid date")

    @staticmethod
    def validate_email(value, field='email', required=True):
        """
        Validate email format
        Returns:
            Cleaned email (lowercase)
        """
        cleaned = LibraryValidator.clean_text(value)
        if not cleaned:
            if required:
                raise FieldError(field, "Email is required")
            return None
        cleaned = cleaned.lower()
        if not re.match(EMAIL_PATTERN, cleaned):
            raise FieldError(field, "Invalid email")
        return cleaned

    @staticmethod
    def validate_role(value, field='role'):
        if isinstance(value, RoleEnum):
            return value
        cleaned = LibraryValidator.clean_text(value)
        try:
            return RoleEnum(cleaned.upper() if cleaned else cleaned)
        except ValueError:
            raise FieldError(field, "Role must be ADMIN or USER")

    @staticmethod
    def validate_password(value, field='password'):
        min_length = get_config().MIN_PASSWORD_LENGTH
        if not value or len(value) < min_length:
            raise FieldError(field, f"Password must have at least {min_length} characters")
        return value

    @staticmethod
    def validate_id(value, field):
        return LibraryValidator.validate_int(value, field, minimum=1)


# ===== PER-OPERATION VALIDATION =====

def validate_book_create(data):
    """Clean a book creation payload"""
    v = LibraryValidator
    collector = FieldCollector()
    cleaned = {
        'title': collector.check(v.validate_required_text, data.get('title'), 'title', label='Title'),
        'registration_date': collector.check(v.validate_date, data.get('registration_date'), 'registration_date'),
    }
    for field in BOOK_TEXT_FIELDS:
        cleaned[field] = v.clean_text(data.get(field))

    raw_total = data.get('total_copies')
    if raw_total is None or raw_total == '':
        raw_total = 1
    cleaned['total_copies'] = collector.check(v.validate_int, raw_total, 'total_copies', minimum=1)

    raw_available = data.get('available_copies')
    cleaned['available_copies'] = None
    if raw_available is not None and raw_available != '':
        available = collector.check(v.validate_int, raw_available, 'available_copies', minimum=0)
        total = cleaned['total_copies']
        if available is not None and total is not None and available > total:
            collector.errors.setdefault('available_copies', []).append("cannot exceed total copies")
        cleaned['available_copies'] = available

    collector.raise_if_errors()
    return cleaned


def validate_book_update(data):
    """Clean a partial book update; only fields present are returned"""
    v = LibraryValidator
    collector = FieldCollector()
    cleaned = {}
    for field in BOOK_UPDATE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'title':
            cleaned[field] = collector.check(v.validate_required_text, value, 'title', label='Title')
        elif field == 'total_copies':
            cleaned[field] = collector.check(v.validate_int, value, 'total_copies', minimum=1)
        elif field == 'registration_date':
            cleaned[field] = collector.check(v.validate_date, value, 'registration_date')
        else:
            cleaned[field] = v.clean_text(value)
    collector.raise_if_errors()
    return cleaned


def validate_loan_create(data):
    """Clean a loan payload; book_id may be a single id or a list of ids"""
    v = LibraryValidator
    cfg = get_config()
    collector = FieldCollector()

    raw_ids = data.get('book_id')
    if raw_ids is None or raw_ids == '' or raw_ids == []:
        collector.errors['book_id'] = ["Select at least one book"]
        book_ids = []
    else:
        if not isinstance(raw_ids, (list, tuple)):
            raw_ids = [raw_ids]
        book_ids = [collector.check(v.validate_id, raw, 'book_id') for raw in raw_ids]
        book_ids = [book_id for book_id in book_ids if book_id is not None]
        if len(set(book_ids)) != len(book_ids):
            collector.errors.setdefault('book_id', []).append("The same book was selected twice")

    cleaned = {
        'book_ids': book_ids,
        'borrower_name': collector.check(
            v.validate_required_text, data.get('borrower_name'), 'borrower_name',
            min_length=cfg.MIN_BORROWER_NAME_LENGTH, label='Borrower name'),
        'borrower_id_number': collector.check(
            v.validate_required_text, data.get('borrower_id_number'), 'borrower_id_number',
            min_length=cfg.MIN_BORROWER_ID_LENGTH, label='Borrower ID number'),
        'borrower_email': collector.check(v.validate_email, data.get('borrower_email'), 'borrower_email', required=False),
        'due_date': collector.check(v.validate_date, data.get('due_date'), 'due_date', required=True),
        'notes': v.clean_text(data.get('notes')),
    }
    collector.raise_if_errors()
    return cleaned


def validate_loan_return(data):
    v = LibraryValidator
    collector = FieldCollector()
    cleaned = {
        'loan_id': collector.check(v.validate_id, data.get('loan_id'), 'loan_id'),
        'notes': v.clean_text(data.get('notes')),
    }
    collector.raise_if_errors()
    return cleaned


def validate_user_create(data):
    v = LibraryValidator
    cfg = get_config()
    collector = FieldCollector()
    raw_role = data.get('role') or RoleEnum.USER
    cleaned = {
        'name': collector.check(v.validate_required_text, data.get('name'), 'name',
                                min_length=cfg.MIN_USER_NAME_LENGTH, label='Name'),
        'email': collector.check(v.validate_email, data.get('email')),
        'password': collector.check(v.validate_password, data.get('password')),
        'role': collector.check(v.validate_role, raw_role),
    }
    collector.raise_if_errors()
    return cleaned


def validate_user_update(data):
    """Clean a partial user update; a blank password means unchanged"""
    v = LibraryValidator
    cfg = get_config()
    collector = FieldCollector()
    cleaned = {}
    if 'name' in data:
        cleaned['name'] = collector.check(v.validate_required_text, data['name'], 'name',
                                          min_length=cfg.MIN_USER_NAME_LENGTH, label='Name')
    if 'email' in data:
        cleaned['email'] = collector.check(v.validate_email, data['email'])
    if data.get('password'):
        cleaned['password'] = collector.check(v.validate_password, data['password'])
    if data.get('role'):
        cleaned['role'] = collector.check(v.validate_role, data['role'])
    collector.raise_if_errors()
    return cleaned


def validate_date_range(start, end):
    v = LibraryValidator
    collector = FieldCollector()
    start_date = collector.check(v.validate_date, start, 'start_date', required=True)
    end_date = collector.check(v.validate_date, end, 'end_date', required=True)
    if start_date and end_date and end_date < start_date:
        collector.errors.setdefault('end_date', []).append("must not be before the start date")
    collector.raise_if_errors()
    return start_date, end_date
