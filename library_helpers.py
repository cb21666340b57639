"""
Library Management Helper Functions
Business logic for book inventory and the loan/return workflow
"""

import csv
import io
import math
import logging
from datetime import datetime, date, time
from sqlalchemy import func, or_, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from db_single import get_config
from library_models import Book, Loan, LoanStatusEnum, AuditActionEnum
from library_access import require_authenticated
from library_errors import library_action, NotFound, Conflict, ValidationError
from library_validators import (
    FieldError, LibraryValidator, validate_book_create, validate_book_update,
    validate_loan_create, validate_loan_return, validate_date_range
)
from audit_helpers import record_audit, ENTITY_BOOK, ENTITY_LOAN

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"
CSV_MIN_COLUMNS = 4
LIKE_ESCAPE = "/"


# ===== SEQUENCE NUMBER ASSIGNMENT =====

def _max_sequence_query(session: Session):
    # Locking read: sees rows committed after the transaction snapshot was taken
    return session.query(func.max(Book.sequence_number)).with_for_update()


def next_sequence_number(session: Session) -> int:
    """Next display number: highest existing sequence number plus one"""
    current = _max_sequence_query(session).scalar()
    return (current or 0) + 1


def insert_book(session: Session, **fields) -> Book:
    """
    Insert a book under the next sequence number.

    The number is read and written inside a savepoint; the unique constraint
    on sequence_number rejects a concurrent duplicate and the read is retried.
    """
    attempts = get_config().SEQUENCE_RETRY_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            with session.begin_nested():
                book = Book(sequence_number=next_sequence_number(session), **fields)
                session.add(book)
            return book
        except IntegrityError:
            logger.warning(f"Sequence number collision for '{fields.get('title')}' (attempt {attempt}/{attempts})")
    raise Conflict("Could not assign a sequence number to the book, please retry")


# ===== BOOK MANAGEMENT =====

def _get_book_or_404(session: Session, book_id) -> Book:
    book_id = _coerce_id(book_id, 'book_id')
    book = session.get(Book, book_id)
    if not book:
        raise NotFound("Book not found")
    return book


def _locked_book_query(session: Session, book_id: int):
    return session.query(Book).filter(Book.id == book_id).with_for_update()


def _coerce_id(value, field):
    try:
        return LibraryValidator.validate_id(value, field)
    except FieldError as e:
        raise ValidationError({e.field: [e.message]})


def _active_loan_count(session: Session, **filters) -> int:
    return session.query(Loan).filter_by(status=LoanStatusEnum.ACTIVE, **filters).count()


@library_action
def create_book(session: Session, caller, data: dict) -> Book:
    """Add a new book; all copies start available unless overridden"""
    require_authenticated(caller)
    cleaned = validate_book_create(data)

    available = cleaned.pop('available_copies')
    if available is None:
        available = cleaned['total_copies']

    book = insert_book(session, available_copies=available, **cleaned)
    record_audit(session, caller.user_id, AuditActionEnum.CREATE, ENTITY_BOOK,
                 f"Created book: {book.title} (No. {book.sequence_number})", entity_id=book.id)

    logger.info(f"Book created: book_id={book.id}, sequence_number={book.sequence_number}")
    return book


@library_action
def update_book(session: Session, caller, book_id, data: dict) -> Book:
    """Update provided fields; a new total shifts availability by the same delta"""
    require_authenticated(caller)
    book_id = _coerce_id(book_id, 'book_id')
    book = _locked_book_query(session, book_id).one_or_none()
    if not book:
        raise NotFound("Book not found")
    cleaned = validate_book_update(data)

    changes = []
    new_total = cleaned.pop('total_copies', None)
    if new_total is not None and new_total != book.total_copies:
        old_total = book.total_copies
        old_available = book.available_copies
        delta = new_total - old_total

        # Shift availability in SQL so a loan or return committed meanwhile is kept
        shifted = Book.available_copies + delta
        session.query(Book).filter(Book.id == book.id).update({
            Book.total_copies: new_total,
            Book.available_copies: case((shifted < 0, 0), else_=shifted),
        }, synchronize_session='fetch')
        session.refresh(book)
        changes.append(f"copies {old_total}->{new_total} (available {old_available}->{book.available_copies})")

    for field, value in cleaned.items():
        if getattr(book, field) != value:
            setattr(book, field, value)
            changes.append(field)

    record_audit(session, caller.user_id, AuditActionEnum.UPDATE, ENTITY_BOOK,
                 f"Updated book: {book.title} (No. {book.sequence_number}): {', '.join(changes) or 'no changes'}",
                 entity_id=book.id)

    logger.info(f"Book updated: book_id={book.id}, changes={changes}")
    return book


@library_action
def delete_book(session: Session, caller, book_id) -> dict:
    """Delete book (only if it has no active loans)"""
    require_authenticated(caller)
    book = _get_book_or_404(session, book_id)

    active_loans = _active_loan_count(session, book_id=book.id)
    if active_loans > 0:
        raise Conflict(f"Cannot delete. The book has {active_loans} active loan(s).")

    # Returned loans keep their title snapshot and lose the book reference
    for loan in list(book.loans):
        loan.book = None

    record_audit(session, caller.user_id, AuditActionEnum.DELETE, ENTITY_BOOK,
                 f"Deleted book: {book.title} (No. {book.sequence_number})", entity_id=book.id)
    deleted_id = book.id
    session.delete(book)

    logger.info(f"Book deleted: book_id={deleted_id}")
    return {'id': deleted_id}


@library_action
def get_book(session: Session, caller, book_id) -> Book:
    require_authenticated(caller)
    return _get_book_or_404(session, book_id)


def _escape_like(text: str) -> str:
    """Make % and _ in user input match literally"""
    for char in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(char, LIKE_ESCAPE + char)
    return text


def _book_search_query(session: Session, search: str = None):
    query = session.query(Book)
    search = (search or '').strip()
    if search:
        search_pattern = f"%{_escape_like(search.lower())}%"
        query = query.filter(
            or_(
                Book.title.ilike(search_pattern, escape=LIKE_ESCAPE),
                Book.author.ilike(search_pattern, escape=LIKE_ESCAPE),
                Book.registration_code.ilike(search_pattern, escape=LIKE_ESCAPE),
                Book.sig_top.ilike(search_pattern, escape=LIKE_ESCAPE)
            )
        )
    return query.order_by(Book.sequence_number.asc())


@library_action
def search_books(session: Session, caller, search: str = None):
    """Case-insensitive match over title, author, registration code and shelf code"""
    require_authenticated(caller)
    return _book_search_query(session, search).all()


@library_action
def list_books_page(session: Session, caller, search: str = None, page=1, page_size=None) -> dict:
    """Paginated book search"""
    require_authenticated(caller)
    cfg = get_config()
    page = max(_safe_int(page, 1), 1)
    page_size = _safe_int(page_size, cfg.DEFAULT_PAGE_SIZE)
    page_size = min(max(page_size, 1), cfg.MAX_PAGE_SIZE)

    query = _book_search_query(session, search)
    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return {
        'items': items,
        'total': total,
        'page': page,
        'page_size': page_size,
        'total_pages': math.ceil(total / page_size) if total else 0,
    }


def _safe_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ===== LOAN MANAGEMENT =====

def _check_borrower_limit(session: Session, borrower_id_number: str, requested: int):
    """Reject when the borrower would exceed the active loan cap"""
    limit = get_config().MAX_ACTIVE_LOANS_PER_BORROWER
    active = _active_loan_count(session, borrower_id_number=borrower_id_number)
    if active + requested <= limit:
        return
    if limit == 1:
        raise Conflict(f"The borrower with ID number {borrower_id_number} already has a pending loan")
    raise Conflict(
        f"The borrower already has {active} active loan(s) and cannot take {requested} more (maximum {limit})."
    )


@library_action
def create_loan(session: Session, caller, data: dict):
    """
    Lend one or more books to a borrower.

    Every selected book must exist and have a copy available, and the borrower
    must stay within the active loan cap. Each loan is inserted with its
    availability decrement and audit entry in the same transaction.
    Returns the loan, or a list of loans when ``book_id`` was a list.
    """
    require_authenticated(caller)
    cleaned = validate_loan_create(data)
    book_ids = cleaned['book_ids']

    books = session.query(Book).filter(Book.id.in_(book_ids)).with_for_update().all()
    if len(books) != len(book_ids):
        raise NotFound("Book not found" if len(book_ids) == 1 else "One or more selected books do not exist")
    books_by_id = {book.id: book for book in books}

    for book_id in book_ids:
        book = books_by_id[book_id]
        if book.available_copies <= 0:
            raise Conflict(f'No copies available of "{book.title}"')

    borrower_id_number = cleaned['borrower_id_number']
    _check_borrower_limit(session, borrower_id_number, len(book_ids))

    loans = []
    for book_id in book_ids:
        book = books_by_id[book_id]

        # Conditional decrement: a concurrent loan of the last copy updates no row
        updated = session.query(Book).filter(
            Book.id == book.id,
            Book.available_copies > 0
        ).update({Book.available_copies: Book.available_copies - 1}, synchronize_session='fetch')
        if not updated:
            raise Conflict(f'No copies available of "{book.title}"')

        loan = Loan(
            book=book,
            book_title=book.title,
            operator_user_id=caller.user_id,
            borrower_name=cleaned['borrower_name'],
            borrower_id_number=borrower_id_number,
            borrower_email=cleaned['borrower_email'],
            loan_date=datetime.utcnow(),
            due_date=cleaned['due_date'],
            status=LoanStatusEnum.ACTIVE,
            notes=cleaned['notes'],
        )
        session.add(loan)
        session.flush()

        record_audit(session, caller.user_id, AuditActionEnum.CREATE, ENTITY_LOAN,
                     f"Loan created: {book.title} for {loan.borrower_name} (ID: {borrower_id_number})",
                     entity_id=loan.id)
        loans.append(loan)
        logger.info(f"Loan created: loan_id={loan.id}, book_id={book.id}, available={book.available_copies}")

    if isinstance(data.get('book_id'), (list, tuple)):
        return loans
    return loans[0]


@library_action
def return_loan(session: Session, caller, loan_id, notes: str = None) -> Loan:
    """Mark an active loan returned and give its copy back to the book"""
    require_authenticated(caller)
    cleaned = validate_loan_return({'loan_id': loan_id, 'notes': notes})

    loan = session.get(Loan, cleaned['loan_id'])
    if not loan:
        raise NotFound("Loan not found")
    if loan.status == LoanStatusEnum.RETURNED:
        raise Conflict("This loan was already returned")

    loan.status = LoanStatusEnum.RETURNED
    loan.return_date = datetime.utcnow()
    if cleaned['notes']:
        loan.notes = f"{loan.notes or ''}\n[Return] {cleaned['notes']}".strip()

    # Capped at total_copies in case the total was lowered while copies were out
    updated = session.query(Book).filter(
        Book.id == loan.book_id,
        Book.available_copies < Book.total_copies
    ).update({Book.available_copies: Book.available_copies + 1}, synchronize_session='fetch')
    if not updated:
        logger.warning(f"Book {loan.book_id} already at full availability on return of loan {loan.id}")

    record_audit(session, caller.user_id, AuditActionEnum.RETURN, ENTITY_LOAN,
                 f"Book returned: {loan.book_title} from {loan.borrower_name}", entity_id=loan.id)

    logger.info(f"Loan returned: loan_id={loan.id}, book_id={loan.book_id}")
    return loan


def _loan_query(session: Session):
    return session.query(Loan).options(joinedload(Loan.book), joinedload(Loan.operator))


def _filter_loans(query, status=None, start_date=None, end_date=None):
    if status:
        status = str(status).upper()
        if status == "OVERDUE":
            query = query.filter(Loan.status == LoanStatusEnum.ACTIVE, Loan.due_date < date.today())
        else:
            try:
                query = query.filter(Loan.status == LoanStatusEnum(status))
            except ValueError:
                raise ValidationError({'status': ["Status must be ACTIVE, RETURNED or OVERDUE"]})
    if start_date:
        query = query.filter(Loan.loan_date >= datetime.combine(start_date, time.min))
    if end_date:
        # Inclusive upper bound: the whole end day counts
        query = query.filter(Loan.loan_date <= datetime.combine(end_date, time.max))
    return query


@library_action
def list_loans(session: Session, caller, status=None, start_date=None, end_date=None):
    """Loans with book and operator, newest first"""
    require_authenticated(caller)
    v = LibraryValidator
    try:
        start = v.validate_date(start_date, 'start_date')
        end = v.validate_date(end_date, 'end_date')
    except FieldError as e:
        raise ValidationError({e.field: [e.message]})
    query = _filter_loans(_loan_query(session), status, start, end)
    return query.order_by(Loan.loan_date.desc(), Loan.id.desc()).all()


@library_action
def get_loan(session: Session, caller, loan_id) -> Loan:
    require_authenticated(caller)
    loan = _loan_query(session).filter(Loan.id == _coerce_id(loan_id, 'loan_id')).first()
    if not loan:
        raise NotFound("Loan not found")
    return loan


@library_action
def list_overdue_loans(session: Session, caller):
    """Active loans past their due date, oldest due first"""
    require_authenticated(caller)
    return _filter_loans(_loan_query(session), "OVERDUE").order_by(Loan.due_date.asc()).all()


# ===== IMPORT AND EXPORT =====

@library_action
def import_books_csv(session: Session, caller, csv_text: str) -> dict:
    """
    Import books from CSV text.

    Columns: shelf code, registration code, author, title, edition, copies.
    The header row is skipped, as are blank rows and rows with fewer than
    four columns.
    """
    require_authenticated(caller)
    if csv_text is None or not str(csv_text).strip():
        raise ValidationError({'file': ["No file was provided"]})

    imported = 0
    skipped = 0
    errors = []
    reader = csv.reader(io.StringIO(csv_text))
    next(reader, None)  # header

    for line_number, row in enumerate(reader, start=2):
        values = [value.strip() for value in row]
        if not any(values):
            continue
        if len(values) < CSV_MIN_COLUMNS:
            skipped += 1
            continue

        def column(index):
            return values[index] if len(values) > index and values[index] else None

        copies = _safe_int(column(5), 1)
        if copies < 1:
            copies = 1
        title = column(3) or UNTITLED
        try:
            insert_book(
                session,
                sig_top=column(0),
                registration_code=column(1),
                author=column(2),
                title=title,
                edition=column(4),
                total_copies=copies,
                available_copies=copies,
            )
            imported += 1
        except Conflict as e:
            errors.append(f"Row {line_number}: {e.message}")
            logger.error(f"Error importing book '{title}': {e.message}")

    record_audit(session, caller.user_id, AuditActionEnum.CREATE, ENTITY_BOOK,
                 f"Imported {imported} book(s) from CSV")
    logger.info(f"CSV import finished: imported={imported}, skipped={skipped}, errors={len(errors)}")
    return {'imported': imported, 'skipped': skipped, 'errors': errors}


def _format_date(value):
    return value.strftime('%Y-%m-%d') if value else ''


@library_action
def export_books(session: Session, caller, search: str = None):
    """Flat inventory rows for spreadsheet export"""
    require_authenticated(caller)
    return [
        {
            'SIG. TOP': book.sig_top or '',
            'Code': book.registration_code or '',
            'Author': book.author or '',
            'Title': book.title,
            'Edition': book.edition or '',
            'Copies': book.total_copies,
            'Available': book.available_copies,
            'Registration Date': _format_date(book.registration_date),
        }
        for book in _book_search_query(session, search).all()
    ]


@library_action
def loan_report(session: Session, caller, start_date, end_date):
    """Flat loan rows for a date range, both ends inclusive"""
    require_authenticated(caller)
    start, end = validate_date_range(start_date, end_date)
    loans = _filter_loans(_loan_query(session), start_date=start, end_date=end)
    return [
        {
            'Book': loan.book_title,
            'Author': (loan.book.author if loan.book else None) or '-',
            'Code': (loan.book.registration_code if loan.book else None) or '-',
            'Borrower': loan.borrower_name,
            'ID Number': loan.borrower_id_number,
            'Email': loan.borrower_email or '-',
            'Loan Date': _format_date(loan.loan_date),
            'Due Date': _format_date(loan.due_date),
            'Return Date': _format_date(loan.return_date) or '-',
            'Status': loan.display_status,
            'Operator': loan.operator.name if loan.operator else '-',
            'Notes': loan.notes or '-',
        }
        for loan in loans.order_by(Loan.loan_date.desc(), Loan.id.desc()).all()
    ]


def rows_to_csv(rows) -> str:
    """Render export rows as CSV text (header from the first row)"""
    output = io.StringIO()
    if not rows:
        return ''
    writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


# ===== REPORTS AND QUERIES =====

@library_action
def get_library_statistics(session: Session, caller) -> dict:
    """Get overall library statistics"""
    require_authenticated(caller)

    total_copies = session.query(func.sum(Book.total_copies)).scalar() or 0
    available_copies = session.query(func.sum(Book.available_copies)).scalar() or 0
    active_loans = _active_loan_count(session)
    overdue_loans = session.query(Loan).filter(
        Loan.status == LoanStatusEnum.ACTIVE,
        Loan.due_date < date.today()
    ).count()

    return {
        'total_titles': session.query(Book).count(),
        'total_copies': int(total_copies),
        'available_copies': int(available_copies),
        'active_loans': active_loans,
        'overdue_loans': overdue_loans,
        'total_loans': session.query(Loan).count(),
    }
