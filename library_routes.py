"""
Library Management Routes
JSON endpoints for books, loans, users, reports and the audit trail
"""

from flask import Blueprint, request, jsonify, Response
from flask_login import current_user
import logging

from library_access import caller_from_user
from library_helpers import (
    create_book, update_book, delete_book, get_book, search_books, list_books_page,
    create_loan, return_loan, list_loans, get_loan, list_overdue_loans,
    import_books_csv, export_books, loan_report, rows_to_csv, get_library_statistics
)
from user_helpers import create_user, update_user, delete_user, get_user, list_users
from audit_helpers import list_audit_entries

logger = logging.getLogger(__name__)

library_bp = Blueprint('library', __name__, url_prefix='/api')

STATUS_BY_CODE = {
    'unauthenticated': 401,
    'forbidden': 403,
    'validation_error': 400,
    'not_found': 404,
    'conflict': 409,
}


def _caller():
    return caller_from_user(current_user)


def _payload():
    """JSON body, or the form fields (book_id may repeat)"""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    data = request.form.to_dict()
    book_ids = request.form.getlist('book_id')
    if len(book_ids) > 1:
        data['book_id'] = book_ids
    return data


def _respond(result, success_status=200):
    if result['success']:
        return jsonify(result), success_status
    return jsonify(result), STATUS_BY_CODE.get(result.get('code'), 409)


def _csv_response(result, filename):
    if not result['success']:
        return _respond(result)
    return Response(
        rows_to_csv(result['data']),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


# ===== BOOKS =====
@library_bp.route('/books', methods=['GET'])
def books_index():
    """Search books; pass page to get a paginated listing"""
    search = request.args.get('q', '')
    if request.args.get('page'):
        result = list_books_page(_caller(), search, request.args.get('page'), request.args.get('page_size'))
    else:
        result = search_books(_caller(), search)
    return _respond(result)


@library_bp.route('/books', methods=['POST'])
def books_create():
    return _respond(create_book(_caller(), _payload()), 201)


@library_bp.route('/books/<int:book_id>', methods=['GET'])
def books_show(book_id):
    return _respond(get_book(_caller(), book_id))


@library_bp.route('/books/<int:book_id>', methods=['PUT', 'PATCH'])
def books_update(book_id):
    return _respond(update_book(_caller(), book_id, _payload()))


@library_bp.route('/books/<int:book_id>', methods=['DELETE'])
def books_delete(book_id):
    return _respond(delete_book(_caller(), book_id))


@library_bp.route('/books/import', methods=['POST'])
def books_import():
    """Import books from an uploaded CSV file (field 'file') or a raw CSV body"""
    upload = request.files.get('file')
    if upload is not None:
        logger.info(f"CSV upload received: {upload.filename}")
        csv_text = upload.read().decode('utf-8-sig', errors='replace')
    else:
        csv_text = request.get_data(as_text=True)
    return _respond(import_books_csv(_caller(), csv_text))


@library_bp.route('/books/export', methods=['GET'])
def books_export():
    result = export_books(_caller(), request.args.get('q', ''))
    if request.args.get('format') == 'csv':
        return _csv_response(result, 'inventory.csv')
    return _respond(result)


# ===== LOANS =====
@library_bp.route('/loans', methods=['GET'])
def loans_index():
    result = list_loans(
        _caller(),
        status=request.args.get('status') or None,
        start_date=request.args.get('start_date') or None,
        end_date=request.args.get('end_date') or None,
    )
    return _respond(result)


@library_bp.route('/loans', methods=['POST'])
def loans_create():
    return _respond(create_loan(_caller(), _payload()), 201)


@library_bp.route('/loans/overdue', methods=['GET'])
def loans_overdue():
    return _respond(list_overdue_loans(_caller()))


@library_bp.route('/loans/<int:loan_id>', methods=['GET'])
def loans_show(loan_id):
    return _respond(get_loan(_caller(), loan_id))


@library_bp.route('/loans/<int:loan_id>/return', methods=['POST'])
def loans_return(loan_id):
    payload = _payload()
    return _respond(return_loan(_caller(), loan_id, payload.get('notes')))


# ===== REPORTS =====
@library_bp.route('/reports/loans', methods=['GET'])
def reports_loans():
    result = loan_report(_caller(), request.args.get('start_date'), request.args.get('end_date'))
    if request.args.get('format') == 'csv':
        return _csv_response(result, 'loans.csv')
    return _respond(result)


@library_bp.route('/stats', methods=['GET'])
def stats():
    return _respond(get_library_statistics(_caller()))


# ===== USERS =====
@library_bp.route('/users', methods=['GET'])
def users_index():
    return _respond(list_users(_caller()))


@library_bp.route('/users', methods=['POST'])
def users_create():
    return _respond(create_user(_caller(), _payload()), 201)


@library_bp.route('/users/<int:user_id>', methods=['GET'])
def users_show(user_id):
    return _respond(get_user(_caller(), user_id))


@library_bp.route('/users/<int:user_id>', methods=['PUT', 'PATCH'])
def users_update(user_id):
    return _respond(update_user(_caller(), user_id, _payload()))


@library_bp.route('/users/<int:user_id>', methods=['DELETE'])
def users_delete(user_id):
    return _respond(delete_user(_caller(), user_id))


# ===== AUDIT =====
@library_bp.route('/audit', methods=['GET'])
def audit_index():
    limit = request.args.get('limit', type=int)
    return _respond(list_audit_entries(_caller(), request.args.get('entity_type') or None, limit))
