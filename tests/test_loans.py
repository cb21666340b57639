from datetime import date, datetime, timedelta

from db_single import get_config, session_scope
from library_helpers import (
    create_loan, return_loan, list_loans, get_loan, list_overdue_loans,
    loan_report, get_library_statistics
)
from library_models import Book, Loan, AuditEntry, AuditActionEnum, LoanStatusEnum


def test_two_copies_three_borrowers(admin_caller, make_book, loan_payload, fetch):
    book = make_book(total_copies=2)

    loan_a = create_loan(admin_caller, loan_payload(book["id"], borrower_id="11111111"))
    assert loan_a["success"], loan_a
    assert loan_a["data"]["status"] == "ACTIVE"
    assert fetch(Book, book["id"]).available_copies == 1

    loan_b = create_loan(admin_caller, loan_payload(book["id"], borrower_id="22222222"))
    assert loan_b["success"], loan_b
    assert fetch(Book, book["id"]).available_copies == 0

    loan_c = create_loan(admin_caller, loan_payload(book["id"], borrower_id="33333333"))
    assert loan_c["success"] is False
    assert loan_c["code"] == "conflict"

    returned = return_loan(admin_caller, loan_a["data"]["id"])
    assert returned["success"], returned
    assert returned["data"]["status"] == "RETURNED"
    assert returned["data"]["return_date"] is not None
    assert fetch(Book, book["id"]).available_copies == 1


def test_no_copies_leaves_availability_unchanged(admin_caller, make_book, loan_payload, fetch, count_rows):
    book = make_book(total_copies=2, available_copies=0)

    result = create_loan(admin_caller, loan_payload(book["id"]))

    assert result["code"] == "conflict"
    assert "No copies available" in result["error"]
    assert fetch(Book, book["id"]).available_copies == 0
    assert count_rows(Loan) == 0


def test_round_trip_restores_availability(staff_caller, make_book, loan_payload, fetch):
    book = make_book(total_copies=4)

    loan = create_loan(staff_caller, loan_payload(book["id"]))["data"]
    assert fetch(Book, book["id"]).available_copies == 3
    return_loan(staff_caller, loan["id"])

    assert fetch(Book, book["id"]).available_copies == 4


def test_borrower_with_active_loan_is_rejected_on_retry(admin_caller, make_book, loan_payload, fetch):
    first = make_book(title="Rayuela")
    second = make_book(title="Ficciones")
    assert create_loan(admin_caller, loan_payload(first["id"], borrower_id="00123456"))["success"]

    for _ in range(2):
        result = create_loan(admin_caller, loan_payload(second["id"], borrower_id=" 00123456 "))
        assert result["code"] == "conflict"
        assert "pending loan" in result["error"]

    assert fetch(Book, second["id"]).available_copies == 1


def test_borrower_may_borrow_again_after_return(admin_caller, make_book, loan_payload):
    book = make_book(total_copies=2)
    loan = create_loan(admin_caller, loan_payload(book["id"]))["data"]
    return_loan(admin_caller, loan["id"])

    assert create_loan(admin_caller, loan_payload(book["id"]))["success"]


def test_second_return_is_rejected(admin_caller, make_book, loan_payload, fetch, count_rows):
    book = make_book(total_copies=2)
    other = create_loan(admin_caller, loan_payload(book["id"], borrower_id="44444444"))["data"]
    loan = create_loan(admin_caller, loan_payload(book["id"]))["data"]
    return_loan(admin_caller, loan["id"])

    again = return_loan(admin_caller, loan["id"])

    assert again["code"] == "conflict"
    assert again["error"] == "This loan was already returned"
    assert fetch(Book, book["id"]).available_copies == 1
    assert fetch(Loan, other["id"]).status == LoanStatusEnum.ACTIVE
    assert count_rows(AuditEntry, entity_type="Loan", action=AuditActionEnum.RETURN) == 1


def test_return_appends_notes(admin_caller, make_book, loan_payload):
    book = make_book()
    loan = create_loan(admin_caller, loan_payload(book["id"], notes="Buen estado"))["data"]

    returned = return_loan(admin_caller, loan["id"], "Tapa rayada")["data"]

    assert returned["notes"] == "Buen estado\n[Return] Tapa rayada"


def test_return_unknown_loan(admin_caller):
    assert return_loan(admin_caller, 999)["code"] == "not_found"


def test_loan_validation_reports_fields(admin_caller, make_book, fetch):
    book = make_book()

    result = create_loan(admin_caller, {"book_id": book["id"], "borrower_name": "A", "borrower_id_number": "12"})

    assert result["code"] == "validation_error"
    assert set(result["field_errors"]) == {"borrower_name", "borrower_id_number", "due_date"}
    assert fetch(Book, book["id"]).available_copies == 1


def test_loan_rejects_unparseable_due_date(admin_caller, make_book, loan_payload):
    book = make_book()
    result = create_loan(admin_caller, loan_payload(book["id"], due_date="not a date"))
    assert result["field_errors"] == {"due_date": ["is not a valid date"]}


def test_loan_unknown_book(admin_caller, loan_payload):
    assert create_loan(admin_caller, loan_payload(999))["code"] == "not_found"


def test_loan_requires_session(app, make_book, loan_payload, fetch):
    book = make_book()
    assert create_loan(None, loan_payload(book["id"]))["code"] == "unauthenticated"
    assert fetch(Book, book["id"]).available_copies == 1


def test_loan_records_operator_and_joins_book(staff_caller, make_book, loan_payload, count_rows):
    book = make_book(title="Ficciones")

    loan = create_loan(staff_caller, loan_payload(book["id"], borrower_email="ANA@Example.com"))["data"]

    assert loan["operator_user_id"] == staff_caller.user_id
    assert loan["operator"]["email"] == "staff@library.local"
    assert loan["book"]["title"] == "Ficciones"
    assert loan["book"]["available_copies"] == 0
    assert loan["borrower_email"] == "ana@example.com"
    assert loan["loan_date"] is not None
    assert count_rows(AuditEntry, entity_type="Loan", action=AuditActionEnum.CREATE) == 1


def test_multi_book_loan_cap(monkeypatch, admin_caller, make_book, loan_payload, fetch):
    monkeypatch.setattr(get_config(), "MAX_ACTIVE_LOANS_PER_BORROWER", 3)
    books = [make_book(title=f"Tomo {n}") for n in range(4)]

    pair = create_loan(admin_caller, loan_payload([books[0]["id"], books[1]["id"]]))
    assert pair["success"], pair
    assert len(pair["data"]) == 2

    over_cap = create_loan(admin_caller, loan_payload([books[2]["id"], books[3]["id"]]))
    assert over_cap["code"] == "conflict"
    assert fetch(Book, books[2]["id"]).available_copies == 1
    assert fetch(Book, books[3]["id"]).available_copies == 1

    third = create_loan(admin_caller, loan_payload(books[2]["id"]))
    assert third["success"], third


def test_multi_book_loan_is_all_or_nothing(monkeypatch, admin_caller, make_book, loan_payload, fetch, count_rows):
    monkeypatch.setattr(get_config(), "MAX_ACTIVE_LOANS_PER_BORROWER", 3)
    available = make_book(title="Disponible")
    gone = make_book(title="Agotado", total_copies=1, available_copies=0)

    result = create_loan(admin_caller, loan_payload([available["id"], gone["id"]]))

    assert result["code"] == "conflict"
    assert fetch(Book, available["id"]).available_copies == 1
    assert count_rows(Loan) == 0


def test_same_book_twice_in_one_request(admin_caller, make_book, loan_payload):
    book = make_book(total_copies=2)
    result = create_loan(admin_caller, loan_payload([book["id"], book["id"]]))
    assert result["code"] == "validation_error"
    assert "book_id" in result["field_errors"]


def test_overdue_is_derived_from_due_date(admin_caller, make_book, loan_payload):
    late_book = make_book(title="Atrasado")
    ok_book = make_book(title="A tiempo")
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    late = create_loan(admin_caller, loan_payload(late_book["id"], borrower_id="55555555", due_date=yesterday))["data"]
    create_loan(admin_caller, loan_payload(ok_book["id"], borrower_id="66666666"))

    assert late["status"] == "ACTIVE"
    assert late["display_status"] == "OVERDUE"
    assert [loan["id"] for loan in list_overdue_loans(admin_caller)["data"]] == [late["id"]]
    assert [loan["id"] for loan in list_loans(admin_caller, status="overdue")["data"]] == [late["id"]]
    assert get_library_statistics(admin_caller)["data"]["overdue_loans"] == 1

    return_loan(admin_caller, late["id"])
    assert list_overdue_loans(admin_caller)["data"] == []


def _set_loan_date(loan_id, when):
    with session_scope() as session:
        session.get(Loan, loan_id).loan_date = when


def test_list_loans_date_range_includes_whole_end_day(admin_caller, make_book, loan_payload):
    books = [make_book(title=f"Tomo {n}") for n in range(3)]
    loans = [
        create_loan(admin_caller, loan_payload(book["id"], borrower_id=f"7000{n}"))["data"]
        for n, book in enumerate(books)
    ]
    _set_loan_date(loans[0]["id"], datetime(2024, 3, 1, 0, 0))
    _set_loan_date(loans[1]["id"], datetime(2024, 3, 10, 23, 30))
    _set_loan_date(loans[2]["id"], datetime(2024, 3, 11, 0, 5))

    in_range = list_loans(admin_caller, start_date="2024-03-01", end_date="2024-03-10")["data"]

    assert [loan["id"] for loan in in_range] == [loans[1]["id"], loans[0]["id"]]


def test_list_loans_status_filter(admin_caller, make_book, loan_payload):
    book = make_book(total_copies=2)
    first = create_loan(admin_caller, loan_payload(book["id"], borrower_id="10000"))["data"]
    second = create_loan(admin_caller, loan_payload(book["id"], borrower_id="20000"))["data"]
    return_loan(admin_caller, first["id"])

    assert [loan["id"] for loan in list_loans(admin_caller, status="RETURNED")["data"]] == [first["id"]]
    assert [loan["id"] for loan in list_loans(admin_caller, status="ACTIVE")["data"]] == [second["id"]]
    assert list_loans(admin_caller, status="LOST")["code"] == "validation_error"
    assert list_loans(admin_caller, start_date="31/31/2024")["code"] == "validation_error"


def test_get_loan(admin_caller, make_book, loan_payload):
    book = make_book()
    loan = create_loan(admin_caller, loan_payload(book["id"]))["data"]
    assert get_loan(admin_caller, loan["id"])["data"]["borrower_name"] == "Ana Torres"
    assert get_loan(admin_caller, 999)["code"] == "not_found"


def test_loan_report_rows(admin_caller, make_book, loan_payload):
    book = make_book(title="Ficciones", author="Borges", registration_code="R-9")
    loan = create_loan(admin_caller, loan_payload(book["id"]))["data"]
    _set_loan_date(loan["id"], datetime(2024, 5, 20, 18, 0))

    rows = loan_report(admin_caller, "2024-05-20", "2024-05-20")["data"]

    assert len(rows) == 1
    row = rows[0]
    assert row["Book"] == "Ficciones"
    assert row["Author"] == "Borges"
    assert row["Code"] == "R-9"
    assert row["Loan Date"] == "2024-05-20"
    assert row["Return Date"] == "-"
    assert row["Status"] == "ACTIVE"
    assert row["Operator"] == get_config().ADMIN_NAME


def test_loan_report_requires_ordered_range(admin_caller):
    result = loan_report(admin_caller, "2024-05-20", "2024-05-01")
    assert result["field_errors"] == {"end_date": ["must not be before the start date"]}


def test_statistics(admin_caller, make_book, loan_payload):
    first = make_book(total_copies=3)
    make_book(total_copies=2)
    create_loan(admin_caller, loan_payload(first["id"]))

    stats = get_library_statistics(admin_caller)["data"]

    assert stats == {
        "total_titles": 2,
        "total_copies": 5,
        "available_copies": 4,
        "active_loans": 1,
        "overdue_loans": 0,
        "total_loans": 1,
    }


def test_store_failure_is_reported_generically(monkeypatch, admin_caller, make_book, loan_payload, fetch):
    book = make_book()

    def broken(*args, **kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr("library_helpers.record_audit", broken)
    result = create_loan(admin_caller, loan_payload(book["id"]))

    assert result == {
        "success": False,
        "error": "Unexpected error while processing the request",
        "code": "conflict",
    }
    assert fetch(Book, book["id"]).available_copies == 1
