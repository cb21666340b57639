from datetime import date, timedelta

import pytest

from db_single import get_config
from library_helpers import create_loan
from models import User
from library_models import Book


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_setup_db_is_repeatable(runner, count_rows):
    result = runner.invoke(args=["setup-db"])

    assert "Database setup completed successfully" in result.output
    assert count_rows(User) == 1


def test_create_admin(runner, fetch, count_rows):
    created = runner.invoke(args=["create-admin", "--email", "Jefa@Library.local", "--password", "segura123"])
    again = runner.invoke(args=["create-admin", "--email", "jefa@library.local", "--password", "segura123"])
    short = runner.invoke(args=["create-admin", "--email", "otra@library.local", "--password", "123"])

    assert "Administrator created: jefa@library.local" in created.output
    assert "already exists" in again.output
    assert "at least" in short.output
    assert count_rows(User) == 2


def test_import_books_command(runner, tmp_path, count_rows):
    csv_file = tmp_path / "libros.csv"
    csv_file.write_text(
        "SIG. TOP,Code,Author,Title,Edition,Copies\n"
        "A-1,R001,Borges,Ficciones,,2\n"
        "A-2,R002,Cortázar,Rayuela,,1\n"
        "x,y\n",
        encoding="utf-8",
    )

    result = runner.invoke(args=["import-books", str(csv_file)])

    assert "Imported 2 book(s), skipped 1 row(s)" in result.output
    assert count_rows(Book) == 2


def test_import_books_unknown_operator(runner, tmp_path):
    csv_file = tmp_path / "libros.csv"
    csv_file.write_text("SIG. TOP,Code,Author,Title\n", encoding="utf-8")

    result = runner.invoke(args=["import-books", str(csv_file), "--user", "nadie@library.local"])

    assert "Staff account not found" in result.output


def test_list_overdue(runner, admin_caller, make_book, loan_payload):
    assert "No overdue loans" in runner.invoke(args=["list-overdue"]).output

    book = make_book(title="Pedro Páramo")
    due = (date.today() - timedelta(days=3)).isoformat()
    create_loan(admin_caller, loan_payload(book["id"], due_date=due))

    output = runner.invoke(args=["list-overdue"]).output
    assert "Overdue loans (1)" in output
    assert "Pedro Páramo" in output
    assert f"Due: {due}" in output


def test_export_books_to_file(runner, make_book, tmp_path):
    make_book(title="Ficciones", author="Borges", sig_top="B-7")
    target = tmp_path / "inventario.csv"

    result = runner.invoke(args=["export-books", "--output", str(target)])

    assert "Wrote 1 row(s)" in result.output
    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("SIG. TOP,Code,Author,Title")
    assert lines[1].startswith("B-7,,Borges,Ficciones")


def test_loan_report_command(runner, admin_caller, make_book, loan_payload):
    book = make_book(title="Ficciones")
    create_loan(admin_caller, loan_payload(book["id"]))
    start = (date.today() - timedelta(days=1)).isoformat()
    end = (date.today() + timedelta(days=1)).isoformat()

    report = runner.invoke(args=["loan-report", "--start", start, "--end", end])
    backwards = runner.invoke(args=["loan-report", "--start", start, "--end", "2000-01-01"])

    assert any(line.startswith("Book,Author,Code,Borrower") for line in report.output.splitlines())
    assert "Ficciones" in report.output
    assert "must not be before the start date" in backwards.output


def test_commands_act_as_configured_admin(runner):
    assert get_config().ADMIN_EMAIL
    assert "No overdue loans" in runner.invoke(args=["list-overdue", "--user", get_config().ADMIN_EMAIL.upper()]).output
