"""
Flask CLI commands for the library manager
"""

import click
from flask import Flask
from sqlalchemy import func
import logging

from db_single import get_session, get_config, session_scope
from init_db import run_on_startup
from models import User
from library_access import CallerContext
from library_helpers import import_books_csv, list_overdue_loans, export_books, loan_report, rows_to_csv
from user_helpers import ensure_admin

logger = logging.getLogger(__name__)


def _caller_for(email):
    """CallerContext for the staff account running the command, or None"""
    email = (email or get_config().ADMIN_EMAIL or '').strip().lower()
    session = get_session()
    try:
        user = session.query(User).filter(func.lower(User.email) == email).first()
        if not user:
            return None
        return CallerContext(user_id=user.id, role=user.role)
    finally:
        session.close()


def _echo_failure(result):
    click.echo(f"❌ {result['error']}")
    for field, messages in (result.get('field_errors') or {}).items():
        click.echo(f"   {field}: {'; '.join(messages)}")


def _write_rows(rows, output):
    text = rows_to_csv(rows)
    if output:
        with open(output, 'w', newline='', encoding='utf-8') as handle:
            handle.write(text)
        click.echo(f"✅ Wrote {len(rows)} row(s) to {output}")
    else:
        click.echo(text, nl=False)


def register_cli_commands(app: Flask):
    """Register CLI commands with the Flask app"""

    user_option = click.option("--user", "user_email", default=None,
                               help="Email of the staff account performing the action (default: ADMIN_EMAIL)")

    @app.cli.command("setup-db")
    def setup_db_command():
        """Create tables and the default admin user"""
        click.echo("🚀 Setting up database...")
        if run_on_startup():
            click.echo("✅ Database setup completed successfully!")
        else:
            click.echo("❌ Database setup failed!")

    @app.cli.command("create-admin")
    @click.option("--email", required=True, help="Admin email")
    @click.option("--password", required=True, help="Admin password")
    @click.option("--name", default="Administrator", help="Display name")
    def create_admin_command(email, password, name):
        """Create an administrator account"""
        if len(password) < get_config().MIN_PASSWORD_LENGTH:
            click.echo(f"❌ Password must have at least {get_config().MIN_PASSWORD_LENGTH} characters")
            return
        with session_scope() as session:
            admin, created = ensure_admin(session, email, password, name)
            if created:
                click.echo(f"✅ Administrator created: {admin.email}")
            else:
                click.echo(f"⚠️  A user with email {admin.email} already exists")

    @app.cli.command("import-books")
    @click.argument("csv_file", type=click.Path(exists=True, dir_okay=False))
    @user_option
    def import_books_command(csv_file, user_email):
        """Import books from a CSV file (SIG. TOP, code, author, title, edition, copies)"""
        caller = _caller_for(user_email)
        if caller is None:
            click.echo("❌ Staff account not found")
            return

        with open(csv_file, encoding='utf-8-sig') as handle:
            result = import_books_csv(caller, handle.read())

        if not result['success']:
            _echo_failure(result)
            return
        data = result['data']
        click.echo(f"✅ Imported {data['imported']} book(s), skipped {data['skipped']} row(s)")
        for error in data['errors']:
            click.echo(f"   ⚠️  {error}")

    @app.cli.command("list-overdue")
    @user_option
    def list_overdue_command(user_email):
        """List active loans past their due date"""
        result = list_overdue_loans(_caller_for(user_email))
        if not result['success']:
            _echo_failure(result)
            return

        loans = result['data']
        if not loans:
            click.echo("📭 No overdue loans")
            return

        click.echo(f"📚 Overdue loans ({len(loans)}):")
        click.echo("-" * 60)
        for loan in loans:
            click.echo(f"  {loan['book_title']}")
            click.echo(f"    Borrower: {loan['borrower_name']} (ID: {loan['borrower_id_number']})")
            click.echo(f"    Due: {loan['due_date']}")
            click.echo("-" * 60)

    @app.cli.command("export-books")
    @click.option("--search", default="", help="Only books matching this text")
    @click.option("--output", default=None, help="CSV file to write (default: stdout)")
    @user_option
    def export_books_command(search, output, user_email):
        """Export the book inventory as CSV"""
        result = export_books(_caller_for(user_email), search)
        if not result['success']:
            _echo_failure(result)
            return
        _write_rows(result['data'], output)

    @app.cli.command("loan-report")
    @click.option("--start", "start_date", required=True, help="First day (YYYY-MM-DD)")
    @click.option("--end", "end_date", required=True, help="Last day, inclusive (YYYY-MM-DD)")
    @click.option("--output", default=None, help="CSV file to write (default: stdout)")
    @user_option
    def loan_report_command(start_date, end_date, output, user_email):
        """Export loans made between two dates as CSV"""
        result = loan_report(_caller_for(user_email), start_date, end_date)
        if not result['success']:
            _echo_failure(result)
            return
        _write_rows(result['data'], output)
