# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default admin/staff users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system check-schema
#   Report ledger tables/columns missing from the database.
# - python -m flask system cleanup-sessions
#   Delete expired or revoked session tokens older than 30 days.
#
# Users:
# - python -m flask users list
# - python -m flask users create --username admin2 --email admin2@posledger.local --password "Password123!" --role Admin
#
# Inventory:
# - python -m flask inventory adjust --product-id 1 --delta -2 --reason "Damaged" --username admin
#   Manual stock correction through the transaction engine.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, ROLES
from .services import schema_service, session_service, transaction_service
from .services.auth_service import create_user, PasswordValidationError
from .validation import LedgerError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--password', default='Password123!', show_default=True, help='Password for the default users')
@with_appcontext
def init_system(password):
    """
    Create missing tables and the default users.

    Users: admin/admin@posledger.local (Admin), staff/staff@posledger.local (Staff).

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing POS ledger...")
    db.create_all()
    click.echo("PASS Tables ready")

    default_users = [
        ("admin", "admin@posledger.local", "Admin"),
        ("staff", "staff@posledger.local", "Staff"),
    ]

    for username, email, role in default_users:
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            create_user(username=username, email=email, password=password, role=role)
            click.echo(f"PASS Created user: {username} ({email}) with role '{role}'")
        except (PasswordValidationError, ValueError) as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{username}': {e}")

    click.echo("DONE POS ledger initialized. Change default passwords in production!")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """Drop and recreate every table. Development databases only: the ledger is lost."""
    if not yes:
        click.confirm("WARN Every sale, return and stock movement will be deleted. Continue?", abort=True)

    db.drop_all()
    db.create_all()
    click.echo("PASS Empty schema recreated. Run 'python -m flask system init' to add the default users.")


@system_group.command('check-schema')
@with_appcontext
def check_schema():
    """Exit non-zero when ledger tables or columns are missing."""
    missing = schema_service.missing_schema_objects()
    if missing:
        click.echo("FAIL Ledger schema is incomplete:")
        for name in missing:
            click.echo(f"   - {name}")
        raise SystemExit(1)
    click.echo("PASS Ledger schema is complete")


@system_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions():
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"PASS Deleted {deleted} stale session(s)")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, email, password, role):
    """Add a cashier (Staff) or manager (Admin) account."""
    try:
        user = create_user(username=username, email=email, password=password, role=role)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e}")
        return
    except ValueError as e:
        click.echo(f"FAIL Failed to create user: {e}")
        return
    click.echo(f"PASS Created user: {user.username} ({user.email}) with role '{user.role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    rows = [("ID", "Username", "Email", "Role", "Active")]
    rows += [(str(u.id), u.username, u.email, u.role, "yes" if u.is_active else "no") for u in users]
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        click.echo("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


@click.group('inventory')
def inventory_group():
    """Stock maintenance commands."""


@inventory_group.command('adjust')
@click.option('--product-id', type=int, required=True, help='Product ID')
@click.option('--delta', type=int, required=True, help='Signed quantity change')
@click.option('--reason', required=True, help='Why the stock is being corrected')
@click.option('--username', required=True, help='Admin user to attribute the change to')
@with_appcontext
def adjust_inventory(product_id, delta, reason, username):
    """Manual stock correction recorded as a manual-{T} ledger transaction."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_admin:
        click.echo(f"FAIL '{username}' is not an admin user")
        raise SystemExit(1)
    try:
        result = transaction_service.adjust_stock(product_id, delta, reason, acting_user_id=user.id)
    except LedgerError as e:
        click.echo(f"FAIL {e.message}")
        for line in e.details:
            click.echo(f"   - {line}")
        raise SystemExit(1)
    product = result["product"]
    click.echo(f"PASS {result['transaction_no']}: {product['name']} stock now {product['stock']} ({product['status']})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(inventory_group)
