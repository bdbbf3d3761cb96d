# Overview: Flask CLI command groups for bootstrap, master data, and inspection.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, the "pcs" unit and an admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Master data:
# - python -m flask catalog add-unit box
# - python -m flask catalog add-product --name "Cola 330ml" --sku COLA330 --base-unit pcs
#
# Users:
# - python -m flask users create --username alice --name "Alice" --password "Password123!"
# - python -m flask users token alice
#   Issue a bearer session token for API calls.
#
# Inspection:
# - python -m flask stock show 1
#   Current stock and the latest movements of a product.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerError
from .models import Product, Unit, User
from .services.auth_service import create_user
from .services import session_service
from .services import stock_service


DEFAULT_ADMIN_PASSWORD = "Password123!"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-password', default=DEFAULT_ADMIN_PASSWORD, help='Password for the admin user')
@with_appcontext
def init_system(admin_password):
    """
    Initialize the stock ledger: schema, base unit and admin user.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing stock ledger...")

    db.create_all()

    unit = db.session.query(Unit).filter_by(name="pcs").first()
    if not unit:
        unit = Unit(name="pcs")
        db.session.add(unit)
        db.session.commit()
        click.echo(f"PASS Created base unit: {unit.name} (ID: {unit.id})")
    else:
        click.echo(f"PASS Using existing unit: {unit.name} (ID: {unit.id})")

    admin = db.session.query(User).filter_by(username="admin").first()
    if not admin:
        admin = create_user("admin", "Administrator", admin_password)
        click.echo(f"PASS Created user: admin (ID: {admin.id})")
    else:
        click.echo("PASS Using existing user: admin")

    click.echo("DONE Stock ledger initialized.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('catalog')
def catalog_group():
    """Unit and product master data."""


@catalog_group.command('add-unit')
@click.argument('name')
@with_appcontext
def add_unit(name):
    name = name.strip()
    existing = db.session.query(Unit).filter_by(name=name).first()
    if existing:
        raise click.ClickException(f"Unit already exists: {name} (ID: {existing.id})")

    unit = Unit(name=name)
    db.session.add(unit)
    db.session.commit()
    click.echo(f"PASS Created unit: {unit.name} (ID: {unit.id})")


@catalog_group.command('add-product')
@click.option('--name', required=True)
@click.option('--sku', default=None)
@click.option('--barcode', default=None)
@click.option('--base-unit', 'base_unit_name', default=None, help='Name of the unit a factor of 1 stands for')
@with_appcontext
def add_product(name, sku, barcode, base_unit_name):
    base_unit = None
    if base_unit_name:
        base_unit = db.session.query(Unit).filter_by(name=base_unit_name).first()
        if not base_unit:
            raise click.ClickException(f"Unit not found: {base_unit_name}")

    product = Product(
        name=name.strip(),
        sku=sku,
        barcode=barcode,
        base_unit_id=base_unit.id if base_unit else None,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product: {product.name} (ID: {product.id})")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--name', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def create_user_command(username, name, password):
    try:
        user = create_user(username, name, password)
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created user: {user.username} (ID: {user.id})")


@users_group.command('token')
@click.argument('username')
@with_appcontext
def issue_token(username):
    """Issue a bearer session token (printed once, stored hashed)."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise click.ClickException(f"User not found: {username}")
    try:
        session, token = session_service.create_session(user.id)
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(token)
    click.echo(f"Expires at: {session.expires_at.isoformat()}Z", err=True)


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('show')
@click.argument('product_id', type=int)
@click.option('--limit', default=10, show_default=True, help='Number of movements to show')
@with_appcontext
def show_stock(product_id, limit):
    try:
        current = stock_service.get_current_stock(product_id)
        history = stock_service.get_stock_history(product_id, page=1, limit=limit)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"{current['product_name']} (ID: {current['product_id']})")
    click.echo(f"  Current stock: {current['quantity']} {current['unit'] or ''}".rstrip())
    click.echo(f"  Base units:    {current['base_quantity']}")

    rows = history["data"]
    if not rows:
        click.echo("  No movements.")
        return

    click.echo(f"  Last {len(rows)} movement(s):")
    for row in rows:
        marker = " (reversal)" if row["is_reversal"] else ""
        click.echo(
            f"    {row['created_at']}  {row['type_label']:<10} {row['qty']:>6} {row['unit_name']:<8} "
            f"{row['transaction_no'] or '-'}{marker}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
