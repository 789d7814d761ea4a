"""
AnonChat CLI - operator commands for the admin accounts and the database.

There is no self-registration; administrator accounts are created here.
"""

import typer
from rich.console import Console
from sqlalchemy.exc import IntegrityError

from anonchat.logging_utils import setup_logging

app = typer.Typer(
    name="anonchat",
    help="AnonChat - anonymous support chat administration",
    no_args_is_help=True,
)

console = Console()

MIN_PASSWORD_LENGTH = 12


@app.command("init-db")
def init_db_command() -> None:
    """Create all database tables."""
    from anonchat.config import settings
    from anonchat.storage import init_db

    setup_logging(settings.LOG_LEVEL)
    init_db()
    console.print("[green]✓[/green] Database initialized")


@app.command("create-admin")
def create_admin_command(
    username: str = typer.Argument(..., help="Login name of the administrator"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True,
        help="Password (prompted when omitted)",
    ),
) -> None:
    """Create an administrator account."""
    from anonchat.config import settings
    from anonchat.storage import SessionLocal, create_admin, init_db
    from anonchat.utils import hash_password

    setup_logging(settings.LOG_LEVEL)

    username = username.strip()
    if not username:
        console.print("[red]Username must not be empty[/red]")
        raise typer.Exit(1)
    if len(password) < MIN_PASSWORD_LENGTH:
        console.print(f"[red]Password must be at least {MIN_PASSWORD_LENGTH} characters[/red]")
        raise typer.Exit(1)

    init_db()
    with SessionLocal() as db:
        try:
            admin = create_admin(db, username, hash_password(password))
        except IntegrityError:
            console.print(f"[red]Admin '{username}' already exists[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓[/green] Admin [bold]{username}[/bold] created (id={admin.id})")


@app.command("unlock-admin")
def unlock_admin_command(
    username: str = typer.Argument(..., help="Login name of the administrator"),
) -> None:
    """Clear the failed-login counter and any lock on an account."""
    from anonchat.config import settings
    from anonchat.storage import SessionLocal, get_admin_by_username

    setup_logging(settings.LOG_LEVEL)

    with SessionLocal() as db:
        admin = get_admin_by_username(db, username)
        if admin is None:
            console.print(f"[red]Admin '{username}' not found[/red]")
            raise typer.Exit(1)
        admin.failed_login_attempts = 0
        admin.locked_until = None
        db.commit()

    console.print(f"[green]✓[/green] Admin [bold]{username}[/bold] unlocked")


if __name__ == "__main__":
    app()
