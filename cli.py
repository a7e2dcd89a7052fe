"""
維護用的 CLI 指令 (create_app() 會註冊到 app.cli)

    flask seed-roles
    flask create-admin --email admin@example.com --name Admin
    flask purge-tokens
    flask show-db
"""
import click

from errors import APIError
from extensions import get_auth_service, get_token_service
from models import (
    User, Role, UserRole, UserSettings, Project, ProjectResponsible, Task,
    RefreshToken, TokenBlacklist
)
from permissions import RoleName
from roles import seed_roles, assign_role


@click.command('seed-roles')
def seed_roles_command():
    """補上缺少的固定角色"""
    created = seed_roles()
    if created:
        click.echo(f"Created roles: {', '.join(created)}")
    else:
        click.echo("All roles already exist.")


@click.command('create-admin')
@click.option('--email', prompt=True)
@click.option('--name', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
def create_admin_command(email, name, password):
    """建立管理員帳號 (同時給 admin 角色)"""
    seed_roles()
    try:
        user = get_auth_service().create_admin({
            'email': email,
            'name': name,
            'password': password
        })
    except APIError as err:
        details = f" {err.errors}" if err.errors else ''
        raise click.ClickException(f"{err.message}.{details}")

    assign_role(user.id, RoleName.ADMIN.value, assigned_by=user.id)
    click.echo(f"Admin created: id={user.id} email={user.email}")


@click.command('purge-tokens')
def purge_tokens_command():
    """刪除過期的 refresh token 和黑名單"""
    result = get_token_service().purge_expired()
    click.echo(
        f"Deleted {result['refresh_tokens_deleted']} refresh tokens and "
        f"{result['blacklist_entries_deleted']} blacklist entries."
    )


@click.command('show-db')
def show_db_command():
    """印出資料庫內容摘要"""
    click.echo("\n" + "=" * 60)
    click.echo("Database contents")
    click.echo("=" * 60)

    users = User.query.order_by(User.id).all()
    click.echo(f"\n[Users] {len(users)}:")
    for u in users:
        roles = ', '.join(u.active_role_names()) or '-'
        flags = 'admin' if u.is_admin else ''
        state = 'active' if u.is_active else 'inactive'
        click.echo(f"  ID: {u.id}, Email: {u.email}, Name: {u.name}, Roles: {roles}, {state} {flags}".rstrip())

    click.echo(f"\n[Roles] {Role.query.count()}, assignments: {UserRole.query.filter_by(active=True).count()}")
    click.echo(f"[Settings] customized: {UserSettings.query.count()}")

    projects = Project.query.order_by(Project.id).all()
    click.echo(f"\n[Projects] {len(projects)}:")
    for p in projects:
        responsibles = ProjectResponsible.query.filter_by(project_id=p.id, active=True).count()
        click.echo(f"  ID: {p.id}, Name: {p.name}, Status: {p.status}, Responsibles: {responsibles}")

    tasks = Task.query.order_by(Task.id).all()
    click.echo(f"\n[Tasks] {len(tasks)}:")
    for t in tasks:
        click.echo(f"  ID: {t.id}, Title: {t.title}, Status: {t.status}, Project: {t.project_id}")

    click.echo(
        f"\n[Tokens] refresh: {RefreshToken.query.count()}, "
        f"blacklisted: {TokenBlacklist.query.count()}"
    )
    click.echo("\n" + "=" * 60)


def register_commands(app):
    for command in (seed_roles_command, create_admin_command, purge_tokens_command, show_db_command):
        app.cli.add_command(command)
