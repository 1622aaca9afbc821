# /soporte/cli.py
# Comandos de consola: flask --app run create-user / purge-sessions

import click
from sqlalchemy.exc import IntegrityError

from security import get_security
from .services import provision_user


def register_commands(app):
    @app.cli.command('create-user')
    @click.option('--name', prompt='Nombre')
    @click.option('--email', prompt='Correo')
    @click.option('--role', type=click.Choice(['admin', 'tecnico', 'usuario'], case_sensitive=False),
                  default='usuario', show_default=True)
    @click.password_option('--password', confirmation_prompt=True)
    def create_user(name, email, role, password):
        """Alta de un usuario (sin 2FA: lo activa en su primer ingreso)."""
        if len(password) < 8:
            raise click.BadParameter('La contraseña debe tener al menos 8 caracteres.', param_hint='--password')
        sec = get_security()
        try:
            principal = provision_user(sec.credentials, sec.audit, name, email, password, role)
        except IntegrityError:
            raise click.ClickException('Ya existe un usuario con ese correo.')
        finally:
            sec.audit.flush()
        click.echo(f'Usuario creado: {principal.email} ({principal.role.value}), id {principal.id}')

    @app.cli.command('purge-sessions')
    def purge_sessions():
        """Borra las sesiones vencidas del almacén configurado."""
        click.echo(f'Sesiones eliminadas: {get_security().sessions.purge_expired()}')
