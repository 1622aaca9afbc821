# /soporte/main/routes.py
# Paneles por rol y pantallas de seguridad del administrador.

from flask import render_template, request, redirect, url_for, flash, g, abort
from flask_login import current_user

from . import main
from ..services import (AdministrationError, change_password, remove_user,
                        reset_second_factor)
from security import get_security
from security.audit import list_entries, known_actions
from security.credentials import Role
from security.errors import CredentialError
from security.forms import ChangePasswordForm, ConfirmForm
from security.utils import admin_required, auth_required, redirect_to, roles_required


@main.route('/')
def index():
    return redirect_to(get_security().machine.current_destination(g.auth))


@main.route('/admin')
@admin_required
def admin_panel():
    principals = get_security().credentials.list_all()
    totals = {
        'admins': sum(1 for p in principals if p.role is Role.ADMIN),
        'tecnicos': sum(1 for p in principals if p.role is Role.TECHNICIAN),
        'usuarios': sum(1 for p in principals if p.role is Role.USER),
        'sin_2fa': sum(1 for p in principals if not p.totp_enabled),
    }
    return render_template('main/panel.html', area='admin', totals=totals)


@main.route('/tecnico')
@roles_required(Role.TECHNICIAN, Role.ADMIN)
def technician_panel():
    return render_template('main/panel.html', area='tecnico', totals=None)


@main.route('/usuarios')
@auth_required
def user_panel():
    return render_template('main/panel.html', area='usuarios', totals=None)


@main.route('/cuenta/password', methods=['GET', 'POST'])
@auth_required
def account_password():
    form = ChangePasswordForm()
    if form.validate_on_submit():
        sec = get_security()
        try:
            change_password(sec.credentials, sec.audit, current_user.id,
                            form.current.data, form.password.data, g.auth.client)
        except CredentialError as e:
            flash(e.message, 'danger')
            return render_template('main/password.html', form=form), 400
        except AdministrationError:
            abort(404)
        flash('Contraseña actualizada.', 'success')
        return redirect_to(get_security().machine.current_destination(g.auth))
    return render_template('main/password.html', form=form)


# -------- Seguridad (solo admin) --------

@main.route('/admin/seguridad')
@admin_required
def security_overview():
    principals = get_security().credentials.list_all()
    return render_template('main/seguridad.html', usuarios=principals, form=ConfirmForm())


@main.route('/admin/seguridad/<int:user_id>/reiniciar-2fa', methods=['POST'])
@admin_required
def security_reset_2fa(user_id):
    sec = get_security()
    try:
        target = reset_second_factor(sec.credentials, sec.audit, current_user.id, user_id, g.auth.client)
    except AdministrationError:
        abort(404)
    flash(f'2FA reiniciado para {target.name}.', 'success')
    return redirect(url_for('main.security_overview'))


@main.route('/admin/usuarios/<int:user_id>/eliminar', methods=['POST'])
@admin_required
def delete_user(user_id):
    sec = get_security()
    try:
        target = remove_user(sec.credentials, sec.audit, current_user.id, user_id, g.auth.client)
    except AdministrationError as e:
        flash(e.message, 'danger')
        if e.reason == AdministrationError.NOT_FOUND:
            abort(404)
        return redirect(url_for('main.security_overview', error=e.reason))
    flash(f'Usuario {target.name} eliminado.', 'success')
    return redirect(url_for('main.security_overview', ok='eliminado'))


@main.route('/admin/auditoria')
@admin_required
def audit_log():
    sec = get_security()
    action = (request.args.get('accion') or '').strip() or None
    try:
        limit = max(1, min(int(request.args.get('limite', 100)), 500))
    except ValueError:
        limit = 100
    entries = list_entries(sec.db, limit=limit, action=action)
    return render_template('main/auditoria.html', entries=entries,
                           acciones=known_actions(sec.db), accion=action)
