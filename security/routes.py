from flask import Blueprint, render_template, request, redirect, url_for, flash, current_app, g
from itsdangerous import BadSignature

from . import get_security, limiter
from .errors import AuthorizationError, CredentialError, PersistenceError, SecondFactorError
from .forms import LoginForm, TwoFAForm, EnrollForm
from .gate import Destination, require_authenticated
from .sessions import (AuthenticatedNoSecondFactor, PasswordVerifiedNoSecondFactor,
                       PasswordVerifiedPendingSecondFactor)
from .tokens import sign_enrollment_secret, read_enrollment_secret
from .totp import qr_data_uri
from .utils import enrollment_required, redirect_to

bp = Blueprint("security", __name__, url_prefix="")


def _login_rate():
    return current_app.config["SECURITY_LOGIN_RATE_LIMIT"]


def _machine():
    return get_security().machine


# ------------- Errors -------------

@bp.app_errorhandler(PersistenceError)
def persistence_error(exc):
    # Store details stay in the log
    current_app.logger.error("Error de persistencia en %s: %s", request.path, exc.reason)
    return render_template("error.html", message=exc.message), 500


@bp.app_errorhandler(AuthorizationError)
def authorization_error(exc):
    return render_template("error.html", message=exc.message), 403


# ------------- Routes -------------

@bp.route("/login", methods=["GET", "POST"])
@limiter.limit(_login_rate, methods=["POST"])
def login():
    ctx = g.auth
    if require_authenticated(ctx.state).allowed:
        return redirect_to(_machine().current_destination(ctx))
    form = LoginForm()
    if form.validate_on_submit():
        try:
            destination = _machine().login(ctx, form.email.data, form.password.data)
        except CredentialError as e:
            flash(e.message, "danger")
            return render_template("security/login.html", form=form), e.status_code
        return redirect_to(destination)
    return render_template("security/login.html", form=form)


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    destination = _machine().logout(g.auth)
    flash("Sesión cerrada.", "info")
    return redirect_to(destination)


@bp.route("/login/verificar-2fa", methods=["GET", "POST"])
@limiter.limit(_login_rate, methods=["POST"])
def verify_2fa():
    ctx = g.auth
    if not isinstance(ctx.state, (PasswordVerifiedPendingSecondFactor, AuthenticatedNoSecondFactor)):
        return redirect_to(Destination.LOGIN)
    form = TwoFAForm()
    if form.validate_on_submit():
        try:
            destination = _machine().verify_second_factor(ctx, form.code.data)
        except SecondFactorError as e:
            flash(e.message, "danger")
            if e.reason == SecondFactorError.NO_PENDING:
                return redirect_to(Destination.LOGIN)
            return render_template("security/verify_2fa.html", form=form), 401
        return redirect_to(destination)
    if request.method == "POST":
        flash("Ingresá el código de 6 dígitos de tu aplicación.", "danger")
        return render_template("security/verify_2fa.html", form=form), 401
    return render_template("security/verify_2fa.html", form=form)


def _render_enrollment(challenge, form, status=200):
    form.secret_token.data = sign_enrollment_secret(challenge.secret)
    form.code.data = ""
    return render_template(
        "security/enroll_2fa.html",
        form=form,
        secret=challenge.secret,
        otp_uri=challenge.provisioning_uri,
        data_uri=qr_data_uri(challenge.provisioning_uri),
        mandatory=isinstance(g.auth.state, PasswordVerifiedNoSecondFactor),
    ), status


@bp.route("/activar-2fa", methods=["GET", "POST"])
@enrollment_required
def enroll_2fa():
    ctx = g.auth
    machine = _machine()
    form = EnrollForm()
    try:
        if request.method == "GET":
            return _render_enrollment(machine.start_enrollment(ctx), form)

        try:
            secret = read_enrollment_secret(form.secret_token.data or "")
        except BadSignature:
            flash("La activación expiró. Escaneá el nuevo código.", "warning")
            return redirect(url_for("security.enroll_2fa"))

        if not form.validate_on_submit():
            # Same candidate secret: the app on the phone already has it
            flash("Código 2FA inválido.", "danger")
            return _render_enrollment(machine.challenge_for(ctx, secret), form, 401)

        destination = machine.complete_enrollment(ctx, secret, form.code.data)
    except SecondFactorError as e:
        flash(e.message, "danger")
        if e.challenge is None:
            return redirect_to(Destination.LOGIN)
        return _render_enrollment(e.challenge, form, 401)

    flash("2FA habilitado.", "success")
    return redirect_to(destination)
