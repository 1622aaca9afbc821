import pyotp
import pytest

from security.audit import AuditRecorder, list_entries
from security.credentials import Role
from security.errors import CredentialError, PersistenceError, SecondFactorError
from security.gate import Destination
from security.machine import AuthMachine
from security.models import User
from security.sessions import (
    ANONYMOUS,
    AuthenticatedNoSecondFactor,
    AuthenticatedWithSecondFactor,
    ClientInfo,
    MemorySessionStore,
    PasswordVerifiedNoSecondFactor,
    PasswordVerifiedPendingSecondFactor,
    SessionContext,
    SessionPrincipal,
    SqlSessionStore,
)

from conftest import PASSWORD, add_user

NOW = 1_700_000_025


class RecordingMailer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send_notification(self, address, subject, body):
        if self.fail:
            raise RuntimeError("smtp caído")
        self.sent.append((address, subject))
        return True


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def audit(factory):
    return AuditRecorder(factory, asynchronous=False)


@pytest.fixture
def machine(credentials, audit, mailer):
    return AuthMachine(credentials, audit=audit, mailer=mailer, clock=lambda: NOW)


@pytest.fixture
def secret():
    return pyotp.random_base32()


def fresh(store):
    return SessionContext.open(store, None)


def code(secret, offset=0):
    return pyotp.TOTP(secret).at(NOW, offset)


# ------------- Password step -------------

def test_login_with_totp_goes_to_verification(machine, credentials, store, secret):
    add_user(credentials, "Ana", "ana@soporte.com", role=Role.ADMIN, totp_secret=secret)
    ctx = fresh(store)
    old_token = ctx.token
    assert machine.login(ctx, "ana@soporte.com", PASSWORD) is Destination.VERIFY_SECOND_FACTOR
    assert isinstance(ctx.state, PasswordVerifiedPendingSecondFactor)
    assert ctx.state.pending.totp_secret == secret
    assert ctx.token != old_token
    assert store.get(ctx.token) == ctx.state


def test_login_without_totp_goes_to_enrollment(machine, credentials, store):
    add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    assert machine.login(ctx, "ana@soporte.com", PASSWORD) is Destination.ENROLL
    assert isinstance(ctx.state, PasswordVerifiedNoSecondFactor)
    assert not ctx.state.principal.totp_enabled


def test_unknown_email_and_wrong_password_look_the_same(machine, credentials, store):
    add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    with pytest.raises(CredentialError) as unknown:
        machine.login(ctx, "nadie@soporte.com", PASSWORD)
    with pytest.raises(CredentialError) as wrong:
        machine.login(ctx, "ana@soporte.com", "incorrecta")
    assert unknown.value.reason == CredentialError.UNKNOWN_PRINCIPAL
    assert wrong.value.reason == CredentialError.BAD_PASSWORD
    assert unknown.value.message == wrong.value.message
    assert unknown.value.status_code == wrong.value.status_code == 401
    assert ctx.state == ANONYMOUS


def test_missing_hash_is_a_distinct_error(machine, factory, store):
    with factory() as db:
        db.add(User(name="Viejo", email="viejo@soporte.com", password_hash=None, role="Usuario"))
        db.commit()
    with pytest.raises(CredentialError) as exc:
        machine.login(fresh(store), "viejo@soporte.com", PASSWORD)
    assert exc.value.reason == CredentialError.MISSING_HASH
    assert exc.value.status_code == 500
    assert exc.value.message != CredentialError.default_message


# ------------- Second factor step -------------

@pytest.mark.parametrize("offset", [-1, 0, 1])
def test_code_within_skew_completes_login(machine, credentials, store, secret, offset):
    user = add_user(credentials, "Tito", "tito@soporte.com", role=Role.TECHNICIAN, totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "tito@soporte.com", PASSWORD)
    pending_token = ctx.token

    assert machine.verify_second_factor(ctx, code(secret, offset)) is Destination.TECHNICIAN_AREA
    assert ctx.state == AuthenticatedWithSecondFactor(
        SessionPrincipal(id=user.id, name="Tito", role=Role.TECHNICIAN, totp_enabled=True))
    assert ctx.token != pending_token
    assert store.get(pending_token) == ANONYMOUS
    assert credentials.find_by_id(user.id).last_access_at is not None


@pytest.mark.parametrize("offset", [-3, -2, 2])
def test_code_outside_skew_keeps_pending(machine, credentials, store, secret, offset):
    add_user(credentials, "Ana", "ana@soporte.com", totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    with pytest.raises(SecondFactorError) as exc:
        machine.verify_second_factor(ctx, code(secret, offset))
    assert exc.value.reason == SecondFactorError.INVALID_CODE
    assert isinstance(store.get(ctx.token), PasswordVerifiedPendingSecondFactor)
    # Retry with the right code still works
    assert machine.verify_second_factor(ctx, code(secret)) is Destination.USER_AREA


def test_second_verification_finds_nothing_pending(machine, credentials, store, secret):
    add_user(credentials, "Ana", "ana@soporte.com", totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    stale = SessionContext(store, ctx.token)
    machine.verify_second_factor(ctx, code(secret))
    with pytest.raises(SecondFactorError) as exc:
        machine.verify_second_factor(stale, code(secret))
    assert exc.value.reason == SecondFactorError.NO_PENDING


def test_verification_without_pending_session(machine, store):
    with pytest.raises(SecondFactorError) as exc:
        machine.verify_second_factor(fresh(store), "123456")
    assert exc.value.reason == SecondFactorError.NO_PENDING


def test_authenticated_without_code_verifies_against_stored_secret(machine, credentials, store, secret):
    user = add_user(credentials, "Ana", "ana@soporte.com", role=Role.ADMIN, totp_secret=secret)
    principal = SessionPrincipal(id=user.id, name="Ana", role=Role.ADMIN, totp_enabled=True)
    store.set("t1", AuthenticatedNoSecondFactor(principal))
    ctx = SessionContext(store, "t1")
    assert machine.current_destination(ctx) is Destination.VERIFY_SECOND_FACTOR
    assert machine.verify_second_factor(ctx, code(secret)) is Destination.ADMIN_AREA
    assert ctx.state == AuthenticatedWithSecondFactor(principal)


# ------------- Enrollment -------------

def test_enrollment_persists_secret_and_audits(machine, credentials, store, factory, mailer):
    user = add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    ctx.client = ClientInfo(address="10.0.0.7", user_agent="pytest")

    challenge = machine.start_enrollment(ctx)
    assert "ana%40soporte.com" in challenge.provisioning_uri

    assert machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret)) is Destination.USER_AREA
    stored = credentials.find_by_id(user.id)
    assert stored.totp_secret == challenge.secret and stored.totp_enabled
    assert isinstance(ctx.state, AuthenticatedWithSecondFactor)
    assert mailer.sent == [("ana@soporte.com", "2FA activado en Soporte TI")]

    [entry] = list_entries(factory)
    assert entry["accion"] == "ACTIVAR_2FA"
    assert entry["actor"] == "Ana"
    assert entry["antes"] == {"twofa_enabled": False}
    assert entry["despues"] == {"twofa_enabled": True}
    assert entry["ip"] == "10.0.0.7"

    # Next login takes the second factor branch
    again = fresh(store)
    assert machine.login(again, "ana@soporte.com", PASSWORD) is Destination.VERIFY_SECOND_FACTOR


def test_enrollment_with_wrong_code_keeps_candidate_secret(machine, credentials, store):
    user = add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    challenge = machine.start_enrollment(ctx)

    with pytest.raises(SecondFactorError) as exc:
        machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret, -3))
    assert exc.value.reason == SecondFactorError.INVALID_CODE
    assert exc.value.challenge.secret == challenge.secret
    assert not credentials.find_by_id(user.id).totp_enabled
    assert isinstance(ctx.state, PasswordVerifiedNoSecondFactor)

    machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret))
    assert credentials.find_by_id(user.id).totp_enabled


def test_enrollment_requires_authenticated_principal(machine, store):
    with pytest.raises(SecondFactorError) as exc:
        machine.start_enrollment(fresh(store))
    assert exc.value.reason == SecondFactorError.NO_PENDING


def test_rotation_is_audited_separately(machine, credentials, store, factory, secret):
    add_user(credentials, "Ana", "ana@soporte.com", totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    machine.verify_second_factor(ctx, code(secret))

    challenge = machine.start_enrollment(ctx)
    machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret))
    assert list_entries(factory)[0]["accion"] == "ROTAR_2FA"
    assert credentials.find_by_email("ana@soporte.com").totp_secret == challenge.secret


def test_mail_failure_does_not_undo_enrollment(credentials, audit, store):
    machine = AuthMachine(credentials, audit=audit, mailer=RecordingMailer(fail=True), clock=lambda: NOW)
    user = add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    challenge = machine.start_enrollment(ctx)
    assert machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret)) is Destination.USER_AREA
    assert credentials.find_by_id(user.id).totp_enabled


def test_enrollment_for_deleted_account_ends_session(machine, credentials, store):
    user = add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    credentials.delete(user.id)
    with pytest.raises(SecondFactorError):
        machine.start_enrollment(ctx)
    assert ctx.state == ANONYMOUS


# ------------- Logout -------------

def test_logout_destroys_session(machine, credentials, store, secret):
    add_user(credentials, "Ana", "ana@soporte.com", totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    machine.verify_second_factor(ctx, code(secret))
    token = ctx.token
    assert machine.logout(ctx) is Destination.LOGIN
    assert store.get(token) == ANONYMOUS
    assert machine.current_destination(ctx) is Destination.LOGIN


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_logout_during_enrollment_is_not_undone(machine, credentials, factory, backend):
    store = MemorySessionStore() if backend == "memory" else SqlSessionStore(factory)
    add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    challenge = machine.start_enrollment(ctx)
    token = ctx.token

    machine.logout(SessionContext(store, token))
    with pytest.raises(SecondFactorError) as exc:
        machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret))
    assert exc.value.reason == SecondFactorError.NO_PENDING
    assert store.get(token) == ANONYMOUS


def test_enrollment_rotates_token(machine, credentials, store):
    add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    enrolling_token = ctx.token
    challenge = machine.start_enrollment(ctx)
    machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret))
    assert ctx.token != enrolling_token
    assert store.get(enrolling_token) == ANONYMOUS
    assert isinstance(store.get(ctx.token), AuthenticatedWithSecondFactor)


def test_account_removed_before_secret_is_saved(machine, credentials, store, monkeypatch):
    add_user(credentials, "Ana", "ana@soporte.com")
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)
    challenge = machine.start_enrollment(ctx)

    def gone(*args):
        raise LookupError(args[0])

    monkeypatch.setattr(credentials, "update_totp", gone)
    with pytest.raises(SecondFactorError) as exc:
        machine.complete_enrollment(ctx, challenge.secret, code(challenge.secret))
    assert exc.value.reason == SecondFactorError.NO_PENDING
    assert ctx.state == ANONYMOUS


def test_last_access_failure_does_not_block_login(machine, credentials, store, secret, monkeypatch):
    add_user(credentials, "Ana", "ana@soporte.com", totp_secret=secret)
    ctx = fresh(store)
    machine.login(ctx, "ana@soporte.com", PASSWORD)

    def broken(principal_id):
        raise PersistenceError("touch_last_access")

    monkeypatch.setattr(credentials, "touch_last_access", broken)
    assert machine.verify_second_factor(ctx, code(secret)) is Destination.USER_AREA
    assert isinstance(ctx.state, AuthenticatedWithSecondFactor)
    assert isinstance(store.get(ctx.token), AuthenticatedWithSecondFactor)
