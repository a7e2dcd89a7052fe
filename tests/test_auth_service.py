"""AuthService: registration, login, verification, refresh and logout."""
from datetime import timedelta

import pytest

from errors import (
    DuplicateEmail, IncorrectPassword, InvalidCredentials, InvalidRefreshToken,
    TokenExpired, TokenInvalid, UserInactive, ValidationError
)
from extensions import get_auth_service, get_token_service
from models import db, User, ActivityLog

PASSWORD = 'Sup3rSecret!'


@pytest.fixture
def service(app):
    with app.app_context():
        yield get_auth_service()


def _register(service, email='alice@example.com', password=PASSWORD, name='Alice'):
    return service.register({'email': email, 'password': password, 'name': name})


class TestRegister:

    def test_email_is_normalized(self, service):
        user = _register(service, email='  Alice@Example.COM ')
        assert user.email == 'alice@example.com'

    def test_duplicate_email_is_case_insensitive(self, service):
        _register(service)
        with pytest.raises(DuplicateEmail):
            _register(service, email='ALICE@example.com', name='Someone Else', password='0therPassw0rd')

    def test_serialized_user_has_no_password(self, service):
        data = _register(service).to_dict()
        assert 'password' not in data
        assert 'password_hash' not in data

    def test_password_is_hashed(self, service):
        user = _register(service)
        assert user.password_hash != PASSWORD
        assert service.bcrypt.check_password_hash(user.password_hash, PASSWORD)

    def test_registration_never_grants_admin(self, service):
        user = service.register({
            'email': 'sneaky@example.com', 'password': PASSWORD, 'name': 'Sneaky', 'is_admin': True
        })
        assert user.is_admin is False

    @pytest.mark.parametrize('payload, field', [
        ({'email': 'bad', 'password': PASSWORD, 'name': 'Bob'}, 'email'),
        ({'email': 'bob@example.com', 'password': 'short', 'name': 'Bob'}, 'password'),
        ({'email': 'bob@example.com', 'password': PASSWORD, 'name': 'B'}, 'name'),
        ({'email': 'bob@example.com', 'password': PASSWORD}, 'name'),
    ])
    def test_invalid_input(self, service, payload, field):
        with pytest.raises(ValidationError) as excinfo:
            service.register(payload)
        assert field in excinfo.value.errors

    def test_password_policy_flags(self, service):
        service.password_policy.require_numbers = True
        with pytest.raises(ValidationError) as excinfo:
            _register(service, password='NoDigitsHere')
        assert 'password' in excinfo.value.errors

    def test_register_is_logged(self, service):
        user = _register(service)
        assert ActivityLog.query.filter_by(user_id=user.id, action='register').count() == 1


class TestLogin:

    def test_success_returns_distinct_tokens(self, service):
        user = _register(service)
        first = service.login('alice@example.com', PASSWORD)
        second = service.login('ALICE@example.com', PASSWORD)

        assert first['user'].id == user.id
        assert first['access_token'] and first['refresh_token']
        assert first['access_token'] != second['access_token']
        assert first['refresh_token'] != second['refresh_token']

    def test_sets_last_login(self, service):
        user = _register(service)
        assert user.last_login is None
        service.login('alice@example.com', PASSWORD)
        assert db.session.get(User, user.id).last_login is not None

    def test_wrong_password(self, service):
        _register(service)
        with pytest.raises(InvalidCredentials):
            service.login('alice@example.com', 'wrong-password')

    def test_unknown_email(self, service):
        with pytest.raises(InvalidCredentials):
            service.login('nobody@example.com', PASSWORD)

    def test_unknown_email_costs_one_bcrypt_check(self, service, monkeypatch):
        calls = []
        original_generate = service.bcrypt.generate_password_hash
        original_check = service.bcrypt.check_password_hash

        def counting_generate(*args, **kwargs):
            calls.append('generate')
            return original_generate(*args, **kwargs)

        def counting_check(*args, **kwargs):
            calls.append('check')
            return original_check(*args, **kwargs)

        monkeypatch.setattr(service.bcrypt, 'generate_password_hash', counting_generate)
        monkeypatch.setattr(service.bcrypt, 'check_password_hash', counting_check)

        with pytest.raises(InvalidCredentials):
            service.login('nobody@example.com', PASSWORD)

        # Same work as the wrong-password path, even on the very first failure
        assert calls == ['check']

    def test_inactive_user_looks_like_wrong_password(self, service):
        user = _register(service)
        user.is_active = False
        db.session.commit()

        with pytest.raises(InvalidCredentials) as inactive:
            service.login('alice@example.com', PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login('alice@example.com', 'wrong-password')

        assert type(inactive.value) is type(wrong.value)
        assert inactive.value.to_dict() == wrong.value.to_dict()

    def test_missing_fields(self, service):
        with pytest.raises(ValidationError):
            service.login(None, None)


class TestVerify:

    def test_round_trip(self, service):
        user = _register(service)
        token = get_token_service().issue_access_token(user)
        assert service.verify_token(token).id == user.id

    def test_missing_token(self, service):
        with pytest.raises(TokenInvalid):
            service.verify_token(None)

    def test_garbage_token(self, service):
        with pytest.raises(TokenInvalid):
            service.verify_token('garbage')

    def test_blacklisted_token(self, service):
        user = _register(service)
        token = get_token_service().issue_access_token(user)
        service.logout(access_token=token, user_id=user.id)

        with pytest.raises(TokenInvalid):
            service.verify_token(token)

    def test_expired_token(self, service):
        user = _register(service)
        token = get_token_service().issue_access_token(user, expires_delta=timedelta(seconds=-1))
        with pytest.raises(TokenExpired):
            service.verify_token(token)

    def test_inactive_user(self, service):
        user = _register(service)
        token = get_token_service().issue_access_token(user)
        user.is_active = False
        db.session.commit()

        with pytest.raises(UserInactive):
            service.verify_token(token)


class TestRefresh:

    def test_rotation(self, service):
        _register(service)
        session = service.login('alice@example.com', PASSWORD)

        refreshed = service.refresh_access_token(session['refresh_token'])
        assert refreshed['refresh_token'] != session['refresh_token']
        assert service.verify_token(refreshed['access_token']).id == session['user'].id

        with pytest.raises(InvalidRefreshToken):
            service.refresh_access_token(session['refresh_token'])

    def test_successor_can_be_rotated(self, service):
        _register(service)
        session = service.login('alice@example.com', PASSWORD)
        second = service.refresh_access_token(session['refresh_token'])
        third = service.refresh_access_token(second['refresh_token'])
        assert third['refresh_token'] not in (session['refresh_token'], second['refresh_token'])

    def test_inactive_owner(self, service):
        user = _register(service)
        session = service.login('alice@example.com', PASSWORD)
        user = db.session.get(User, user.id)
        user.is_active = False
        db.session.commit()

        with pytest.raises(InvalidRefreshToken):
            service.refresh_access_token(session['refresh_token'])

    def test_logout_all_kills_every_refresh_token(self, service):
        user = _register(service)
        sessions = [service.login('alice@example.com', PASSWORD) for _ in range(3)]

        assert service.logout_all(user.id) == 3
        for session in sessions:
            with pytest.raises(InvalidRefreshToken):
                service.refresh_access_token(session['refresh_token'])


class TestChangePassword:

    def test_change(self, service):
        user = _register(service)
        service.change_password(user.id, PASSWORD, 'N3wPassword!')

        with pytest.raises(InvalidCredentials):
            service.login('alice@example.com', PASSWORD)
        assert service.login('alice@example.com', 'N3wPassword!')['user'].id == user.id

    def test_wrong_current_password(self, service):
        user = _register(service)
        with pytest.raises(IncorrectPassword):
            service.change_password(user.id, 'not-it', 'N3wPassword!')

    def test_new_password_too_short(self, service):
        user = _register(service)
        with pytest.raises(ValidationError):
            service.change_password(user.id, PASSWORD, 'short')


class TestLogout:

    def test_logout_revokes_presented_refresh_token(self, service):
        _register(service)
        session = service.login('alice@example.com', PASSWORD)
        user_id = session['user'].id

        service.logout(
            access_token=session['access_token'],
            refresh_token=session['refresh_token'],
            user_id=user_id
        )

        with pytest.raises(InvalidRefreshToken):
            service.refresh_access_token(session['refresh_token'])

    def test_logout_twice_is_harmless(self, service):
        _register(service)
        session = service.login('alice@example.com', PASSWORD)
        user_id = session['user'].id

        service.logout(access_token=session['access_token'], user_id=user_id)
        service.logout(access_token=session['access_token'], user_id=user_id)

        assert get_token_service().is_blacklisted(session['access_token'])
