"""TokenService: access token blacklist and refresh token lifecycle."""
from datetime import timedelta

import jwt
import pytest
from flask_jwt_extended import create_access_token, decode_token

from errors import InvalidRefreshToken, TokenInvalid
from extensions import get_token_service
from models import db, User, RefreshToken, TokenBlacklist, utcnow


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def user(make_user, ctx):
    created = make_user()
    return db.session.get(User, created['id'])


class TestAccessTokens:

    def test_claims_carry_identity_email_and_jti(self, user):
        token = get_token_service().issue_access_token(user)
        claims = decode_token(token)

        assert claims['sub'] == str(user.id)
        assert claims['email'] == user.email
        assert claims['is_admin'] is False
        assert claims['jti']

    def test_each_token_gets_its_own_jti(self, user):
        service = get_token_service()
        first = decode_token(service.issue_access_token(user))['jti']
        second = decode_token(service.issue_access_token(user))['jti']
        assert first != second

    def test_blacklist_is_checked_by_jti(self, user):
        service = get_token_service()
        token = service.issue_access_token(user)

        assert service.is_blacklisted(token) is False
        service.blacklist_access_token(token, user_id=user.id)
        assert service.is_blacklisted(token) is True

    def test_blacklist_entry_expires_with_the_token(self, user):
        service = get_token_service()
        token = service.issue_access_token(user, expires_delta=timedelta(minutes=5))
        service.blacklist_access_token(token)

        entry = TokenBlacklist.query.one()
        assert abs((entry.expires_at - utcnow()).total_seconds() - 300) < 60
        assert entry.user_id == user.id

    def test_blacklisting_twice_is_a_noop(self, user):
        service = get_token_service()
        token = service.issue_access_token(user)
        service.blacklist_access_token(token)
        service.blacklist_access_token(token)
        assert TokenBlacklist.query.count() == 1

    def test_token_without_exp_uses_fallback(self, user, app):
        service = get_token_service()
        token = create_access_token(identity=str(user.id), expires_delta=False)
        service.blacklist_access_token(token)

        entry = TokenBlacklist.query.one()
        expected = utcnow() + timedelta(hours=app.config['JWT_BLACKLIST_FALLBACK_HOURS'])
        assert abs((entry.expires_at - expected).total_seconds()) < 60

    def test_garbage_token_cannot_be_blacklisted(self, ctx):
        with pytest.raises(TokenInvalid):
            get_token_service().blacklist_access_token('not-a-jwt')

    def test_token_without_jti_is_rejected(self, ctx):
        token = jwt.encode({'sub': '1'}, 'whatever', algorithm='HS256')
        with pytest.raises(TokenInvalid):
            get_token_service().blacklist_access_token(token)

    def test_garbage_token_is_not_reported_blacklisted(self, ctx):
        assert get_token_service().is_blacklisted('not-a-jwt') is False


class TestRefreshTokens:

    def test_issue_creates_opaque_token(self, user):
        token = get_token_service().issue_refresh_token(user.id)

        assert len(token) == 128
        record = RefreshToken.query.filter_by(token=token).one()
        assert record.user_id == user.id
        assert record.revoked is False
        assert record.expires_at > utcnow() + timedelta(days=29)

    def test_validate_rejects_unknown_token(self, ctx):
        with pytest.raises(InvalidRefreshToken):
            get_token_service().validate_refresh_token('nope')

    def test_validate_rejects_empty_token(self, ctx):
        with pytest.raises(InvalidRefreshToken):
            get_token_service().validate_refresh_token('')

    def test_validate_rejects_expired_token(self, user):
        service = get_token_service()
        token = service.issue_refresh_token(user.id)
        record = RefreshToken.query.filter_by(token=token).one()
        record.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        with pytest.raises(InvalidRefreshToken):
            service.validate_refresh_token(token)

    def test_rotation_is_single_use(self, user):
        service = get_token_service()
        original = service.issue_refresh_token(user.id)

        successor, user_id = service.rotate_refresh_token(original)
        assert user_id == user.id
        assert successor != original
        assert service.validate_refresh_token(successor).user_id == user.id

        with pytest.raises(InvalidRefreshToken):
            service.rotate_refresh_token(original)

    def test_rotation_marks_old_token_revoked(self, user):
        service = get_token_service()
        original = service.issue_refresh_token(user.id)
        service.rotate_refresh_token(original)

        record = RefreshToken.query.filter_by(token=original).one()
        assert record.revoked is True
        assert record.revoked_at is not None

    def test_rotation_that_loses_the_race_issues_no_successor(self, user, monkeypatch):
        service = get_token_service()
        original = service.issue_refresh_token(user.id)
        stale = service.validate_refresh_token(original)

        # A concurrent request spends the token after this one validated it
        RefreshToken.query.filter_by(token=original).update(
            {'revoked': True, 'revoked_at': utcnow()}, synchronize_session=False
        )
        db.session.commit()
        monkeypatch.setattr(service, 'validate_refresh_token', lambda token: stale)

        with pytest.raises(InvalidRefreshToken):
            service.rotate_refresh_token(original)

        assert RefreshToken.query.filter_by(user_id=user.id).count() == 1
        assert RefreshToken.query.filter_by(user_id=user.id, revoked=False).count() == 0

    def test_revoke_single_token(self, user):
        service = get_token_service()
        token = service.issue_refresh_token(user.id)

        assert service.revoke_refresh_token(token) is True
        assert service.revoke_refresh_token(token) is False
        with pytest.raises(InvalidRefreshToken):
            service.validate_refresh_token(token)

    def test_revoke_respects_owner(self, user, make_user):
        other_id = make_user()['id']
        service = get_token_service()
        token = service.issue_refresh_token(user.id)

        assert service.revoke_refresh_token(token, user_id=other_id) is False
        assert service.validate_refresh_token(token)

    def test_revoke_all_for_user(self, user, make_user):
        other_id = make_user()['id']
        service = get_token_service()
        tokens = [service.issue_refresh_token(user.id) for _ in range(3)]
        other_token = service.issue_refresh_token(other_id)

        assert service.revoke_all_for_user(user.id) == 3
        for token in tokens:
            with pytest.raises(InvalidRefreshToken):
                service.validate_refresh_token(token)
        assert service.validate_refresh_token(other_token)

    def test_purge_expired(self, user):
        service = get_token_service()
        live = service.issue_refresh_token(user.id)
        stale = service.issue_refresh_token(user.id)
        RefreshToken.query.filter_by(token=stale).one().expires_at = utcnow() - timedelta(days=1)
        db.session.add(TokenBlacklist(jti='old-jti', user_id=user.id,
                                      expires_at=utcnow() - timedelta(hours=1)))
        db.session.commit()

        result = service.purge_expired()

        assert result == {'refresh_tokens_deleted': 1, 'blacklist_entries_deleted': 1}
        assert RefreshToken.query.filter_by(token=live).count() == 1

    def test_token_stats(self, user):
        service = get_token_service()
        first = service.issue_refresh_token(user.id)
        service.issue_refresh_token(user.id)
        service.revoke_refresh_token(first)

        stats = service.token_stats(user.id)
        assert stats == {'total': 2, 'active': 1, 'revoked': 1, 'expired': 0}
