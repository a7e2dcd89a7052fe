"""
Access token / refresh token 的生命週期

- Access token: flask-jwt-extended 簽的 JWT, 不存 DB;
  要提早作廢就把 jti 放進黑名單
- Refresh token: 隨機字串, 存在 refresh_tokens, 每次使用都換新 (rotation)

Refresh token 狀態: issued/active -> rotated | revoked | expired,
三個都是終點; rotation 產生的新 token 從頭開始。
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from flask_jwt_extended import create_access_token
from sqlalchemy import func, case
from sqlalchemy.exc import IntegrityError

from errors import InvalidRefreshToken, TokenInvalid
from models import db, RefreshToken, TokenBlacklist, utcnow

logger = logging.getLogger(__name__)

# 64 bytes 亂數 -> 128 個 hex 字元 (512 bits)
REFRESH_TOKEN_BYTES = 64


class TokenService:

    def __init__(self, refresh_token_expires, blacklist_fallback=timedelta(hours=24)):
        self.refresh_token_expires = refresh_token_expires
        self.blacklist_fallback = blacklist_fallback

    @classmethod
    def from_config(cls, config):
        return cls(
            refresh_token_expires=config['REFRESH_TOKEN_EXPIRES'],
            blacklist_fallback=timedelta(hours=config['JWT_BLACKLIST_FALLBACK_HOURS'])
        )

    # ============================================
    # Access tokens
    # ============================================

    def issue_access_token(self, user, expires_delta=None):
        """簽發 access token (帶 user id, email, is_admin 和新的 jti)"""
        kwargs = {}
        if expires_delta is not None:
            kwargs['expires_delta'] = expires_delta

        return create_access_token(
            identity=str(user.id),
            additional_claims={
                'email': user.email,
                'is_admin': bool(user.is_admin)
            },
            **kwargs
        )

    def blacklist_access_token(self, token, user_id=None):
        """
        把 access token 的 jti 放進黑名單, 保留到 token 原本的到期時間

        這裡不再驗簽章, 只要解得開就好; 同一個 token 放兩次不會出錯。
        """
        claims = self._unverified_claims(token)
        jti = claims.get('jti')
        if not jti:
            raise TokenInvalid('Token has no identifier')

        if 'exp' in claims:
            expires_at = datetime.fromtimestamp(claims['exp'], tz=timezone.utc).replace(tzinfo=None)
        else:
            expires_at = utcnow() + self.blacklist_fallback

        if user_id is None and claims.get('sub') is not None:
            try:
                user_id = int(claims['sub'])
            except (TypeError, ValueError):
                user_id = None

        if TokenBlacklist.query.filter_by(jti=jti).first():
            return

        entry = TokenBlacklist(jti=jti, user_id=user_id, expires_at=expires_at)
        db.session.add(entry)
        try:
            db.session.commit()
        except IntegrityError:
            # 同時有另一個 logout 先寫進去了
            db.session.rollback()
            logger.info(f"Token {jti} was already blacklisted")
            return

        logger.info(f"Access token blacklisted for user {user_id}")

    def is_blacklisted(self, token):
        try:
            jti = self._unverified_claims(token).get('jti')
        except TokenInvalid:
            return False
        if not jti:
            return False
        return self.is_jti_blacklisted(jti)

    def is_jti_blacklisted(self, jti):
        return db.session.query(
            TokenBlacklist.query.filter(
                TokenBlacklist.jti == jti,
                TokenBlacklist.expires_at > utcnow()
            ).exists()
        ).scalar()

    @staticmethod
    def _unverified_claims(token):
        try:
            return jwt.decode(token, options={'verify_signature': False})
        except jwt.InvalidTokenError:
            raise TokenInvalid('Token could not be decoded')

    # ============================================
    # Refresh tokens
    # ============================================

    def issue_refresh_token(self, user_id):
        token = self._add_refresh_token(user_id)
        db.session.commit()
        return token

    def _add_refresh_token(self, user_id):
        token = secrets.token_hex(REFRESH_TOKEN_BYTES)
        db.session.add(RefreshToken(
            token=token,
            user_id=user_id,
            expires_at=utcnow() + self.refresh_token_expires,
            revoked=False
        ))
        return token

    def validate_refresh_token(self, token):
        """查 refresh token, 不能用就丟 InvalidRefreshToken (唯讀, 不改任何資料)"""
        if not token:
            raise InvalidRefreshToken('Refresh token is required')

        record = RefreshToken.query.filter_by(token=token).first()
        if record is None:
            raise InvalidRefreshToken('Refresh token not found')
        if record.revoked:
            raise InvalidRefreshToken('Refresh token has been revoked')
        if record.expires_at <= utcnow():
            raise InvalidRefreshToken('Refresh token has expired')
        return record

    def rotate_refresh_token(self, old_token):
        """
        撤銷 old_token 並發新的, 同一個 transaction

        改進點:
        1. 撤銷用條件式 UPDATE (WHERE revoked = false)
        2. 只有真的把那一列改掉的 request 拿得到新 token
        3. 同時拿同一個 token 來換的另一個 request 影響 0 列, 直接失敗

        Returns:
            tuple: (new_token, user_id)
        """
        record = self.validate_refresh_token(old_token)
        user_id = record.user_id
        now = utcnow()

        updated = RefreshToken.query.filter(
            RefreshToken.token == old_token,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now
        ).update({'revoked': True, 'revoked_at': now}, synchronize_session=False)

        if updated != 1:
            db.session.rollback()
            logger.warning(f"Refresh token rotation lost a race for user {user_id}")
            raise InvalidRefreshToken('Refresh token has already been used')

        new_token = self._add_refresh_token(user_id)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        # identity map 裡可能還是 UPDATE 之前的舊資料
        db.session.expire(record)
        return new_token, user_id

    def revoke_refresh_token(self, token, user_id=None):
        """撤銷單一 refresh token, 沒有東西被改到就回 False"""
        if not token:
            return False

        query = RefreshToken.query.filter(
            RefreshToken.token == token,
            RefreshToken.revoked.is_(False)
        )
        if user_id is not None:
            query = query.filter(RefreshToken.user_id == user_id)

        updated = query.update({'revoked': True, 'revoked_at': utcnow()}, synchronize_session=False)
        db.session.commit()
        return updated > 0

    def revoke_all_for_user(self, user_id):
        updated = RefreshToken.query.filter(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked.is_(False)
        ).update({'revoked': True, 'revoked_at': utcnow()}, synchronize_session=False)
        db.session.commit()

        logger.info(f"Revoked {updated} refresh tokens for user {user_id}")
        return updated

    # ============================================
    # 維護 (Maintenance)
    # ============================================

    def purge_expired(self):
        """清掉已過期的 refresh token 和黑名單 (排程或 flask purge-tokens 呼叫)"""
        now = utcnow()

        refresh_deleted = RefreshToken.query.filter(
            RefreshToken.expires_at < now
        ).delete(synchronize_session=False)

        blacklist_deleted = TokenBlacklist.query.filter(
            TokenBlacklist.expires_at < now
        ).delete(synchronize_session=False)

        db.session.commit()

        logger.info(
            f"Purged {refresh_deleted} refresh tokens and {blacklist_deleted} blacklist entries"
        )
        return {
            'refresh_tokens_deleted': refresh_deleted,
            'blacklist_entries_deleted': blacklist_deleted
        }

    def token_stats(self, user_id):
        now = utcnow()
        total, active, revoked, expired = db.session.query(
            func.count(RefreshToken.id),
            func.sum(case(
                ((RefreshToken.revoked.is_(False)) & (RefreshToken.expires_at > now), 1),
                else_=0
            )),
            func.sum(case((RefreshToken.revoked.is_(True), 1), else_=0)),
            func.sum(case((RefreshToken.expires_at <= now, 1), else_=0))
        ).filter(RefreshToken.user_id == user_id).one()

        return {
            'total': total or 0,
            'active': active or 0,
            'revoked': revoked or 0,
            'expired': expired or 0
        }
