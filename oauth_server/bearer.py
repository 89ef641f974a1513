"""
Bearer token validation for protected requests.
"""

from datetime import timedelta
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.crypto import CredentialHasher
from auth.exceptions import AuthError, Forbidden, InvalidToken
from auth.models import OauthAccessToken, User
from oauth_server.store import retry_once, translate_store_errors, utcnow
from oauth_server.tokens import delete_tokens, sweep_expired_tokens


class BearerTokenValidator:
    """
    Resolves a presented token to its user.

    Every successful validation pushes the token's expiry out by a full
    ACCESS_TOKEN_LIFETIME, so a token only dies after a quiet period.
    """

    def __init__(self, config: AuthConfig, hasher: CredentialHasher, clock=utcnow):
        self.config = config
        self.hasher = hasher
        self.clock = clock

    def validate(self, db: Session, token: Optional[str], required: Iterable[str] = ()) -> User:
        now = self.clock()

        if self.config.sweep_expired_tokens:
            self._sweep(db, now)

        if not token:
            raise InvalidToken()

        record = retry_once(self._find_token, db, self.hasher.lookup_hash(token), db=db)
        if record is None:
            logger.debug("[BEARER] Presented token not found")
            raise InvalidToken()

        try:
            with translate_store_errors(db, "validate token"):
                if record.expires < now:
                    delete_tokens(db, [record.id])
                    db.commit()
                    logger.info(f"[BEARER] Token {record.id} expired at {record.expires}")
                    raise InvalidToken()

                user = db.query(User).filter(User.id == record.user_id).first()
                if user is None:
                    delete_tokens(db, [record.id])
                    db.commit()
                    logger.warning(f"[BEARER] Token {record.id} belonged to missing user {record.user_id}, deleted")
                    raise InvalidToken()

                record.expires = now + timedelta(seconds=self.config.access_token_lifetime)
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        required = list(required or [])
        if required and not user.has_permissions(required):
            # The expiry extension above stays committed
            logger.warning(f"[BEARER] User {user.id} lacks one of {required}")
            raise Forbidden()

        return user

    def validate_soft(self, db: Session, token: Optional[str], required: Iterable[str] = ()) -> Optional[User]:
        """Like validate, but any failure yields None (anonymous) instead of an error"""
        try:
            return self.validate(db, token, required)
        except AuthError as e:
            logger.debug(f"[BEARER] Continuing anonymously: {e.error}")
            return None

    def _sweep(self, db: Session, now):
        try:
            removed = sweep_expired_tokens(db, now)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[BEARER] Expired token sweep failed: {type(e).__name__}: {e}")
            return
        if removed:
            logger.debug(f"[BEARER] Swept {removed} expired tokens")

    @staticmethod
    def _find_token(db: Session, token_hash: str) -> Optional[OauthAccessToken]:
        return db.query(OauthAccessToken).filter(OauthAccessToken.hash == token_hash).first()
