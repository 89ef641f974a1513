"""
Token exchange engine and access token lifecycle.

Redeeming an authorization code claims it with a single DELETE of its row:
whichever transaction removes the row is the only one that may issue a
token. Everyone else sees a rowcount of zero and gets InvalidGrant.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.crypto import CredentialHasher, random_header_safe_string
from auth.exceptions import ExpiredGrant, InvalidGrant, InvalidRedirectUri
from auth.models import (
    OauthAccessToken,
    OauthAccessTokenScope,
    OauthClient,
    OauthCode,
    OauthCodeScope,
    OauthScope,
    User,
)
from oauth_server.clients import ClientRegistry
from oauth_server.store import retry_once, translate_store_errors, utcnow


@dataclass
class IssuedToken:
    """Plaintext token plus the stored record, for wire serialization"""

    token: str
    record: OauthAccessToken

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def client_id(self) -> Optional[int]:
        return self.record.oauth_client_id

    @property
    def expires(self) -> datetime:
        return self.record.expires

    @property
    def scopes(self) -> List[str]:
        return self.record.scope_names()

    def to_response(self, now: datetime) -> dict:
        scopes = self.scopes
        return {
            "access_token": self.token,
            "token_type": "Bearer",
            "expires": self.expires.isoformat() + "Z",
            "expires_in": max(int((self.expires - now).total_seconds()), 0),
            "scope": " ".join(scopes),
            "scopes": scopes,
        }


# ==================== BULK DELETES ====================

def delete_codes(db: Session, code_ids) -> int:
    """Delete codes and their scope links; returns the number of code rows removed"""
    code_ids = list(code_ids)
    if not code_ids:
        return 0
    db.query(OauthCodeScope).filter(OauthCodeScope.oauth_code_id.in_(code_ids)).delete(
        synchronize_session=False
    )
    return (
        db.query(OauthCode)
        .filter(OauthCode.id.in_(code_ids))
        .delete(synchronize_session=False)
    )


def delete_tokens(db: Session, token_ids) -> int:
    token_ids = list(token_ids)
    if not token_ids:
        return 0
    db.query(OauthAccessTokenScope).filter(
        OauthAccessTokenScope.oauth_access_token_id.in_(token_ids)
    ).delete(synchronize_session=False)
    return (
        db.query(OauthAccessToken)
        .filter(OauthAccessToken.id.in_(token_ids))
        .delete(synchronize_session=False)
    )


def sweep_expired_tokens(db: Session, now: datetime) -> int:
    """Delete every access token whose expiry has passed. Caller commits."""
    expired = [row.id for row in db.query(OauthAccessToken.id).filter(OauthAccessToken.expires < now)]
    return delete_tokens(db, expired)


def sweep_expired_codes(db: Session, now: datetime, client_id: Optional[int] = None) -> int:
    query = db.query(OauthCode.id).filter(OauthCode.expires < now)
    if client_id is not None:
        query = query.filter(OauthCode.oauth_client_id == client_id)
    return delete_codes(db, [row.id for row in query])


# ==================== ENGINE ====================

class TokenExchangeEngine:
    """
    Redeems authorization codes exactly once and manages access tokens.

    Usage:
        issued = engine.exchange(db, client, code)
        body = issued.to_response(engine.clock())
    """

    def __init__(
        self,
        config: AuthConfig,
        hasher: CredentialHasher,
        registry: ClientRegistry,
        clock=utcnow,
    ):
        self.config = config
        self.hasher = hasher
        self.registry = registry
        self.clock = clock

    def exchange(
        self,
        db: Session,
        client: OauthClient,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> IssuedToken:
        now = self.clock()

        if not code:
            raise InvalidGrant()

        client_id = client.id
        code_hash = self.hasher.lookup_hash(code)
        record = retry_once(self._find_code, db, code_hash, db=db)
        if record is None:
            logger.warning(f"[EXCHANGE] Unknown or already redeemed code presented by client {client_id}")
            raise InvalidGrant()

        # Expired codes are discarded whoever presents them
        if record.expires < now:
            try:
                with translate_store_errors(db, "discard expired code"):
                    delete_codes(db, [record.id])
                    db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            logger.warning(f"[EXCHANGE] Code {record.id} expired at {record.expires}, discarded")
            raise ExpiredGrant()

        if record.oauth_client_id != client_id:
            logger.warning(f"[EXCHANGE] Client {client_id} presented a code issued to client {record.oauth_client_id}")
            raise InvalidGrant()

        if redirect_uri is not None and not self.registry.verify_redirect_uri(db, client, redirect_uri):
            logger.warning(f"[EXCHANGE] Redirect uri not registered for client {client_id}")
            raise InvalidRedirectUri()

        code_id = record.id
        user_id = record.user_id
        scopes = list(record.scopes)

        # Token creation is never retried: only the DELETE claim may run twice
        try:
            with translate_store_errors(db, "redeem code"):
                if not self._claim(db, code_id, code_hash):
                    db.rollback()
                    logger.warning(f"[EXCHANGE] Code {code_id} was redeemed concurrently")
                    raise InvalidGrant()
                purged = sweep_expired_codes(db, now, client_id=client_id)
                issued = self._create_token(db, user_id, client_id, scopes, now)
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(
            f"[EXCHANGE] Code {code_id} redeemed for user {user_id}, client {client_id}; "
            f"token {issued.record.id} issued, {purged} expired codes purged"
        )
        return issued

    def issue_user_token(self, db: Session, user: User, scopes: Optional[List[OauthScope]] = None) -> IssuedToken:
        """Access token for a local login, not tied to any client"""
        now = self.clock()
        try:
            with translate_store_errors(db, "issue user token"):
                issued = self._create_token(db, user.id, None, scopes or [], now)
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        logger.info(f"[TOKEN] Issued session token {issued.record.id} for user {user.id}")
        return issued

    def revoke(self, db: Session, token: str) -> bool:
        """Delete a token by its plaintext; True if a row was removed"""
        if not token:
            return False
        with translate_store_errors(db, "revoke token"):
            row = db.query(OauthAccessToken.id).filter(
                OauthAccessToken.hash == self.hasher.lookup_hash(token)
            ).first()
            if row is None:
                return False
            removed = delete_tokens(db, [row.id])
            db.commit()
        if removed:
            logger.info(f"[TOKEN] Revoked token {row.id}")
        return removed > 0

    def purge_expired(self, db: Session) -> Tuple[int, int]:
        """Delete expired tokens and codes; returns (tokens, codes) removed"""
        now = self.clock()
        with translate_store_errors(db, "purge expired"):
            tokens = sweep_expired_tokens(db, now)
            codes = sweep_expired_codes(db, now)
            db.commit()
        logger.info(f"[TOKEN] Purged {tokens} expired tokens and {codes} expired codes")
        return tokens, codes

    def generate_token(self, db: Session) -> Tuple[str, str]:
        """A fresh plaintext token and its lookup hash, regenerated on collision"""
        while True:
            token = random_header_safe_string(2 * self.config.token_length)
            token_hash = self.hasher.lookup_hash(token)
            if db.query(OauthAccessToken.id).filter(OauthAccessToken.hash == token_hash).first() is None:
                return token, token_hash
            logger.warning("[TOKEN] Generated token collided with an existing one, regenerating")

    # ==================== INTERNALS ====================

    @staticmethod
    def _find_code(db: Session, code_hash: str) -> Optional[OauthCode]:
        return db.query(OauthCode).filter(OauthCode.hash == code_hash).first()

    @staticmethod
    def _claim(db: Session, code_id: int, code_hash: str) -> bool:
        """
        Delete the code row; True only for the one transaction that removed it.

        SQLite refuses to turn a read transaction into a write one while
        another writer holds the lock, even though that writer may be the
        request that already redeemed the code. The DELETE is then tried once
        more in a fresh transaction, which waits for the lock and sees the
        outcome. A DELETE can remove the row at most once, so this cannot
        issue a second token.
        """
        try:
            return delete_codes(db, [code_id]) == 1
        except OperationalError as e:
            db.rollback()
            logger.warning(f"[EXCHANGE] Claim on code {code_id} hit a lock ({e.orig}), claiming in a fresh transaction")

        try:
            return delete_codes(db, [code_id]) == 1
        except OperationalError:
            db.rollback()
            if retry_once(TokenExchangeEngine._find_code, db, code_hash, db=db) is None:
                logger.warning(f"[EXCHANGE] Code {code_id} is gone after a failed claim")
                return False
            raise

    def _create_token(
        self,
        db: Session,
        user_id: str,
        client_id: Optional[int],
        scopes: List[OauthScope],
        now: datetime,
    ) -> IssuedToken:
        token, token_hash = self.generate_token(db)
        record = OauthAccessToken(
            hash=token_hash,
            expires=now + timedelta(seconds=self.config.access_token_lifetime),
            user_id=user_id,
            oauth_client_id=client_id,
        )
        record.scopes = list(scopes)
        db.add(record)
        db.flush()
        return IssuedToken(token=token, record=record)
