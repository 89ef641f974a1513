"""
Authorization code issuance.

A code is bound to one user, one client and a set of scopes. Only its
unsalted hash is stored; the plaintext goes back to the caller once, to be
placed in the redirect.
"""

from datetime import timedelta
from typing import Iterable, Union

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.crypto import CredentialHasher, random_string
from auth.exceptions import InvalidRedirectUri
from auth.models import OauthClient, OauthCode, User
from oauth_server.clients import ClientRegistry
from oauth_server.scopes import ScopeStore
from oauth_server.store import translate_store_errors, utcnow


class AuthorizationCodeIssuer:
    def __init__(
        self,
        config: AuthConfig,
        hasher: CredentialHasher,
        registry: ClientRegistry,
        scopes: ScopeStore,
        clock=utcnow,
    ):
        self.config = config
        self.hasher = hasher
        self.registry = registry
        self.scopes = scopes
        self.clock = clock

    def issue_code(
        self,
        db: Session,
        client: OauthClient,
        redirect_uri: str,
        user: User,
        scope: Union[str, Iterable[str], None],
    ) -> str:
        """
        Create a code for user+client+scope and return its plaintext.

        A redirect URI the client does not own fails before anything is
        written. Scope resolution and the code row commit together.
        """
        if not self.registry.verify_redirect_uri(db, client, redirect_uri):
            logger.warning(f"[CODE] Redirect uri not registered for client {client.id}")
            raise InvalidRedirectUri()

        try:
            with translate_store_errors(db, "issue code"):
                code, code_hash = self._generate_code(db)
                record = OauthCode(
                    hash=code_hash,
                    expires=self.clock() + timedelta(seconds=self.config.auth_code_lifetime),
                    user_id=user.id,
                    oauth_client_id=client.id,
                )
                record.scopes = self.scopes.resolve(db, scope)
                db.add(record)
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(
            f"[CODE] Issued code {record.id} for user {user.id}, client {client.id}, "
            f"scopes {sorted(s.scope for s in record.scopes)}"
        )
        return code

    def _generate_code(self, db: Session):
        while True:
            code = random_string(self.config.token_length)
            code_hash = self.hasher.lookup_hash(code)
            if db.query(OauthCode.id).filter(OauthCode.hash == code_hash).first() is None:
                return code, code_hash
            logger.warning("[CODE] Generated code collided with a live one, regenerating")
