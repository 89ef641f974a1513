"""
Client registry: OAuth client records, their hashed secrets and redirect URIs.
"""

from typing import Iterable, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.crypto import CredentialHasher, random_string
from auth.exceptions import InvalidClient
from auth.models import OauthClient, OauthRedirectUri, User
from oauth_server.store import retry_once, translate_store_errors


class ClientRegistry:
    """
    Owns OauthClient and OauthRedirectUri rows.

    Secrets are hashed with a fresh salt under the configured default
    algorithm. A successful verification against an older algorithm
    transparently re-hashes the secret under the current default.
    """

    def __init__(self, config: AuthConfig, hasher: CredentialHasher):
        self.config = config
        self.hasher = hasher

    # ==================== SECRETS ====================

    def generate_secret(self) -> str:
        return random_string(self.config.client_secret_length)

    def update_secret(self, db: Session, client: OauthClient, secret: str) -> OauthClient:
        result = self.hasher.hash(secret)
        client.secret_hash = result.hash
        client.secret_salt = result.salt
        client.secret_algorithm = result.algorithm

        with translate_store_errors(db, "update client secret"):
            db.commit()

        logger.info(f"[CLIENT] Secret rotated for client {client.id} ({result.algorithm})")
        return client

    def verify_secret(self, db: Session, client: OauthClient, secret: str) -> bool:
        """Constant-time check against the stored hash; never raises on mismatch"""
        if not secret:
            return False

        matches = self.hasher.verify(secret, client.secret_hash, client.secret_salt, client.secret_algorithm)
        if not matches:
            logger.warning(f"[CLIENT] Secret mismatch for client {client.id}")
            return False

        if self.hasher.needs_upgrade(client.secret_algorithm):
            old_algorithm = client.secret_algorithm
            upgraded = self.hasher.upgrade(secret, client.secret_salt)
            client.secret_hash = upgraded.hash
            client.secret_salt = upgraded.salt
            client.secret_algorithm = upgraded.algorithm
            try:
                db.commit()
                logger.info(
                    f"[CLIENT] Migrated secret of client {client.id} from {old_algorithm} to {upgraded.algorithm}"
                )
            except SQLAlchemyError as e:
                # The secret was valid; the upgrade is retried on the next verification
                db.rollback()
                logger.error(f"[CLIENT] Could not persist migrated secret for client {client.id}: {e}")

        return True

    # ==================== REDIRECT URIS ====================

    def verify_redirect_uri(self, db: Session, client: OauthClient, uri: Optional[str]) -> bool:
        """Exact string match against the client's registered URIs"""
        if not uri:
            return False
        with translate_store_errors(db, "load redirect uris"):
            registered = [redirect.uri for redirect in client.redirect_uris]
        return uri in registered

    def add_redirect_uri(self, db: Session, client: OauthClient, uri: str) -> OauthRedirectUri:
        for existing in client.redirect_uris:
            if existing.uri == uri:
                return existing

        redirect = OauthRedirectUri(uri=uri)
        client.redirect_uris.append(redirect)
        with translate_store_errors(db, "add redirect uri"):
            db.commit()
        logger.info(f"[CLIENT] Registered redirect uri for client {client.id}")
        return redirect

    def remove_redirect_uri(self, db: Session, client: OauthClient, uri: str) -> bool:
        for existing in list(client.redirect_uris):
            if existing.uri == uri:
                client.redirect_uris.remove(existing)
                with translate_store_errors(db, "remove redirect uri"):
                    db.commit()
                logger.info(f"[CLIENT] Removed redirect uri from client {client.id}")
                return True
        return False

    # ==================== CLIENTS ====================

    def register_client(
        self,
        db: Session,
        name: str,
        owner: Optional[User] = None,
        redirect_uris: Iterable[str] = (),
        trusted: bool = False,
    ) -> Tuple[OauthClient, str]:
        """
        Create a client and return it with its plaintext secret.

        The plaintext is only ever available from this call or from a later
        rotation; the store keeps the salted hash.
        """
        secret = self.generate_secret()
        result = self.hasher.hash(secret)

        client = OauthClient(
            name=name,
            secret_hash=result.hash,
            secret_salt=result.salt,
            secret_algorithm=result.algorithm,
            trusted=trusted,
            user_id=owner.id if owner is not None else None,
        )
        for uri in dict.fromkeys(redirect_uris):
            client.redirect_uris.append(OauthRedirectUri(uri=uri))

        db.add(client)
        try:
            with translate_store_errors(db, "register client"):
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(f"[CLIENT] Registered client {client.id} ({name!r}, trusted={trusted})")
        return client, secret

    def find_client(self, db: Session, client_id) -> OauthClient:
        """Look up a client by id; unknown or malformed ids raise InvalidClient"""
        try:
            client_id = int(client_id)
        except (TypeError, ValueError):
            logger.warning(f"[CLIENT] Malformed client id {client_id!r}")
            raise InvalidClient()

        client = retry_once(self._get, db, client_id, db=db)
        if client is None:
            logger.warning(f"[CLIENT] Unknown client {client_id}")
            raise InvalidClient()
        return client

    def authenticate(self, db: Session, client_id, secret: str) -> OauthClient:
        """Unknown client and wrong secret are reported identically"""
        client = self.find_client(db, client_id)
        if not self.verify_secret(db, client, secret):
            raise InvalidClient()
        return client

    def delete_client(self, db: Session, client: OauthClient):
        client_id = client.id
        db.delete(client)
        try:
            with translate_store_errors(db, "delete client"):
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        logger.info(f"[CLIENT] Deleted client {client_id} with its uris, codes and tokens")

    @staticmethod
    def _get(db: Session, client_id: int) -> Optional[OauthClient]:
        return db.query(OauthClient).filter(OauthClient.id == client_id).first()
