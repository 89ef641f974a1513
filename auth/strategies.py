"""
Authentication strategies.

Each strategy turns one kind of credential into an authenticated principal
through a single authenticate(db, credentials) call. Routes pick the strategy
they need; nothing is registered globally.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from auth.exceptions import AuthenticationFailed, DuplicateProvider
from auth.models import OauthClient, OauthProvider, User
from auth.user_manager import UserManager
from oauth_server.bearer import BearerTokenValidator
from oauth_server.clients import ClientRegistry
from oauth_server.store import translate_store_errors


@dataclass
class FederatedProfile:
    """Profile data handed over by an external identity provider"""

    provider: str
    emails: List[str]
    display_name: str = ""
    given_name: str = ""
    family_name: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    locale: Optional[str] = None


class AuthenticationStrategy:
    """Base strategy: authenticate or raise an AuthError"""

    name = "base"

    def authenticate(self, db: Session, credentials):
        raise NotImplementedError


class LocalPasswordStrategy(AuthenticationStrategy):
    """Email and password of a verified account"""

    name = "local-user"

    def __init__(self, users: UserManager):
        self.users = users

    def authenticate(self, db: Session, credentials: dict) -> User:
        email = credentials.get("email")
        password = credentials.get("password")

        with translate_store_errors(db, "local login"):
            user = self.users.find_by_email(db, email)

        if user is None or not user.password_hash:
            logger.warning("[LOGIN] Unknown email or account without password")
            raise AuthenticationFailed()
        if not self.users.verify_password(db, user, password):
            logger.warning(f"[LOGIN] Wrong password for user {user.id}")
            raise AuthenticationFailed()

        logger.info(f"[LOGIN] User {user.id} authenticated")
        return user


class BearerTokenStrategy(AuthenticationStrategy):
    """
    Access token from an Authorization header.

    With soft=True a failed check yields None instead of an error, for
    endpoints that also serve anonymous callers. Permissions given in the
    credentials under "required" add to the ones the strategy carries.
    """

    name = "bearer"

    def __init__(
        self,
        validator: BearerTokenValidator,
        required: Sequence[str] = (),
        soft: bool = False,
        name: Optional[str] = None,
    ):
        self.validator = validator
        self.required = list(required)
        self.soft = soft
        if name:
            self.name = name

    def authenticate(self, db: Session, credentials) -> Optional[User]:
        if not isinstance(credentials, dict):
            credentials = {"token": credentials}
        required = [*self.required, *credentials.get("required", ())]
        if self.soft:
            return self.validator.validate_soft(db, credentials.get("token"), required)
        return self.validator.validate(db, credentials.get("token"), required)


class ClientCredentialStrategy(AuthenticationStrategy):
    """client_id and client_secret of a registered OAuth client"""

    name = "local-client"

    def __init__(self, registry: ClientRegistry):
        self.registry = registry

    def authenticate(self, db: Session, credentials: dict) -> OauthClient:
        return self.registry.authenticate(db, credentials.get("client_id"), credentials.get("client_secret"))


class FederatedProfileStrategy(AuthenticationStrategy):
    """
    Sign-in through an external identity provider.

    Finds the user by any of the profile's verified emails (creating one if
    none matches), refreshes the names, and keeps exactly one provider link
    per provider type holding the latest provider tokens.
    """

    name = "federated"

    def __init__(self, users: UserManager):
        self.users = users

    def authenticate(self, db: Session, credentials: FederatedProfile) -> User:
        profile = credentials
        if not profile.emails:
            logger.warning(f"[FEDERATED] {profile.provider} profile without email")
            raise AuthenticationFailed()

        with translate_store_errors(db, "federated login"):
            user = db.query(User).filter(User.email_verified.in_(profile.emails)).first()
            if user is None:
                user = User(email_verified=profile.emails[0])
                db.add(user)
                logger.info(f"[FEDERATED] Creating user from {profile.provider} profile")

            user.name_display = profile.display_name
            user.name_first = profile.given_name
            user.name_last = profile.family_name
            if profile.locale in self.users.config.locales:
                user.locale = profile.locale
            db.flush()

            providers = (
                db.query(OauthProvider)
                .filter(OauthProvider.user_id == user.id, OauthProvider.type == profile.provider)
                .all()
            )
            if len(providers) > 1:
                db.rollback()
                logger.error(f"[FEDERATED] User {user.id} has {len(providers)} {profile.provider} providers")
                raise DuplicateProvider()

            if providers:
                link = providers[0]
                link.access_token = profile.access_token
                link.refresh_token = profile.refresh_token
            else:
                db.add(
                    OauthProvider(
                        type=profile.provider,
                        access_token=profile.access_token,
                        refresh_token=profile.refresh_token,
                        user_id=user.id,
                    )
                )
            db.commit()

        logger.info(f"[FEDERATED] User {user.id} signed in through {profile.provider}")
        return user
