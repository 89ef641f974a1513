"""
User account management: registration, email verification, password reset
and salted password hashing with algorithm migration.
"""

from datetime import timedelta
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.crypto import CredentialHasher, random_alphanum_string
from auth.exceptions import InvalidResetCode, InvalidVerificationCode, RegistrationError
from auth.models import Permission, User
from oauth_server.store import translate_store_errors, utcnow


class Mailer:
    """Outgoing mail collaborator; delivery itself lives outside this service"""

    def send(self, to: str, template: str, locale: str, context: dict):
        raise NotImplementedError


class LoggingMailer(Mailer):
    def send(self, to: str, template: str, locale: str, context: dict):
        logger.info(f"[MAIL] Would send {template!r} ({locale}) to {to}")


class UserManager:
    """User manager"""

    def __init__(
        self,
        config: AuthConfig,
        password_hasher: CredentialHasher,
        mailer: Mailer = None,
        clock=utcnow,
    ):
        self.config = config
        self.hasher = password_hasher
        self.mailer = mailer or LoggingMailer()
        self.clock = clock
        logger.info("UserManager initialized")

    # ==================== LOOKUPS ====================

    @staticmethod
    def find_by_id(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def find_by_email(db: Session, email: str) -> Optional[User]:
        """Only verified emails identify an account"""
        if not email:
            return None
        return db.query(User).filter(User.email_verified == email).first()

    # ==================== REGISTRATION ====================

    def register(self, db: Session, name: str, email: str, locale: str = None) -> User:
        """
        Register a new user under an unverified email.

        The verification code doubles as the first password reset code, so
        the user sets a password while confirming the address.
        """
        logger.info(f"[REGISTER] Starting registration for email: {email}")

        with translate_store_errors(db, "register"):
            taken = (
                db.query(User.id)
                .filter(or_(User.email_verified == email, User.email_unverified == email))
                .first()
            )
        if taken:
            logger.warning(f"[REGISTER] Email already exists: {email}")
            raise RegistrationError()

        first_name, last_name = name, ""
        names = name.split(" ")
        if len(names) == 2:
            first_name, last_name = names

        user = User(
            name_display=first_name,
            name_first=first_name,
            name_last=last_name,
            email_unverified=email,
            locale=locale if locale in self.config.locales else self.config.default_locale,
        )
        db.add(user)
        try:
            with translate_store_errors(db, "register"):
                db.flush()
                self.init_email_verification(db, user, registration=True)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[REGISTER] Registration error: {type(e).__name__}: {e}")
            raise

        logger.info(f"[REGISTER] User registered successfully: {user.id}")
        return user

    # ==================== EMAIL VERIFICATION ====================

    def init_email_verification(self, db: Session, user: User, registration: bool = False):
        code = random_alphanum_string(self.config.confirm_token_length)
        user.email_verification_code = code
        if registration:
            user.password_reset_code = code
            user.password_reset_code_expires = self.clock() + timedelta(seconds=self.config.reset_code_lifetime)

        self.mailer.send(
            user.email_unverified,
            "email-confirmation",
            user.locale,
            {"user": user.to_dict(), "code": code, "registration": registration},
        )
        with translate_store_errors(db, "init email verification"):
            db.commit()
        logger.debug(f"[VERIFY_EMAIL] Verification started for user {user.id}")

    def verify_email(self, db: Session, email: str, code: str, password: str = None) -> User:
        """Confirm an unverified email; optionally set the first password with the same code"""
        user = None
        if email and code:
            with translate_store_errors(db, "verify email"):
                user = db.query(User).filter(User.email_unverified == email).first()

        if user is None or not user.email_verification_code or user.email_verification_code != code:
            logger.warning(f"[VERIFY_EMAIL] Invalid verification attempt for {email}")
            raise InvalidVerificationCode()

        if password is not None:
            self._check_reset_code(user, code)
            self._apply_password(user, password)

        user.email_verified = email
        user.email_unverified = None
        user.email_verification_code = None

        with translate_store_errors(db, "verify email"):
            db.commit()
        logger.info(f"[VERIFY_EMAIL] Email verified for user {user.id}")
        return user

    # ==================== PASSWORD RESET ====================

    def init_password_reset(self, db: Session, email: str) -> bool:
        """Returns False for unknown emails; callers must not reveal the difference"""
        with translate_store_errors(db, "init password reset"):
            user = self.find_by_email(db, email)
        if user is None:
            logger.warning("[RESET_PWD] Reset requested for unknown email")
            return False

        code = random_alphanum_string(self.config.token_length)
        user.password_reset_code = code
        user.password_reset_code_expires = self.clock() + timedelta(seconds=self.config.reset_code_lifetime)

        self.mailer.send(user.email_verified, "password-reset", user.locale, {"user": user.to_dict(), "code": code})
        with translate_store_errors(db, "init password reset"):
            db.commit()
        logger.info(f"[RESET_PWD] Password reset started for user {user.id}")
        return True

    def update_password(self, db: Session, user: User, password: str, reset_code: str):
        self._check_reset_code(user, reset_code)
        self._apply_password(user, password)
        with translate_store_errors(db, "update password"):
            db.commit()
        logger.info(f"[RESET_PWD] Password updated for user {user.id}")

    def _check_reset_code(self, user: User, reset_code: str):
        if not user.password_reset_code or user.password_reset_code != reset_code:
            raise InvalidResetCode()
        if user.password_reset_code_expires is None or user.password_reset_code_expires < self.clock():
            raise InvalidResetCode("The password reset code has already expired!")

    def _apply_password(self, user: User, password: str):
        result = self.hasher.hash(password)
        user.password_hash = result.hash
        user.password_salt = result.salt
        user.password_algorithm = result.algorithm
        user.password_reset_code = None
        user.password_reset_code_expires = None

    # ==================== PASSWORD VERIFICATION ====================

    def verify_password(self, db: Session, user: User, password: str) -> bool:
        """Check a password, upgrading the stored hash if the default algorithm changed"""
        if not password or not self.hasher.verify(
            password, user.password_hash, user.password_salt, user.password_algorithm
        ):
            return False

        if self.hasher.needs_upgrade(user.password_algorithm):
            old_algorithm = user.password_algorithm
            upgraded = self.hasher.upgrade(password, user.password_salt)
            user.password_hash = upgraded.hash
            user.password_salt = upgraded.salt
            user.password_algorithm = upgraded.algorithm
            try:
                db.commit()
                logger.info(f"[VERIFY] Migrated password of user {user.id} from {old_algorithm} to {upgraded.algorithm}")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[VERIFY] Could not persist migrated password for user {user.id}: {e}")

        return True

    # ==================== PERMISSIONS ====================

    @staticmethod
    def has_permissions(user: User, required: Iterable[str]) -> bool:
        return user.has_permissions(list(required or []))

    def set_permissions(self, db: Session, user: User, names: Iterable[str]) -> User:
        """Replace the user's permissions, creating missing permission rows"""
        names = list(dict.fromkeys(names))
        with translate_store_errors(db, "set permissions"):
            existing = {
                p.permission: p
                for p in db.query(Permission).filter(Permission.permission.in_(names)).all()
            } if names else {}
            user.permissions = [existing.get(name) or Permission(permission=name) for name in names]
            db.commit()
        logger.info(f"[RBAC] Permissions of user {user.id} set to {names}")
        return user
