"""
SQLAlchemy models for users, permissions and the OAuth2 entities.

Codes and access tokens only ever store an unsalted hash of the plaintext,
so a presented value can be looked up by hashing it again.
"""

from datetime import datetime
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class User(Base):
    """User accounts with verified/unverified email and salted password"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name_display = Column(String(255), default="")
    name_first = Column(String(255), default="")
    name_last = Column(String(255), default="")

    # Email verification
    email_verified = Column(String(255), unique=True, nullable=True, index=True)
    email_unverified = Column(String(255), unique=True, nullable=True, index=True)
    email_verification_code = Column(String(255), nullable=True)

    # Password
    password_hash = Column(String(255), nullable=True)
    password_salt = Column(String(255), nullable=True)
    password_algorithm = Column(String(50), nullable=True)
    password_reset_code = Column(String(255), nullable=True)
    password_reset_code_expires = Column(DateTime, nullable=True)

    locale = Column(String(10), default="en-us")
    created_at = Column(DateTime, default=datetime.utcnow)

    permissions = relationship("Permission", secondary="permission_relations", back_populates="users")
    oauth_clients = relationship("OauthClient", back_populates="owner", cascade="all, delete")
    access_tokens = relationship("OauthAccessToken", back_populates="user", cascade="all, delete")
    codes = relationship("OauthCode", back_populates="user", cascade="all, delete")
    providers = relationship("OauthProvider", back_populates="user", cascade="all, delete")

    def has_permissions(self, required) -> bool:
        """
        True if every required permission is held exactly or through a parent,
        e.g. "admin" covers "admin.users.read".
        """
        held = [permission.permission for permission in self.permissions]
        for needed in required or []:
            if not any(needed == p or needed.startswith(p + ".") for p in held):
                return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name_display": self.name_display,
            "name_first": self.name_first,
            "name_last": self.name_last,
            "email": self.email_verified,
            "locale": self.locale,
            "permissions": sorted(p.permission for p in self.permissions),
        }


class Permission(Base):
    """Named permission, hierarchical through dots"""

    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    permission = Column(String(255), unique=True, nullable=False, index=True)

    users = relationship("User", secondary="permission_relations", back_populates="permissions")


class PermissionRelation(Base):
    """Association table for User-Permission many-to-many relationship"""

    __tablename__ = "permission_relations"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class OauthClient(Base):
    """A registered application; the secret is only kept as a salted hash"""

    __tablename__ = "oauth_clients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255))
    secret_hash = Column(String(255), nullable=True)
    secret_salt = Column(String(255), nullable=True)
    secret_algorithm = Column(String(50), nullable=True)
    trusted = Column(Boolean, default=False, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("User", back_populates="oauth_clients")
    redirect_uris = relationship("OauthRedirectUri", back_populates="client", cascade="all, delete-orphan")
    codes = relationship("OauthCode", back_populates="client", cascade="all, delete")
    access_tokens = relationship("OauthAccessToken", back_populates="client", cascade="all, delete")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "trusted": self.trusted,
            "user_id": self.user_id,
            "redirect_uris": [uri.uri for uri in self.redirect_uris],
        }


class OauthRedirectUri(Base):
    __tablename__ = "oauth_redirect_uris"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uri = Column(Text, nullable=False)
    oauth_client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False, index=True)

    client = relationship("OauthClient", back_populates="redirect_uris")


class OauthScope(Base):
    """A single scope string, shared by every code and token that carries it"""

    __tablename__ = "oauth_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(255), unique=True, nullable=False, index=True)

    codes = relationship("OauthCode", secondary="oauth_code_scopes", back_populates="scopes")
    access_tokens = relationship("OauthAccessToken", secondary="oauth_access_token_scopes", back_populates="scopes")


class OauthCode(Base):
    """Single-use authorization code"""

    __tablename__ = "oauth_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(255), nullable=False, index=True)
    expires = Column(DateTime, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    oauth_client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="codes")
    client = relationship("OauthClient", back_populates="codes")
    scopes = relationship("OauthScope", secondary="oauth_code_scopes", back_populates="codes")


class OauthCodeScope(Base):
    __tablename__ = "oauth_code_scopes"

    oauth_code_id = Column(Integer, ForeignKey("oauth_codes.id", ondelete="CASCADE"), primary_key=True)
    oauth_scope_id = Column(Integer, ForeignKey("oauth_scopes.id", ondelete="CASCADE"), primary_key=True)


class OauthAccessToken(Base):
    """Bearer token; expires slides forward on every successful use"""

    __tablename__ = "oauth_access_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(255), unique=True, nullable=False, index=True)
    expires = Column(DateTime, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # Tokens from a local login are not tied to a client
    oauth_client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="access_tokens")
    client = relationship("OauthClient", back_populates="access_tokens")
    scopes = relationship("OauthScope", secondary="oauth_access_token_scopes", back_populates="access_tokens")

    def scope_names(self) -> list:
        return sorted(scope.scope for scope in self.scopes)


class OauthAccessTokenScope(Base):
    __tablename__ = "oauth_access_token_scopes"

    oauth_access_token_id = Column(
        Integer, ForeignKey("oauth_access_tokens.id", ondelete="CASCADE"), primary_key=True
    )
    oauth_scope_id = Column(Integer, ForeignKey("oauth_scopes.id", ondelete="CASCADE"), primary_key=True)


class OauthProvider(Base):
    """Tokens a federated identity provider handed us for a user"""

    __tablename__ = "oauth_providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False, index=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="providers")
