"""
Authorization server: the authorize, decision and token steps of the
authorization-code grant, expressed as plain methods over already-parsed
request parameters.

Between authorize and decision the pending request travels as a signed
transaction (HS256 JWT), so any process instance sharing the
TRANSACTION_SECRET can complete it.
"""

import calendar
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import jwt
from loguru import logger
from sqlalchemy.orm import Session

from auth.config import AuthConfig
from auth.exceptions import (
    AuthError,
    InvalidRedirectUri,
    InvalidRequest,
    InvalidScope,
    TransientStoreError,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from auth.models import OauthClient, User
from oauth_server.clients import ClientRegistry
from oauth_server.codes import AuthorizationCodeIssuer
from oauth_server.consent import ApprovalDecisionGate
from oauth_server.scopes import ScopeStore
from oauth_server.store import utcnow
from oauth_server.tokens import TokenExchangeEngine

TRANSACTION_ALGORITHM = "HS256"


def build_redirect(uri: str, **params) -> str:
    """Append query parameters to uri, keeping any query it already has"""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass
class AuthorizationResult:
    client: OauthClient
    scopes: List[str]
    redirect_to: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def consent_required(self) -> bool:
        return self.transaction_id is not None


class AuthorizationServer:
    def __init__(
        self,
        config: AuthConfig,
        registry: ClientRegistry,
        scopes: ScopeStore,
        issuer: AuthorizationCodeIssuer,
        engine: TokenExchangeEngine,
        gate: ApprovalDecisionGate,
        clock=utcnow,
    ):
        self.config = config
        self.registry = registry
        self.scopes = scopes
        self.issuer = issuer
        self.engine = engine
        self.gate = gate
        self.clock = clock

    # ==================== AUTHORIZE ====================

    def authorize(
        self,
        db: Session,
        user: User,
        client_id,
        redirect_uri: Optional[str],
        response_type: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Start an authorization request for a signed-in user.

        Returns either a redirect carrying a fresh code (consent not needed)
        or a transaction id for the consent screen. Errors raised after the
        redirect uri is verified carry it, so the caller can redirect back.
        """
        client = self.registry.find_client(db, client_id)
        if not self.registry.verify_redirect_uri(db, client, redirect_uri):
            logger.warning(f"[AUTHORIZE] Unregistered redirect uri for client {client.id}")
            raise InvalidRedirectUri()

        with self._redirect_errors(redirect_uri, state):
            if response_type != "code":
                raise UnsupportedResponseType()

            scopes = self._validate_scope(scope)

            if not self.gate.needs_consent(db, client, user, scopes):
                code = self.issuer.issue_code(db, client, redirect_uri, user, scopes)
                logger.info(f"[AUTHORIZE] Consent not needed for user {user.id}, client {client.id}")
                return AuthorizationResult(
                    client=client,
                    scopes=scopes,
                    redirect_to=build_redirect(redirect_uri, code=code, state=state),
                )

            transaction_id = self._encode_transaction(user, client, redirect_uri, scopes, state)
            logger.info(f"[AUTHORIZE] Consent required for user {user.id}, client {client.id}")
            return AuthorizationResult(client=client, scopes=scopes, transaction_id=transaction_id)

    # ==================== DECISION ====================

    def decide(
        self,
        db: Session,
        user: User,
        transaction_id: Optional[str],
        allow: bool,
        scope: Optional[str] = None,
    ) -> str:
        """Finish a consent transaction; returns the URL to redirect the user agent to"""
        transaction = self._decode_transaction(transaction_id)
        if transaction.get("sub") != str(user.id):
            logger.warning(f"[DECISION] User {user.id} submitted another user's transaction")
            raise InvalidRequest("The authorization transaction is invalid")

        client = self.registry.find_client(db, transaction["cid"])
        redirect_uri = transaction["ruri"]
        state = transaction.get("state")
        if not self.registry.verify_redirect_uri(db, client, redirect_uri):
            raise InvalidRedirectUri()

        if not allow:
            logger.info(f"[DECISION] User {user.id} denied client {client.id}")
            return build_redirect(redirect_uri, error="access_denied", state=state)

        with self._redirect_errors(redirect_uri, state):
            granted = ScopeStore.parse(transaction["scope"])
            if scope:
                narrowed = ScopeStore.parse(scope)
                if not set(narrowed) <= set(granted):
                    raise InvalidScope()
                granted = narrowed

            code = self.issuer.issue_code(db, client, redirect_uri, user, granted)

        logger.info(f"[DECISION] User {user.id} approved client {client.id} for {granted}")
        return build_redirect(redirect_uri, code=code, state=state)

    # ==================== TOKEN ====================

    def token(
        self,
        db: Session,
        client: OauthClient,
        grant_type: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str] = None,
    ) -> dict:
        """Exchange a code for an access token on behalf of an authenticated client"""
        if grant_type != "authorization_code":
            logger.warning(f"[TOKEN] Client {client.id} asked for unsupported grant {grant_type!r}")
            raise UnsupportedGrantType()
        if not code:
            raise InvalidRequest("The code parameter is required")

        issued = self.engine.exchange(db, client, code, redirect_uri)
        return issued.to_response(self.clock())

    # ==================== INTERNALS ====================

    def _validate_scope(self, scope: Optional[str]) -> List[str]:
        names = ScopeStore.parse(scope) or [self.config.default_scope]
        unknown = [name for name in names if name not in self.config.allowed_scopes]
        if unknown:
            logger.warning(f"[AUTHORIZE] Rejected unknown scopes {unknown}")
            raise InvalidScope()
        return names

    def _encode_transaction(self, user: User, client: OauthClient, redirect_uri: str, scopes, state) -> str:
        now = self.clock()
        payload = {
            "jti": secrets.token_urlsafe(16),
            "sub": str(user.id),
            "cid": client.id,
            "ruri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "iat": calendar.timegm(now.utctimetuple()),
            "exp": calendar.timegm((now + timedelta(seconds=self.config.transaction_lifetime)).utctimetuple()),
        }
        return jwt.encode(payload, self.config.transaction_secret, algorithm=TRANSACTION_ALGORITHM)

    def _decode_transaction(self, transaction_id: Optional[str]) -> dict:
        if not transaction_id:
            raise InvalidRequest("The authorization transaction is invalid")
        try:
            # Expiry is checked against the injected clock below
            payload = jwt.decode(
                transaction_id,
                self.config.transaction_secret,
                algorithms=[TRANSACTION_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"[DECISION] Rejected transaction: {type(e).__name__}")
            raise InvalidRequest("The authorization transaction is invalid")

        if payload.get("exp", 0) < calendar.timegm(self.clock().utctimetuple()):
            logger.warning("[DECISION] Rejected expired transaction")
            raise InvalidRequest("The authorization transaction has expired")
        return payload

    @staticmethod
    @contextmanager
    def _redirect_errors(redirect_uri: str, state: Optional[str]):
        """Tag protocol errors with the verified redirect uri; store outages stay 503s"""
        try:
            yield
        except TransientStoreError:
            raise
        except AuthError as e:
            e.redirect_uri = redirect_uri
            e.state = state
            raise
