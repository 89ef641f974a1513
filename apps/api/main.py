# FastAPI entrypoint: builds every auth component and wires routes and middleware

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from auth.auth_routes import router as auth_router
from auth.config import AuthConfig
from auth.crypto import CredentialHasher
from auth.database import Database
from auth.exceptions import AuthError
from auth.security_middleware import (
    HTTPSEnforcementMiddleware,
    NoStoreMiddleware,
    SecurityHeadersMiddleware,
    SecurityLoggingMiddleware,
)
from auth.strategies import (
    AuthenticationStrategy,
    BearerTokenStrategy,
    ClientCredentialStrategy,
    FederatedProfileStrategy,
    LocalPasswordStrategy,
)
from auth.user_manager import Mailer, UserManager
from oauth_server.bearer import BearerTokenValidator
from oauth_server.clients import ClientRegistry
from oauth_server.codes import AuthorizationCodeIssuer
from oauth_server.consent import ApprovalDecisionGate
from oauth_server.routes import handle_auth_error
from oauth_server.routes import router as oauth_router
from oauth_server.scopes import ScopeStore
from oauth_server.server import AuthorizationServer
from oauth_server.store import utcnow
from oauth_server.tokens import TokenExchangeEngine


@dataclass
class Services:
    """Every component, constructed once in dependency order"""

    config: AuthConfig
    database: Database
    secret_hasher: CredentialHasher
    password_hasher: CredentialHasher
    registry: ClientRegistry
    scopes: ScopeStore
    issuer: AuthorizationCodeIssuer
    engine: TokenExchangeEngine
    validator: BearerTokenValidator
    gate: ApprovalDecisionGate
    server: AuthorizationServer
    users: UserManager
    strategies: Dict[str, AuthenticationStrategy] = field(default_factory=dict)


# ==================== PLUGINS ====================

# Callables receiving the Services container once wiring is complete
PLUGINS: List[Callable[[Services], None]] = []


def register_plugin(plugin: Callable[[Services], None]):
    PLUGINS.append(plugin)
    return plugin


# ==================== COMPOSITION ROOT ====================

def build_services(
    config: AuthConfig,
    database: Database,
    mailer: Optional[Mailer] = None,
    clock=utcnow,
) -> Services:
    secret_hasher = CredentialHasher(config.hash_algorithm, config.salt_length, config.bcrypt_rounds)
    password_hasher = CredentialHasher(config.password_hash_algorithm, config.salt_length, config.bcrypt_rounds)

    registry = ClientRegistry(config, secret_hasher)
    scopes = ScopeStore()
    issuer = AuthorizationCodeIssuer(config, secret_hasher, registry, scopes, clock=clock)
    engine = TokenExchangeEngine(config, secret_hasher, registry, clock=clock)
    validator = BearerTokenValidator(config, secret_hasher, clock=clock)
    gate = ApprovalDecisionGate()
    server = AuthorizationServer(config, registry, scopes, issuer, engine, gate, clock=clock)
    users = UserManager(config, password_hasher, mailer=mailer, clock=clock)

    strategies = {
        strategy.name: strategy
        for strategy in (
            LocalPasswordStrategy(users),
            BearerTokenStrategy(validator),
            BearerTokenStrategy(validator, soft=True, name="bearer-optional"),
            ClientCredentialStrategy(registry),
            FederatedProfileStrategy(users),
        )
    }

    return Services(
        config=config,
        database=database,
        secret_hasher=secret_hasher,
        password_hasher=password_hasher,
        registry=registry,
        scopes=scopes,
        issuer=issuer,
        engine=engine,
        validator=validator,
        gate=gate,
        server=server,
        users=users,
        strategies=strategies,
    )


def create_app(
    config: Optional[AuthConfig] = None,
    database: Optional[Database] = None,
    mailer: Optional[Mailer] = None,
    clock=utcnow,
    plugins: Optional[List[Callable[[Services], None]]] = None,
) -> FastAPI:
    """
    Build the API. Serve it with an ASGI server's factory mode, e.g.
    `uvicorn apps.api.main:create_app --factory`.
    """
    config = config or AuthConfig()
    database = database or Database(config)
    database.create_tables()

    services = build_services(config, database, mailer=mailer, clock=clock)

    app = FastAPI(
        title="OAuth2 Authorization Server",
        description="Authorization-code grant, bearer validation and user accounts",
        version="1.0.0",
    )
    app.state.config = config
    app.state.database = database
    app.state.services = services

    # ==================== MIDDLEWARE STACK ====================

    app.add_middleware(SecurityLoggingMiddleware)
    app.add_middleware(NoStoreMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(HTTPSEnforcementMiddleware)

    if config.http_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[config.http_origin],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
            max_age=86400,
        )

    app.add_exception_handler(AuthError, handle_auth_error)

    # ==================== ROUTER REGISTRATION ====================

    app.include_router(auth_router)     # /auth
    app.include_router(oauth_router)    # /oauth

    @app.get("/health")
    def health_check():
        """Health check endpoint for monitoring system status."""
        healthy = database.health_check()
        return {"status": "healthy" if healthy else "unhealthy", "database": healthy}

    for plugin in [*PLUGINS, *(plugins or [])]:
        plugin(services)
        logger.info(f"Plugin {getattr(plugin, '__name__', plugin)!r} registered")

    logger.info("✓ Authorization server initialized")
    return app
