from oauth_server.bearer import BearerTokenValidator
from oauth_server.clients import ClientRegistry
from oauth_server.codes import AuthorizationCodeIssuer
from oauth_server.consent import ApprovalDecisionGate
from oauth_server.scopes import ScopeStore
from oauth_server.server import AuthorizationResult, AuthorizationServer, build_redirect
from oauth_server.tokens import IssuedToken, TokenExchangeEngine

__all__ = ['ApprovalDecisionGate', 'AuthorizationCodeIssuer',
           'AuthorizationResult', 'AuthorizationServer',
           'BearerTokenValidator', 'ClientRegistry', 'IssuedToken',
           'ScopeStore', 'TokenExchangeEngine', 'build_redirect']
