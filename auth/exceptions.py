"""
Error taxonomy for the authorization server.

Every protocol error carries the RFC 6749 error code the HTTP layer puts on
the wire and a description that never reveals whether an account or client
exists.
"""


class AuthError(Exception):
    """Base class for all auth and oauth failures"""

    error = "server_error"
    description = "The request could not be processed"
    status_code = 400

    # Set once the client's redirect uri is verified, so the error can be sent back there
    redirect_uri = None
    state = None

    def __init__(self, description: str = None):
        if description is not None:
            self.description = description
        super().__init__(f"{self.error}: {self.description}")


class InvalidRequest(AuthError):
    error = "invalid_request"
    description = "The request is missing a parameter or is otherwise malformed"


class InvalidClient(AuthError):
    error = "invalid_client"
    description = "Client authentication failed"
    status_code = 401


class InvalidRedirectUri(AuthError):
    error = "invalid_request"
    description = "The sent redirect uri isn't registered with this oauth client"


class InvalidScope(AuthError):
    error = "invalid_scope"
    description = "The requested scope is invalid"


class InvalidGrant(AuthError):
    error = "invalid_grant"
    description = "The authorization code is invalid or has already been used"


class ExpiredGrant(InvalidGrant):
    description = "The authorization code has expired"


class UnsupportedGrantType(AuthError):
    error = "unsupported_grant_type"
    description = "Only the authorization_code grant is supported"


class UnsupportedResponseType(AuthError):
    error = "unsupported_response_type"
    description = "Only the code response type is supported"


class AccessDenied(AuthError):
    error = "access_denied"
    description = "The resource owner denied the request"
    status_code = 403


class InvalidToken(AuthError):
    error = "invalid_token"
    description = "Unauthorized"
    status_code = 401


class Forbidden(AuthError):
    error = "insufficient_scope"
    description = "Forbidden"
    status_code = 403


class AuthenticationFailed(AuthError):
    error = "access_denied"
    description = "Authentication failed!"
    status_code = 401


class RegistrationError(AuthError):
    error = "invalid_request"
    description = "This email is already registered!"


class InvalidResetCode(AuthError):
    error = "invalid_request"
    description = "The password reset code is invalid!"


class InvalidVerificationCode(AuthError):
    error = "invalid_request"
    description = "The email verification code is invalid!"


class TransientStoreError(AuthError):
    """The store is unreachable; the caller may retry the whole request"""

    error = "temporarily_unavailable"
    description = "The service is temporarily unavailable"
    status_code = 503


class DuplicateProvider(AuthError):
    """More than one provider link of one type exists for a user"""

    error = "server_error"
    description = "More than one provider of the same type is registered for this user"
    status_code = 500
