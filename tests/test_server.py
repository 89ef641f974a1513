from urllib.parse import parse_qs, urlsplit

import jwt
import pytest

from auth.exceptions import (
    InvalidClient,
    InvalidGrant,
    InvalidRedirectUri,
    InvalidRequest,
    InvalidScope,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from auth.models import OauthCode
from oauth_server.server import build_redirect
from tests.conftest import REDIRECT_URI


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def test_build_redirect_keeps_existing_query():
    url = build_redirect("https://a.com/cb?x=1", code="abc", state=None)
    assert url == "https://a.com/cb?x=1&code=abc"


def test_build_redirect_encodes_values():
    url = build_redirect("https://a.com/cb", code="a+b/c=", state="s 1")
    assert _query(url) == {"code": "a+b/c=", "state": "s 1"}


def test_untrusted_client_gets_consent_transaction(db, services, user, oauth_client):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", "xyz")

    assert result.consent_required
    assert result.redirect_to is None
    assert result.scopes == ["profile"]
    assert db.query(OauthCode).count() == 0


def test_trusted_client_is_redirected_with_a_code(db, services, user, trusted_client):
    result = services.server.authorize(db, user, trusted_client.id, REDIRECT_URI, "code", None, "xyz")

    assert not result.consent_required
    params = _query(result.redirect_to)
    assert params["state"] == "xyz"
    assert params["code"]
    assert result.redirect_to.startswith(REDIRECT_URI + "?")
    assert result.scopes == [services.config.default_scope]


def test_allow_issues_code_for_transaction_scopes(db, services, user, oauth_client):
    result = services.server.authorize(
        db, user, oauth_client.id, REDIRECT_URI, "code", "profile profile.read.email", "s"
    )

    target = services.server.decide(db, user, result.transaction_id, allow=True)

    params = _query(target)
    assert params["state"] == "s"
    issued = services.engine.exchange(db, oauth_client, params["code"])
    assert set(issued.scopes) == {"profile", "profile.read.email"}


def test_allow_can_narrow_scopes(db, services, user, oauth_client):
    result = services.server.authorize(
        db, user, oauth_client.id, REDIRECT_URI, "code", "profile profile.read.email", None
    )

    target = services.server.decide(db, user, result.transaction_id, allow=True, scope="profile")

    issued = services.engine.exchange(db, oauth_client, _query(target)["code"])
    assert issued.scopes == ["profile"]


def test_allow_cannot_widen_scopes(db, services, user, oauth_client):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", "s")

    with pytest.raises(InvalidScope) as exc_info:
        services.server.decide(db, user, result.transaction_id, allow=True, scope="profile profile.read.name")

    assert exc_info.value.redirect_uri == REDIRECT_URI
    assert exc_info.value.state == "s"


def test_cancel_redirects_with_access_denied(db, services, user, oauth_client):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", "s")

    target = services.server.decide(db, user, result.transaction_id, allow=False)

    assert _query(target) == {"error": "access_denied", "state": "s"}
    assert db.query(OauthCode).count() == 0


def test_approved_scopes_skip_consent_next_time(db, services, user, oauth_client):
    first = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", None)
    target = services.server.decide(db, user, first.transaction_id, allow=True)
    services.engine.exchange(db, oauth_client, _query(target)["code"])

    second = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", None)

    assert not second.consent_required


def test_tampered_transaction(db, services, user, oauth_client):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", None)
    forged = jwt.encode(
        {**jwt.decode(result.transaction_id, options={"verify_signature": False}), "scope": "profile.read.email"},
        "guessed-secret",
        algorithm="HS256",
    )

    with pytest.raises(InvalidRequest):
        services.server.decide(db, user, forged, allow=True)
    with pytest.raises(InvalidRequest):
        services.server.decide(db, user, "garbage", allow=True)
    with pytest.raises(InvalidRequest):
        services.server.decide(db, user, None, allow=True)


def test_transaction_belongs_to_its_user(db, services, user, other_user, oauth_client):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", None)

    with pytest.raises(InvalidRequest):
        services.server.decide(db, other_user, result.transaction_id, allow=True)


def test_transaction_expires(db, services, user, oauth_client, clock):
    result = services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "profile", None)
    clock.advance(seconds=services.config.transaction_lifetime + 1)

    with pytest.raises(InvalidRequest):
        services.server.decide(db, user, result.transaction_id, allow=True)


def test_unknown_client_is_not_redirected(db, services, user):
    with pytest.raises(InvalidClient) as exc_info:
        services.server.authorize(db, user, 4242, REDIRECT_URI, "code", "profile", None)
    assert exc_info.value.redirect_uri is None


def test_unregistered_redirect_uri_is_not_redirected(db, services, user, oauth_client):
    with pytest.raises(InvalidRedirectUri) as exc_info:
        services.server.authorize(db, user, oauth_client.id, "https://evil.example.com/", "code", "profile", None)
    assert exc_info.value.redirect_uri is None


def test_errors_after_redirect_verification_carry_the_redirect(db, services, user, oauth_client):
    with pytest.raises(UnsupportedResponseType) as exc_info:
        services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "token", "profile", "s")
    assert exc_info.value.redirect_uri == REDIRECT_URI
    assert exc_info.value.state == "s"

    with pytest.raises(InvalidScope) as exc_info:
        services.server.authorize(db, user, oauth_client.id, REDIRECT_URI, "code", "admin", None)
    assert exc_info.value.redirect_uri == REDIRECT_URI


def _client_auth(db, services, client_id, secret):
    return services.strategies["local-client"].authenticate(db, {"client_id": client_id, "client_secret": secret})


def test_token_endpoint_flow(db, services, user, registered_client, clock):
    client, secret = registered_client
    result = services.server.authorize(db, user, client.id, REDIRECT_URI, "code", "profile", None)
    code = _query(services.server.decide(db, user, result.transaction_id, allow=True))["code"]
    authenticated = _client_auth(db, services, str(client.id), secret)

    body = services.server.token(db, authenticated, "authorization_code", code, REDIRECT_URI)

    assert body["token_type"] == "Bearer"
    assert body["scope"] == "profile"
    assert services.validator.validate(db, body["access_token"]) is user

    with pytest.raises(InvalidGrant):
        services.server.token(db, authenticated, "authorization_code", code)


def test_token_endpoint_rejects_bad_clients(db, services, registered_client):
    client, secret = registered_client

    with pytest.raises(InvalidClient):
        _client_auth(db, services, client.id, "wrong")
    with pytest.raises(InvalidClient):
        _client_auth(db, services, None, None)


def test_token_endpoint_grant_type(db, services, registered_client):
    client, secret = registered_client
    authenticated = _client_auth(db, services, client.id, secret)

    with pytest.raises(UnsupportedGrantType):
        services.server.token(db, authenticated, "password", "code")
    with pytest.raises(InvalidRequest):
        services.server.token(db, authenticated, "authorization_code", None)
