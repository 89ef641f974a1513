import pytest

from tests.conftest import REDIRECT_URI


def _grant(db, services, client, user, scope):
    code = services.issuer.issue_code(db, client, REDIRECT_URI, user, scope)
    return services.engine.exchange(db, client, code)


@pytest.mark.parametrize("scope", ["profile", "anything at all", "", None])
def test_trusted_client_never_needs_consent(db, services, user, trusted_client, scope):
    assert services.gate.needs_consent(db, trusted_client, user, scope) is False


def test_first_request_needs_consent(db, services, user, oauth_client):
    assert services.gate.needs_consent(db, oauth_client, user, "profile") is True


def test_already_granted_scopes_skip_consent(db, services, user, oauth_client):
    _grant(db, services, oauth_client, user, "profile profile.read.email")

    assert services.gate.needs_consent(db, oauth_client, user, "profile") is False
    assert services.gate.needs_consent(db, oauth_client, user, "profile.read.email profile") is False
    assert services.gate.needs_consent(db, oauth_client, user, "profile profile.read.name") is True


def test_granted_scopes_are_the_union_over_tokens(db, services, user, oauth_client):
    _grant(db, services, oauth_client, user, "profile")
    _grant(db, services, oauth_client, user, "profile.read.name")

    assert services.gate.granted_scopes(db, oauth_client, user) == {"profile", "profile.read.name"}
    assert services.gate.needs_consent(db, oauth_client, user, "profile profile.read.name") is False


def test_grants_do_not_leak_between_clients_or_users(db, services, user, other_user, oauth_client):
    other_client, _ = services.registry.register_client(db, "Other", redirect_uris=[REDIRECT_URI])
    _grant(db, services, other_client, user, "profile")
    _grant(db, services, oauth_client, other_user, "profile")

    assert services.gate.needs_consent(db, oauth_client, user, "profile") is True
