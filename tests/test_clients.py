from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from auth.crypto import CredentialHasher
from auth.exceptions import InvalidClient, TransientStoreError
from auth.models import OauthAccessToken, OauthClient, OauthCode, OauthRedirectUri
from oauth_server.clients import ClientRegistry
from tests.conftest import REDIRECT_URI


def _operational_error():
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


def test_register_client_stores_only_hash(db, services, registered_client):
    client, secret = registered_client

    assert len(secret) == services.config.client_secret_length
    assert client.secret_hash != secret
    assert client.secret_algorithm == "sha256"
    assert client.trusted is False
    assert [uri.uri for uri in client.redirect_uris] == [REDIRECT_URI]


def test_secret_round_trip(db, services, oauth_client):
    services.registry.update_secret(db, oauth_client, "s1")

    assert services.registry.verify_secret(db, oauth_client, "s1") is True
    assert services.registry.verify_secret(db, oauth_client, "wrong") is False
    assert services.registry.verify_secret(db, oauth_client, "") is False


def test_update_secret_rotates_salt(db, services, registered_client):
    client, old_secret = registered_client
    old_salt = client.secret_salt

    services.registry.update_secret(db, client, "new-secret")

    assert client.secret_salt != old_salt
    assert not services.registry.verify_secret(db, client, old_secret)
    assert services.registry.verify_secret(db, client, "new-secret")


def test_verification_migrates_algorithm(db, config, registered_client):
    client, secret = registered_client
    assert client.secret_algorithm == "sha256"

    upgraded_registry = ClientRegistry(config, CredentialHasher("sha512", config.salt_length))

    assert upgraded_registry.verify_secret(db, client, secret) is True
    db.expire(client)
    assert client.secret_algorithm == "sha512"
    assert upgraded_registry.verify_secret(db, client, secret) is True


def test_failed_verification_does_not_migrate(db, config, oauth_client):
    upgraded_registry = ClientRegistry(config, CredentialHasher("sha512", config.salt_length))

    assert upgraded_registry.verify_secret(db, oauth_client, "wrong") is False
    assert oauth_client.secret_algorithm == "sha256"


def test_redirect_uri_must_match_exactly(db, services, oauth_client):
    registry = services.registry
    services.registry.add_redirect_uri(db, oauth_client, "https://a.com")

    assert registry.verify_redirect_uri(db, oauth_client, "https://a.com")
    assert not registry.verify_redirect_uri(db, oauth_client, "https://a.com/")
    assert not registry.verify_redirect_uri(db, oauth_client, "HTTPS://A.COM")
    assert not registry.verify_redirect_uri(db, oauth_client, "")
    assert not registry.verify_redirect_uri(db, oauth_client, None)


def test_client_without_redirect_uris_never_matches(db, services):
    client, _ = services.registry.register_client(db, "No Uris")
    db.expire_all()

    assert not services.registry.verify_redirect_uri(db, client, REDIRECT_URI)


def test_add_and_remove_redirect_uri(db, services, oauth_client):
    registry = services.registry
    registry.add_redirect_uri(db, oauth_client, "https://second.example.com/cb")
    registry.add_redirect_uri(db, oauth_client, "https://second.example.com/cb")

    assert db.query(OauthRedirectUri).filter(OauthRedirectUri.oauth_client_id == oauth_client.id).count() == 2

    assert registry.remove_redirect_uri(db, oauth_client, "https://second.example.com/cb") is True
    assert registry.remove_redirect_uri(db, oauth_client, "https://second.example.com/cb") is False
    assert not registry.verify_redirect_uri(db, oauth_client, "https://second.example.com/cb")
    assert db.query(OauthRedirectUri).count() == 1


def test_find_client(db, services, oauth_client):
    assert services.registry.find_client(db, oauth_client.id) is oauth_client
    assert services.registry.find_client(db, str(oauth_client.id)) is oauth_client


@pytest.mark.parametrize("client_id", [None, "", "abc", 99999])
def test_find_unknown_client(db, services, oauth_client, client_id):
    with pytest.raises(InvalidClient):
        services.registry.find_client(db, client_id)


def test_unknown_client_and_wrong_secret_are_indistinguishable(db, services, oauth_client):
    with pytest.raises(InvalidClient) as unknown:
        services.registry.authenticate(db, 99999, "whatever")
    with pytest.raises(InvalidClient) as mismatch:
        services.registry.authenticate(db, oauth_client.id, "wrong")

    assert str(unknown.value) == str(mismatch.value)
    assert unknown.value.description == mismatch.value.description


def test_authenticate(db, services, registered_client):
    client, secret = registered_client
    assert services.registry.authenticate(db, str(client.id), secret) is client


def test_lookup_is_retried_once(db, services, oauth_client):
    with mock.patch.object(ClientRegistry, "_get", side_effect=[_operational_error(), oauth_client]) as get:
        assert services.registry.find_client(db, oauth_client.id) is oauth_client
    assert get.call_count == 2


def test_lookup_failing_twice_is_transient(db, services, oauth_client):
    with mock.patch.object(ClientRegistry, "_get", side_effect=_operational_error()):
        with pytest.raises(TransientStoreError) as exc_info:
            services.registry.find_client(db, oauth_client.id)

    assert not isinstance(exc_info.value, InvalidClient)
    assert exc_info.value.status_code == 503


def test_delete_client_cascades(db, services, user, oauth_client, clock):
    code = services.issuer.issue_code(db, oauth_client, REDIRECT_URI, user, "profile")
    services.engine.exchange(db, oauth_client, code)
    services.issuer.issue_code(db, oauth_client, REDIRECT_URI, user, "profile")
    client_id = oauth_client.id

    services.registry.delete_client(db, oauth_client)

    assert db.query(OauthClient).filter(OauthClient.id == client_id).count() == 0
    assert db.query(OauthRedirectUri).count() == 0
    assert db.query(OauthCode).count() == 0
    assert db.query(OauthAccessToken).count() == 0
