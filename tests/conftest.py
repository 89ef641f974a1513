from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from apps.api.main import build_services, create_app
from auth.config import AuthConfig
from auth.database import Database
from auth.models import User
from auth.user_manager import Mailer

REDIRECT_URI = "https://client.example.com/callback"


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingMailer(Mailer):
    def __init__(self):
        self.sent = []

    def send(self, to, template, locale, context):
        self.sent.append({"to": to, "template": template, "locale": locale, "context": context})

    def last(self, template):
        return [mail for mail in self.sent if mail["template"] == template][-1]


@pytest.fixture
def config():
    return AuthConfig(
        database_url="sqlite://",
        token_length=16,
        confirm_token_length=16,
        client_secret_length=24,
        bcrypt_rounds=4,
        transaction_secret="test-transaction-secret",
        sweep_expired_tokens=True,
        http_origin=None,
        locales=["en-us", "de-de"],
        default_locale="en-us",
        allowed_scopes=["profile", "profile.read.email", "profile.read.name", "read", "write"],
        default_scope="profile",
    )


@pytest.fixture
def database(config):
    database = Database(config)
    database.create_tables()
    yield database
    database.drop_tables()
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def services(config, database, mailer, clock):
    return build_services(config, database, mailer=mailer, clock=clock)


@pytest.fixture
def user(db):
    user = User(name_display="Ada", name_first="Ada", name_last="Lovelace", email_verified="ada@example.com")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_user(db):
    user = User(name_display="Grace", name_first="Grace", name_last="Hopper", email_verified="grace@example.com")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def registered_client(db, services, user):
    """(client, plaintext secret) of an untrusted client"""
    return services.registry.register_client(db, "Test App", owner=user, redirect_uris=[REDIRECT_URI])


@pytest.fixture
def oauth_client(registered_client):
    return registered_client[0]


@pytest.fixture
def trusted_client(db, services, user):
    client, _ = services.registry.register_client(
        db, "First Party", owner=user, redirect_uris=[REDIRECT_URI], trusted=True
    )
    return client


@pytest.fixture
def app(config, database, mailer, clock):
    return create_app(config=config, database=database, mailer=mailer, clock=clock)


@pytest.fixture
def http(app):
    with TestClient(app) as client:
        yield client
