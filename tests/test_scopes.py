from auth.models import OauthScope
from oauth_server.scopes import ScopeStore


def test_parse():
    assert ScopeStore.parse("read write") == ["read", "write"]
    assert ScopeStore.parse("read  read write") == ["read", "write"]
    assert ScopeStore.parse(["b", "a", "b"]) == ["b", "a"]
    assert ScopeStore.parse("") == []
    assert ScopeStore.parse(None) == []


def test_resolve_creates_missing_scopes(db):
    scopes = ScopeStore().resolve(db, "read write")
    db.commit()

    assert sorted(s.scope for s in scopes) == ["read", "write"]
    assert db.query(OauthScope).count() == 2


def test_resolve_reuses_existing_rows(db):
    store = ScopeStore()
    first = store.resolve(db, ["read"])
    db.commit()
    second = store.resolve(db, "read write")
    db.commit()

    assert second[0].id == first[0].id
    assert db.query(OauthScope).count() == 2


def test_scopes_are_case_sensitive(db):
    scopes = ScopeStore().resolve(db, "Read read")
    db.commit()

    assert len({s.id for s in scopes}) == 2


def test_resolve_nothing(db):
    assert ScopeStore().resolve(db, None) == []
    assert ScopeStore().resolve(db, "") == []


def test_insert_race_falls_back_to_existing_row(db):
    # Another request committed the row after our lookup missed it
    db.add(OauthScope(scope="race"))
    db.commit()
    existing_id = db.query(OauthScope).filter(OauthScope.scope == "race").one().id

    scope = ScopeStore._create(db, "race")
    db.commit()

    assert scope.id == existing_id
    assert db.query(OauthScope).filter(OauthScope.scope == "race").count() == 1


def test_failed_insert_keeps_outer_work(db, user):
    db.add(OauthScope(scope="race"))
    db.commit()

    user.name_display = "Changed"
    ScopeStore._create(db, "race")
    db.commit()
    db.expire_all()

    assert user.name_display == "Changed"
