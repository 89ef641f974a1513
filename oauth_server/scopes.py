"""
Scope store: free-text scope strings become shared OauthScope rows.
"""

from typing import Iterable, List, Optional, Union

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.models import OauthScope
from oauth_server.store import translate_store_errors


class ScopeStore:
    """Find-or-create for scope rows, safe against concurrent inserts of the same scope"""

    @staticmethod
    def parse(scope: Optional[Union[str, Iterable[str]]]) -> List[str]:
        """Split a space-delimited scope string (or list) into unique, ordered names"""
        if not scope:
            return []
        names = scope.split(" ") if isinstance(scope, str) else list(scope)
        return list(dict.fromkeys(name for name in names if name))

    def resolve(self, db: Session, scope: Optional[Union[str, Iterable[str]]]) -> List[OauthScope]:
        names = self.parse(scope)
        if not names:
            return []

        with translate_store_errors(db, "resolve scopes"):
            existing = {
                row.scope: row
                for row in db.query(OauthScope).filter(OauthScope.scope.in_(names)).all()
            }
            return [existing.get(name) or self._create(db, name) for name in names]

    @staticmethod
    def _create(db: Session, name: str) -> OauthScope:
        try:
            with db.begin_nested():
                scope = OauthScope(scope=name)
                db.add(scope)
            logger.debug(f"[SCOPE] Created scope {name!r}")
            return scope
        except IntegrityError:
            # Someone else inserted it between our read and our write
            logger.info(f"[SCOPE] Scope {name!r} created concurrently, refetching")
            return db.query(OauthScope).filter(OauthScope.scope == name).one()
