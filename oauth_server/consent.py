"""
Approval decision gate: can the consent screen be skipped?
"""

from loguru import logger
from sqlalchemy.orm import Session

from auth.models import OauthAccessToken, OauthClient, OauthScope, User
from oauth_server.scopes import ScopeStore
from oauth_server.store import translate_store_errors


class ApprovalDecisionGate:
    def needs_consent(self, db: Session, client: OauthClient, user: User, scope) -> bool:
        if client.trusted:
            logger.debug(f"[CONSENT] Client {client.id} is trusted, skipping consent")
            return False

        requested = set(ScopeStore.parse(scope))
        granted = self.granted_scopes(db, client, user)
        missing = requested - granted
        if missing:
            logger.debug(f"[CONSENT] User {user.id} has not granted {sorted(missing)} to client {client.id}")
            return True
        return False

    @staticmethod
    def granted_scopes(db: Session, client: OauthClient, user: User) -> set:
        """Union of scopes over all of the user's tokens for this client"""
        with translate_store_errors(db, "load granted scopes"):
            rows = (
                db.query(OauthScope.scope)
                .join(OauthScope.access_tokens)
                .filter(
                    OauthAccessToken.user_id == user.id,
                    OauthAccessToken.oauth_client_id == client.id,
                )
                .distinct()
                .all()
            )
        return {row.scope for row in rows}
