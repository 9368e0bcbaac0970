"""Player identity.

Players do not need an account: the server signs them in anonymously
(a Flask-Login session over an ``Account`` row). When anonymous sign-in is
switched off the resolver falls back to a locally generated identity kept
in the session cookie, and remembers that anonymous sign-in is unavailable so it
does not ask again.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import Optional

from flask import current_app, has_request_context, session
from flask_login import current_user, login_user

from photoguess import db
from photoguess.models import Account
from photoguess.services.rooms.errors import RestrictedOperationError


@dataclass
class Identity:
    uid: str
    display_name: str = 'Guest'
    photo_url: Optional[str] = None
    is_local: bool = False

    def to_dict(self):
        return asdict(self)


def create_local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


class AccountIdentityProvider:
    """Anonymous accounts backed by the ``account`` table."""

    def __init__(self, enabled: Optional[bool] = None):
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        if self._enabled is not None:
            return self._enabled
        return bool(current_app.config.get('ANONYMOUS_AUTH_ENABLED', True))

    def current_user(self) -> Optional[Identity]:
        if not has_request_context() or not current_user.is_authenticated:
            return None
        return Identity(uid=current_user.uid, display_name=current_user.display_name or 'Guest',
                        photo_url=current_user.photo_url)

    def sign_in_anonymously(self) -> Identity:
        if not self.enabled:
            raise RestrictedOperationError()
        account = Account(uid=uuid.uuid4().hex, is_anonymous=True)
        db.session.add(account)
        db.session.commit()
        if has_request_context():
            login_user(account, remember=True)
        current_app.logger.info(f"[auth-anonymous] uid={account.uid}")
        return Identity(uid=account.uid)

    def update_profile(self, uid: str, display_name: Optional[str], photo_url: Optional[str]) -> Identity:
        account = db.session.get(Account, uid)
        if account is None:
            raise LookupError(f"Unknown account {uid}")
        account.display_name = display_name if display_name is not None else (account.display_name or 'Guest')
        account.photo_url = photo_url if photo_url is not None else account.photo_url
        db.session.commit()
        return Identity(uid=account.uid, display_name=account.display_name, photo_url=account.photo_url)


class SessionIdentityStore:
    """Fallback identity and the "anonymous disabled" flag, kept in the Flask session.

    The session cookie lives as long as the browser keeps it, so a player
    who reloads the page keeps the same local identity.
    """

    USER_KEY = 'local_identity'
    FLAG_KEY = 'anonymous_disabled'

    def read(self) -> Optional[Identity]:
        if not has_request_context():
            return None
        user = session.get(self.USER_KEY)
        if not isinstance(user, dict) or not user.get('uid'):
            return None
        return Identity(uid=user['uid'], display_name=user.get('display_name') or 'Guest',
                        photo_url=user.get('photo_url'), is_local=True)

    def write(self, identity: Optional[Identity]) -> None:
        if identity is None:
            session.pop(self.USER_KEY, None)
            return
        session[self.USER_KEY] = {'uid': identity.uid, 'display_name': identity.display_name or 'Guest',
                                  'photo_url': identity.photo_url}

    def anonymous_disabled(self) -> bool:
        return has_request_context() and bool(session.get(self.FLAG_KEY))

    def set_anonymous_disabled(self, value: bool) -> None:
        session[self.FLAG_KEY] = bool(value)


def session_identity() -> Optional[Identity]:
    """Whoever this request is signed in as: an account, else a local identity."""
    return AccountIdentityProvider().current_user() or SessionIdentityStore().read()


class IdentityResolver:
    def __init__(self, provider: AccountIdentityProvider, local_store: SessionIdentityStore):
        self.provider = provider
        self.local_store = local_store
        self.anonymous_disabled = local_store.anonymous_disabled()
        self.identity: Optional[Identity] = None

    def current(self) -> Optional[Identity]:
        return self.provider.current_user() or self.local_store.read()

    def _local_fallback(self) -> Identity:
        identity = self.local_store.read() or Identity(uid=create_local_id(), is_local=True)
        self.local_store.write(identity)
        self.identity = identity
        return identity

    def ensure_user(self) -> Identity:
        """Current identity, signing in anonymously or falling back to a local one.

        Only a restricted-operation refusal triggers the fallback; any other
        provider error propagates.
        """
        current = self.provider.current_user()
        if current:
            self.identity = current
            return current
        if self.anonymous_disabled:
            return self._local_fallback()
        try:
            identity = self.provider.sign_in_anonymously()
        except RestrictedOperationError:
            current_app.logger.warning('[identity] anonymous auth disabled, falling back to local identity')
            self.anonymous_disabled = True
            self.local_store.set_anonymous_disabled(True)
            return self._local_fallback()
        self.local_store.write(None)
        self.identity = identity
        return identity

    def apply_profile(self, display_name: Optional[str] = None, photo_url: Optional[str] = None) -> Identity:
        identity = self.identity or self.ensure_user()
        if not identity.is_local:
            self.identity = self.provider.update_profile(identity.uid, display_name, photo_url)
            return self.identity
        updated = Identity(
            uid=identity.uid,
            display_name=display_name if display_name is not None else identity.display_name,
            photo_url=photo_url if photo_url is not None else identity.photo_url,
            is_local=True,
        )
        self.local_store.write(updated)
        self.identity = updated
        return updated
