from datetime import timedelta

import pytest

from accountcore.config import TokenPurpose
from accountcore.service.authenticator import RequestAuthenticator, extract_bearer
from accountcore.service.result import Err, ErrorKind, Ok
from accountcore.service.sessions import SessionManager
from accountcore.service.tokens import TokenCodec
from accountcore.storage.memory import MemoryStore
from accountcore.storage.models import AccountRole, identity_of


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codecs(clock):
    def build(purpose, minutes):
        return TokenCodec(
            purpose=purpose,
            secret=f"{purpose.value}-secret",
            lifetime=timedelta(minutes=minutes),
            issuer="accountcore",
            audience="accountcore-clients",
            clock=clock,
        )

    return build(TokenPurpose.ACCESS, 15), build(TokenPurpose.REFRESH, 60)


@pytest.fixture
def sessions(store, codecs):
    access, refresh = codecs
    return SessionManager(store, access_codec=access, refresh_codec=refresh)


@pytest.fixture
def account(store):
    return store.create_account(
        handle="alice", email="alice@example.com", password_hash="h", role=AccountRole.MODERATOR
    )


def test_extract_bearer():
    assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
    assert extract_bearer("bearer  token ") == "token"
    assert extract_bearer("Basic dXNlcg==") is None
    assert extract_bearer("Bearer ") is None
    assert extract_bearer(None) is None


def test_authenticate_returns_identity(store, codecs, sessions, account):
    authenticator = RequestAuthenticator(store, codecs[0])
    pair = sessions.login(identity_of(account)).value

    result = authenticator.authenticate(pair.access_token)

    assert isinstance(result, Ok)
    assert result.value.id == account.id
    assert result.value.role == AccountRole.MODERATOR


def test_missing_token_is_unauthenticated(store, codecs):
    result = RequestAuthenticator(store, codecs[0]).authenticate(None)

    assert isinstance(result, Err)
    assert result.kind == ErrorKind.UNAUTHENTICATED


def test_refresh_token_is_not_an_access_token(store, codecs, sessions, account):
    pair = sessions.login(identity_of(account)).value

    result = RequestAuthenticator(store, codecs[0]).authenticate(pair.refresh_token)

    assert result.kind == ErrorKind.UNAUTHENTICATED


def test_expired_access_token_is_rejected(store, codecs, sessions, clock, account):
    pair = sessions.login(identity_of(account)).value
    clock.now += 15 * 60

    result = RequestAuthenticator(store, codecs[0]).authenticate(pair.access_token)

    assert result.kind == ErrorKind.UNAUTHENTICATED


def test_deactivation_applies_to_unexpired_access_tokens(store, codecs, sessions, account):
    authenticator = RequestAuthenticator(store, codecs[0])
    pair = sessions.login(identity_of(account)).value
    store.update_fields(account.id, is_active=False)

    assert authenticator.authenticate(pair.access_token).kind == ErrorKind.UNAUTHENTICATED


def test_deleted_account_is_rejected(store, codecs, sessions, account):
    authenticator = RequestAuthenticator(store, codecs[0])
    pair = sessions.login(identity_of(account)).value
    store.delete_account(account.id)

    assert authenticator.authenticate(pair.access_token).kind == ErrorKind.UNAUTHENTICATED


def test_role_change_is_seen_immediately(store, codecs, sessions, account):
    authenticator = RequestAuthenticator(store, codecs[0])
    pair = sessions.login(identity_of(account)).value
    store.update_fields(account.id, role=AccountRole.STANDARD)

    assert authenticator.authenticate(pair.access_token).value.role == AccountRole.STANDARD


def test_unverified_refused_when_verification_required(store, codecs, sessions, account):
    authenticator = RequestAuthenticator(store, codecs[0], require_verified_email=True)
    pair = sessions.login(identity_of(account)).value

    assert authenticator.authenticate(pair.access_token).kind == ErrorKind.UNAUTHENTICATED

    store.update_fields(account.id, is_email_verified=True)
    assert isinstance(authenticator.authenticate(pair.access_token), Ok)
