"""Tests for the Cognito auth service."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import boto3
import pytest
from botocore.stub import Stubber
from keyring.errors import PasswordDeleteError

from auth import service
from auth.service import (
    AccessRevokedError,
    AuthenticationError,
    CognitoAuthService,
    NewPasswordRequiredError,
    SessionExpiredError,
    build_session,
)

TOKENS = {
    "AccessToken": "access-token",
    "RefreshToken": "refresh-token",
    "IdToken": "id-token",
    "ExpiresIn": 3600,
    "TokenType": "Bearer",
}


class MemoryKeyring:
    """Stands in for the OS keychain."""

    def __init__(self):
        self.passwords = {}

    def set_password(self, service_name, username, password):
        self.passwords[(service_name, username)] = password

    def get_password(self, service_name, username):
        return self.passwords.get((service_name, username))

    def delete_password(self, service_name, username):
        if (service_name, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service_name, username)]


def _client(name):
    return boto3.client(name, region_name="us-west-2",
                        aws_access_key_id="testing", aws_secret_access_key="testing")


@pytest.fixture
def store(monkeypatch):
    memory = MemoryKeyring()
    monkeypatch.setattr(service, "keyring", memory)
    return memory


@pytest.fixture
def cognito(settings, store):
    client = _client("cognito-idp")
    identity = _client("cognito-identity")
    with Stubber(client) as idp_stub, Stubber(identity) as identity_stub:
        auth = CognitoAuthService(settings, client=client, identity_client=identity)
        yield auth, idp_stub, identity_stub
        idp_stub.assert_no_pending_responses()
        identity_stub.assert_no_pending_responses()


def _password_auth(username="admin@example.com", password="secret-password"):
    return {
        "ClientId": "client-id",
        "AuthFlow": "USER_PASSWORD_AUTH",
        "AuthParameters": {"USERNAME": username, "PASSWORD": password},
    }


class TestAuthenticate:
    """Tests for password sign-in."""

    def test_success_stores_refresh_token(self, cognito, store):
        auth, stub, _ = cognito
        stub.add_response("initiate_auth", {"AuthenticationResult": TOKENS}, _password_auth())

        tokens = auth.authenticate("admin@example.com", "secret-password")

        assert tokens["AccessToken"] == "access-token"
        assert auth.is_authenticated()
        assert auth.get_username() == "admin@example.com"
        assert store.passwords[("CatalogAdmin", "admin@example.com")] == "refresh-token"

    @pytest.mark.parametrize("code,message", [
        ("NotAuthorizedException", "Incorrect username or password"),
        ("UserNotFoundException", "User does not exist"),
        ("UserNotConfirmedException", "not confirmed"),
    ])
    def test_errors(self, cognito, code, message):
        auth, stub, _ = cognito
        stub.add_client_error("initiate_auth", service_error_code=code, service_message="nope")

        with pytest.raises(AuthenticationError, match=message):
            auth.authenticate("admin@example.com", "secret-password")
        assert not auth.is_authenticated()

    def test_new_password_challenge(self, cognito):
        auth, stub, _ = cognito
        stub.add_response("initiate_auth", {
            "ChallengeName": "NEW_PASSWORD_REQUIRED",
            "Session": "challenge-session-token-0001",
        }, _password_auth())

        with pytest.raises(NewPasswordRequiredError) as excinfo:
            auth.authenticate("admin@example.com", "secret-password")

        assert excinfo.value.session == "challenge-session-token-0001"
        assert not auth.is_authenticated()


class TestSession:
    """Tests for refresh, restore, validation and logout."""

    def test_restore_session_from_keyring(self, cognito, store):
        auth, stub, _ = cognito
        store.set_password("CatalogAdmin", "admin", "stored-refresh")
        stub.add_response("initiate_auth", {"AuthenticationResult": {
            "AccessToken": "new-access", "IdToken": "new-id", "ExpiresIn": 3600,
        }}, {
            "ClientId": "client-id",
            "AuthFlow": "REFRESH_TOKEN_AUTH",
            "AuthParameters": {"REFRESH_TOKEN": "stored-refresh"},
        })

        assert auth.try_restore_session("admin")
        assert auth.get_access_token() == "new-access"
        assert auth._refresh_token == "stored-refresh"

    def test_restore_without_stored_token(self, cognito):
        auth, _, _ = cognito

        assert not auth.try_restore_session("admin")
        assert not auth.is_authenticated()

    def test_expired_refresh_token_is_cleared(self, cognito, store):
        auth, stub, _ = cognito
        store.set_password("CatalogAdmin", "admin", "stale")
        stub.add_client_error("initiate_auth", service_error_code="NotAuthorizedException",
                              service_message="Refresh Token has expired")

        assert not auth.try_restore_session("admin")
        assert ("CatalogAdmin", "admin") not in store.passwords

    def test_refresh_without_token(self, cognito):
        auth, _, _ = cognito

        with pytest.raises(SessionExpiredError):
            auth.refresh_tokens()

    def test_refresh_revoked(self, cognito):
        auth, stub, _ = cognito
        stub.add_client_error("initiate_auth", service_error_code="NotAuthorizedException",
                              service_message="Refresh Token has been revoked")

        with pytest.raises(AccessRevokedError):
            auth.refresh_tokens("token")

    def test_validate_session(self, cognito):
        auth, stub, _ = cognito
        stub.add_response("get_user", {"Username": "admin", "UserAttributes": []},
                          {"AccessToken": "token"})
        stub.add_client_error("get_user", service_error_code="NotAuthorizedException",
                              service_message="Access Token has expired")
        stub.add_client_error("get_user", service_error_code="NotAuthorizedException",
                              service_message="User is disabled.")

        assert auth.validate_session("token")
        assert not auth.validate_session("token")
        with pytest.raises(AccessRevokedError):
            auth.validate_session("token")

    def test_validate_without_token(self, cognito):
        auth, _, _ = cognito

        assert not auth.validate_session()

    def test_logout_clears_everything(self, cognito, store):
        auth, stub, _ = cognito
        stub.add_response("initiate_auth", {"AuthenticationResult": TOKENS}, _password_auth())
        auth.authenticate("admin@example.com", "secret-password")

        auth.logout()

        assert not auth.is_authenticated()
        assert auth.get_username() is None
        assert store.passwords == {}

    def test_logout_twice(self, cognito):
        auth, _, _ = cognito
        auth._username = "admin"

        auth.logout()
        auth.logout()


class TestSignUp:
    def test_sign_up(self, cognito):
        auth, stub, _ = cognito
        stub.add_response("sign_up", {"UserConfirmed": False, "UserSub": "sub-123"}, {
            "ClientId": "client-id",
            "Username": "new@example.com",
            "Password": "secret-password",
            "UserAttributes": [{"Name": "email", "Value": "new@example.com"}],
        })

        result = auth.sign_up("new@example.com", "secret-password")

        assert result == {"UserSub": "sub-123", "UserConfirmed": False}

    def test_existing_user(self, cognito):
        auth, stub, _ = cognito
        stub.add_client_error("sign_up", service_error_code="UsernameExistsException")

        with pytest.raises(AuthenticationError, match="already exists"):
            auth.sign_up("new@example.com", "secret-password")


class TestAwsCredentials:
    """Tests for identity pool credentials."""

    LOGINS = {"cognito-idp.us-west-2.amazonaws.com/us-west-2_pool": "id-token"}

    def _sign_in(self, auth, stub):
        stub.add_response("initiate_auth", {"AuthenticationResult": TOKENS}, _password_auth())
        auth.authenticate("admin@example.com", "secret-password")

    def _add_credentials(self, identity_stub, expiration):
        identity_stub.add_response("get_id", {"IdentityId": "us-west-2:1234-abcd"}, {
            "IdentityPoolId": "us-west-2:identity-pool",
            "Logins": self.LOGINS,
        })
        identity_stub.add_response("get_credentials_for_identity", {
            "IdentityId": "us-west-2:1234-abcd",
            "Credentials": {
                "AccessKeyId": "ASIAEXAMPLE",
                "SecretKey": "secret",
                "SessionToken": "session",
                "Expiration": expiration,
            },
        }, {"IdentityId": "us-west-2:1234-abcd", "Logins": self.LOGINS})

    def test_credentials_are_cached(self, cognito):
        auth, stub, identity_stub = cognito
        self._sign_in(auth, stub)
        self._add_credentials(identity_stub, datetime.now(timezone.utc) + timedelta(hours=1))

        first = auth.get_aws_credentials()
        second = auth.get_aws_credentials()

        assert first is second
        assert first["SecretAccessKey"] == "secret"
        assert first["AccessKeyId"] == "ASIAEXAMPLE"

    def test_credentials_refetched_near_expiry(self, cognito):
        auth, stub, identity_stub = cognito
        self._sign_in(auth, stub)
        self._add_credentials(identity_stub, datetime.now(timezone.utc) + timedelta(minutes=2))
        self._add_credentials(identity_stub, datetime.now(timezone.utc) + timedelta(hours=1))

        auth.get_aws_credentials()
        auth.get_aws_credentials()

    def test_no_credentials_when_signed_out(self, cognito):
        auth, _, _ = cognito

        assert auth.get_aws_credentials() is None

    def test_identity_pool_error(self, cognito):
        auth, stub, identity_stub = cognito
        self._sign_in(auth, stub)
        identity_stub.add_client_error("get_id", service_error_code="NotAuthorizedException",
                                       service_message="Invalid login token")

        with pytest.raises(AuthenticationError, match="Invalid login token"):
            auth.get_aws_credentials()


class TestBuildSession:
    def test_default_chain_without_auth(self, settings):
        with patch.object(service.boto3, "Session") as session_cls:
            build_session(settings)

        session_cls.assert_called_once_with(region_name="us-west-2")

    def test_uses_identity_pool_credentials(self, settings):
        class SignedIn:
            def get_aws_credentials(self):
                return {"AccessKeyId": "AK", "SecretAccessKey": "SK", "SessionToken": "ST"}

        with patch.object(service.boto3, "Session") as session_cls:
            build_session(settings, SignedIn())

        session_cls.assert_called_once_with(
            region_name="us-west-2",
            aws_access_key_id="AK",
            aws_secret_access_key="SK",
            aws_session_token="ST",
        )
