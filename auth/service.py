"""
AWS Cognito Authentication Service for the catalog admin tool.

Provides sign-in through the boto3 cognito-idp client.
Refresh tokens are stored securely using the keyring library.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import boto3
import keyring
from botocore.exceptions import ClientError
from keyring.errors import KeyringError, PasswordDeleteError

from utils.events import emit

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Custom exception for authentication failures."""
    pass


class NewPasswordRequiredError(AuthenticationError):
    """Exception raised when user needs to set a new password."""
    def __init__(self, message: str, session: str, username: str):
        super().__init__(message)
        self.session = session
        self.username = username


class SessionExpiredError(AuthenticationError):
    """Exception raised when the session has expired."""
    pass


class AccessRevokedError(AuthenticationError):
    """Exception raised when user access has been revoked."""
    pass


def _error_details(e: ClientError):
    error = e.response.get('Error', {})
    return error.get('Code', ''), error.get('Message', str(e))


class CognitoAuthService:
    """
    AWS Cognito Authentication Service.

    Handles user authentication, session validation, and token refresh.
    """

    def __init__(self, settings, client=None, identity_client=None):
        self.user_pool_id = settings.cognito_user_pool_id
        self.client_id = settings.cognito_client_id
        self.identity_pool_id = settings.cognito_identity_pool_id
        self.region = settings.cognito_region
        self.keyring_service = settings.keyring_service_name

        self.client = client or boto3.client('cognito-idp', region_name=self.region)
        self._identity_client = identity_client

        # Current tokens (in-memory)
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._id_token: Optional[str] = None
        self._username: Optional[str] = None

        # Temporary AWS credentials cache (from Cognito Identity Pool)
        self._aws_credentials: Optional[Dict[str, Any]] = None
        self._aws_credentials_expiration: Optional[datetime] = None

    @property
    def identity_client(self):
        if self._identity_client is None:
            self._identity_client = boto3.client('cognito-identity', region_name=self.region)
        return self._identity_client

    def authenticate(self, username: str, password: str) -> Dict[str, str]:
        """
        Authenticate user with username and password.

        Args:
            username: The user's username or email
            password: The user's password

        Returns:
            Dict containing AccessToken, RefreshToken, IdToken, and ExpiresIn

        Raises:
            NewPasswordRequiredError: If the account must set a new password first
            AuthenticationError: If authentication fails
        """
        try:
            response = self.client.initiate_auth(
                ClientId=self.client_id,
                AuthFlow='USER_PASSWORD_AUTH',
                AuthParameters={
                    'USERNAME': username,
                    'PASSWORD': password
                }
            )
        except ClientError as e:
            error_code, error_message = _error_details(e)
            emit(logger, logging.WARNING, "auth.sign_in_failed", username=username, code=error_code)
            if error_code == 'NotAuthorizedException':
                raise AuthenticationError("Incorrect username or password") from e
            elif error_code == 'UserNotConfirmedException':
                raise AuthenticationError("User is not confirmed. Please check your email.") from e
            elif error_code == 'UserNotFoundException':
                raise AuthenticationError("User does not exist") from e
            elif error_code == 'PasswordResetRequiredException':
                raise AuthenticationError("Password reset required") from e
            raise AuthenticationError(f"Authentication failed: {error_message}") from e

        # Challenges (MFA, new password) are not handled by this tool
        if 'ChallengeName' in response:
            challenge = response['ChallengeName']
            if challenge == 'NEW_PASSWORD_REQUIRED':
                raise NewPasswordRequiredError(
                    "A new password must be set",
                    session=response.get('Session', ''),
                    username=username
                )
            raise AuthenticationError(f"Additional verification required: {challenge}")

        auth_result = response.get('AuthenticationResult', {})
        self._store_session(username, auth_result)
        emit(logger, logging.INFO, "auth.signed_in", username=username)

        return {
            'AccessToken': self._access_token,
            'RefreshToken': self._refresh_token,
            'IdToken': self._id_token,
            'ExpiresIn': auth_result.get('ExpiresIn', 3600)
        }

    def sign_up(self, username: str, password: str, email: Optional[str] = None) -> Dict[str, Any]:
        """
        Register a new user in the user pool.

        Returns:
            Dict with UserSub and UserConfirmed
        """
        attributes = [{'Name': 'email', 'Value': email or username}]
        try:
            response = self.client.sign_up(
                ClientId=self.client_id,
                Username=username,
                Password=password,
                UserAttributes=attributes
            )
        except ClientError as e:
            error_code, error_message = _error_details(e)
            if error_code == 'UsernameExistsException':
                raise AuthenticationError("User already exists") from e
            elif error_code in ('InvalidPasswordException', 'InvalidParameterException'):
                raise AuthenticationError(f"Password does not meet requirements: {error_message}") from e
            raise AuthenticationError(f"Sign-up failed: {error_message}") from e

        emit(logger, logging.INFO, "auth.signed_up", username=username,
             confirmed=response.get('UserConfirmed', False))
        return {
            'UserSub': response.get('UserSub'),
            'UserConfirmed': response.get('UserConfirmed', False)
        }

    def validate_session(self, access_token: Optional[str] = None) -> bool:
        """
        Validate the current session by calling get_user().

        Returns:
            True if session is valid, False otherwise

        Raises:
            AccessRevokedError: If the user has been disabled/revoked
        """
        token = access_token or self._access_token
        if not token:
            return False

        try:
            self.client.get_user(AccessToken=token)
            return True
        except ClientError as e:
            error_code, error_message = _error_details(e)
            if error_code == 'NotAuthorizedException':
                message = error_message.lower()
                if 'disabled' in message or 'revoked' in message:
                    raise AccessRevokedError("Your access has been revoked") from e
                # Otherwise the token has just expired
                return False
            elif error_code == 'UserNotFoundException':
                raise AccessRevokedError("User has been deleted") from e
            return False

    def refresh_tokens(self, refresh_token: Optional[str] = None) -> Dict[str, str]:
        """
        Refresh access tokens using the refresh token.

        Returns:
            Dict containing new AccessToken and IdToken

        Raises:
            SessionExpiredError: If refresh token is invalid or expired
            AccessRevokedError: If user access has been revoked
        """
        token = refresh_token or self._refresh_token
        if not token and self._username:
            token = self._load_refresh_token(self._username)
        if not token:
            raise SessionExpiredError("No refresh token available. Please sign in again.")

        try:
            response = self.client.initiate_auth(
                ClientId=self.client_id,
                AuthFlow='REFRESH_TOKEN_AUTH',
                AuthParameters={
                    'REFRESH_TOKEN': token
                }
            )
        except ClientError as e:
            error_code, error_message = _error_details(e)
            message = error_message.lower()
            if error_code == 'NotAuthorizedException':
                if 'disabled' in message or 'revoked' in message:
                    raise AccessRevokedError("Your access has been revoked") from e
                raise SessionExpiredError("Session expired. Please sign in again.") from e
            raise SessionExpiredError(f"Token refresh failed: {error_message}") from e

        auth_result = response.get('AuthenticationResult', {})
        self._access_token = auth_result.get('AccessToken')
        self._id_token = auth_result.get('IdToken')
        # Refresh token is not returned on refresh, keep the existing one
        self._refresh_token = token
        self.clear_aws_credentials()

        return {
            'AccessToken': self._access_token,
            'IdToken': self._id_token,
            'ExpiresIn': auth_result.get('ExpiresIn', 3600)
        }

    def logout(self):
        """
        Log out the current user and clear stored tokens.
        """
        if self._username:
            self._clear_refresh_token(self._username)
            emit(logger, logging.INFO, "auth.signed_out", username=self._username)

        self._access_token = None
        self._refresh_token = None
        self._id_token = None
        self._username = None
        self.clear_aws_credentials()

    def get_access_token(self) -> Optional[str]:
        """Get the current access token."""
        return self._access_token

    def get_id_token(self) -> Optional[str]:
        """Get the current ID token."""
        return self._id_token

    def get_username(self) -> Optional[str]:
        """Get the current username."""
        return self._username

    def is_authenticated(self) -> bool:
        """Check if user is currently authenticated."""
        return self._access_token is not None

    def try_restore_session(self, username: str) -> bool:
        """
        Try to restore a session using stored refresh token.

        Returns:
            True if session was restored successfully
        """
        self._username = username
        refresh_token = self._load_refresh_token(username)
        if not refresh_token:
            return False

        try:
            self.refresh_tokens(refresh_token)
        except (SessionExpiredError, AccessRevokedError) as e:
            emit(logger, logging.INFO, "auth.restore_failed", username=username, error=str(e))
            self._clear_refresh_token(username)
            return False
        emit(logger, logging.DEBUG, "auth.restored", username=username)
        return True

    def _store_session(self, username: str, auth_result: Dict[str, Any]):
        self._access_token = auth_result.get('AccessToken')
        self._refresh_token = auth_result.get('RefreshToken')
        self._id_token = auth_result.get('IdToken')
        self._username = username
        self.clear_aws_credentials()
        if self._refresh_token:
            self._store_refresh_token(username, self._refresh_token)

    # --- Private methods for keyring storage ---

    def _store_refresh_token(self, username: str, token: str):
        """Store refresh token securely in keyring."""
        try:
            keyring.set_password(self.keyring_service, username, token)
        except KeyringError as e:
            emit(logger, logging.WARNING, "auth.keyring_store_failed",
                 "Failed to store token in keyring", error=str(e))

    def _load_refresh_token(self, username: str) -> Optional[str]:
        """Load refresh token from keyring."""
        try:
            return keyring.get_password(self.keyring_service, username)
        except KeyringError as e:
            emit(logger, logging.WARNING, "auth.keyring_load_failed",
                 "Failed to read token from keyring", error=str(e))
            return None

    def _clear_refresh_token(self, username: str):
        """Clear refresh token from keyring."""
        try:
            keyring.delete_password(self.keyring_service, username)
        except PasswordDeleteError:
            pass  # nothing stored
        except KeyringError as e:
            emit(logger, logging.WARNING, "auth.keyring_clear_failed",
                 "Failed to clear token from keyring", error=str(e))

    # --- AWS Credentials (Cognito Identity Pool) ---

    def get_aws_credentials(self) -> Optional[Dict[str, Any]]:
        """
        Get temporary AWS credentials using the Cognito Identity Pool.

        Uses cached credentials while they are valid for at least five more
        minutes, otherwise fetches new ones.

        Returns:
            Dict with 'AccessKeyId', 'SecretAccessKey', 'SessionToken', 'Expiration',
            or None if not authenticated or Identity Pool not configured.

        Raises:
            AuthenticationError: If the identity pool rejects the ID token
        """
        if not self.identity_pool_id:
            return None
        id_token = self.get_id_token()
        if not id_token:
            return None

        now = datetime.now(timezone.utc)
        if (self._aws_credentials and self._aws_credentials_expiration and
                now < self._aws_credentials_expiration - timedelta(minutes=5)):
            return self._aws_credentials

        login_key = f'cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}'
        try:
            identity_response = self.identity_client.get_id(
                IdentityPoolId=self.identity_pool_id,
                Logins={login_key: id_token}
            )
            credentials_response = self.identity_client.get_credentials_for_identity(
                IdentityId=identity_response['IdentityId'],
                Logins={login_key: id_token}
            )
        except ClientError as e:
            error_code, error_message = _error_details(e)
            raise AuthenticationError(
                f"Failed to get AWS credentials from identity pool ({error_code}): {error_message}"
            ) from e

        credentials = credentials_response['Credentials']
        expiration = credentials.get('Expiration')
        if isinstance(expiration, datetime):
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=timezone.utc)
            self._aws_credentials_expiration = expiration
        else:
            self._aws_credentials_expiration = now + timedelta(hours=1)

        # Identity Pool returns 'SecretKey'; boto3 wants 'SecretAccessKey'
        self._aws_credentials = {
            'AccessKeyId': credentials['AccessKeyId'],
            'SecretAccessKey': credentials['SecretKey'],
            'SessionToken': credentials['SessionToken'],
            'Expiration': self._aws_credentials_expiration
        }
        return self._aws_credentials

    def clear_aws_credentials(self):
        """Clear cached AWS credentials (e.g., on logout)."""
        self._aws_credentials = None
        self._aws_credentials_expiration = None


def build_session(settings, auth: Optional[CognitoAuthService] = None) -> boto3.Session:
    """
    Get a boto3 session for S3 and DynamoDB.

    If the user is signed in through Cognito with an identity pool, uses its
    temporary credentials. Otherwise falls back to the default credential chain
    (environment variables, ~/.aws/credentials, IAM roles, etc.).
    """
    credentials = auth.get_aws_credentials() if auth else None
    if credentials:
        return boto3.Session(
            region_name=settings.aws_region,
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken']
        )
    return boto3.Session(region_name=settings.aws_region)
