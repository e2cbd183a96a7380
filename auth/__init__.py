"""
Authentication module for the catalog admin tool.

Provides AWS Cognito authentication services.
"""

from auth.service import (
    CognitoAuthService,
    AuthenticationError,
    NewPasswordRequiredError,
    SessionExpiredError,
    AccessRevokedError,
    build_session,
)

__all__ = [
    'CognitoAuthService',
    'AuthenticationError',
    'NewPasswordRequiredError',
    'SessionExpiredError',
    'AccessRevokedError',
    'build_session',
]
