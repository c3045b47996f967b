"""AWS credential brokering and organization discovery."""

from sso_deployer.aws_credentials.sts_provider import (
    CredentialBroker,
    STSCredentialError,
    TemporaryCredentials,
    cross_account_role_arn,
)

__all__ = [
    "CredentialBroker",
    "STSCredentialError",
    "TemporaryCredentials",
    "cross_account_role_arn",
]
