"""Per-request runtime context carrying AWS credentials, AWS config and user identity.

Credentials only ever come from the context handed to a request. Nothing here falls
back to environment variables or the default boto3 credential chain.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import boto3

from .errors import AWSCredentialsError, retry_aws_operation

logger = logging.getLogger(__name__)

AWS_CREDENTIALS_KEY = "aws-credentials"
AWS_CONFIG_KEY = "aws-config"
USER_KEY = "user"

ACCESS_KEY_HEADER = "x-aws-access-key-id"
SECRET_KEY_HEADER = "x-aws-secret-access-key"
SESSION_TOKEN_HEADER = "x-aws-session-token"
REGION_HEADER = "x-aws-region"
USER_ID_HEADER = "x-user-id"

_ACCESS_KEY_PATTERN = re.compile(r"^(AKIA|ASIA)[A-Z0-9]{16}$")
SECRET_KEY_LENGTH = 40


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)

    @property
    def is_temporary(self) -> bool:
        return self.access_key_id.startswith("ASIA")

    def boto_kwargs(self) -> dict[str, str]:
        kwargs = {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
        }
        if self.session_token:
            kwargs["aws_session_token"] = self.session_token
        return kwargs

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AwsCredentials":
        return cls(
            access_key_id=data.get("accessKeyId") or data.get("access_key_id") or "",
            secret_access_key=data.get("secretAccessKey") or data.get("secret_access_key") or "",
            session_token=data.get("sessionToken") or data.get("session_token"),
        )


@dataclass(frozen=True)
class AwsConfig:
    region: str | None = None
    max_retries: int | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class UserContext:
    user_id: str | None = None
    email: str | None = None
    authenticated: bool = False


class RuntimeContext:
    """Key/value carrier passed into tool executions for one request."""

    def __init__(self, values: Mapping[str, Any] | None = None):
        self._values: dict[str, Any] = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def keys(self):
        return self._values.keys()

    @property
    def aws_config(self) -> AwsConfig:
        return self.get(AWS_CONFIG_KEY) or AwsConfig()

    @property
    def user(self) -> UserContext:
        return self.get(USER_KEY) or UserContext()

    def region(self, default: str) -> str:
        return self.aws_config.region or default

    def __repr__(self) -> str:
        return f"RuntimeContext(keys={sorted(self._values)})"


def create_runtime_context(
    credentials: AwsCredentials | None = None,
    aws_config: AwsConfig | None = None,
    user: UserContext | None = None,
) -> RuntimeContext:
    ctx = RuntimeContext()
    if credentials is not None:
        ctx.set(AWS_CREDENTIALS_KEY, credentials)
    if aws_config is not None:
        ctx.set(AWS_CONFIG_KEY, aws_config)
    if user is not None:
        ctx.set(USER_KEY, user)
    return ctx


def credentials_from_context(ctx: RuntimeContext | None) -> AwsCredentials:
    """Return the request's credentials or raise ``AWSCredentialsError``."""
    value = ctx.get(AWS_CREDENTIALS_KEY) if ctx is not None else None
    if value is None:
        raise AWSCredentialsError("AWS credentials not found in runtime context")

    if isinstance(value, Mapping):
        value = AwsCredentials.from_dict(value)
    if (
        not isinstance(value, AwsCredentials)
        or not value.access_key_id
        or not value.secret_access_key
    ):
        raise AWSCredentialsError("Invalid AWS credentials in runtime context")
    return value


def validate_aws_credentials(credentials: AwsCredentials | None) -> None:
    """Check the shape of an access key pair. Raises ``AWSCredentialsError``."""
    if credentials is None:
        raise AWSCredentialsError("AWS credentials are required but not provided")
    if not credentials.access_key_id:
        raise AWSCredentialsError("AWS Access Key ID is required but missing")
    if not credentials.secret_access_key:
        raise AWSCredentialsError("AWS Secret Access Key is required but missing")

    if not _ACCESS_KEY_PATTERN.match(credentials.access_key_id):
        raise AWSCredentialsError(
            "Invalid AWS Access Key ID format. Expected AKIA... or ASIA... followed by "
            f"16 alphanumeric characters. Got: {credentials.access_key_id[:8]}..."
        )
    if len(credentials.secret_access_key) != SECRET_KEY_LENGTH:
        raise AWSCredentialsError(
            f"Invalid AWS Secret Access Key length. Expected {SECRET_KEY_LENGTH} characters, "
            f"got {len(credentials.secret_access_key)}"
        )
    if credentials.session_token is not None and not credentials.session_token:
        raise AWSCredentialsError("AWS Session Token provided but is empty")

    if credentials.is_temporary and not credentials.session_token:
        raise AWSCredentialsError(
            "Temporary credentials (ASIA...) require a session token, but none was provided"
        )
    if not credentials.is_temporary and credentials.session_token:
        logger.warning(
            "Session token provided with long-term credentials (%s...). "
            "This is unusual but not necessarily an error.",
            credentials.access_key_id[:8],
        )


def _later(later: Any, earlier: Any) -> Any:
    return later if later is not None else earlier


def merge_aws_config(earlier: AwsConfig, later: AwsConfig) -> AwsConfig:
    return AwsConfig(
        region=_later(later.region, earlier.region),
        max_retries=_later(later.max_retries, earlier.max_retries),
        timeout_ms=_later(later.timeout_ms, earlier.timeout_ms),
    )


def merge_user_context(earlier: UserContext, later: UserContext) -> UserContext:
    return UserContext(
        user_id=_later(later.user_id, earlier.user_id),
        email=_later(later.email, earlier.email),
        authenticated=later.authenticated or earlier.authenticated,
    )


def merge_runtime_contexts(*contexts: RuntimeContext | None) -> RuntimeContext:
    """Merge contexts left to right. Later arguments win.

    * credentials: replaced as a whole pair, never mixed key-by-key
    * aws-config and user: merged per field, a ``None`` field never overwrites
    * any other key: later value replaces earlier
    """
    merged = RuntimeContext()
    for ctx in contexts:
        if ctx is None:
            continue
        for key in ctx.keys():
            value = ctx.get(key)
            if value is None:
                continue
            if key == AWS_CONFIG_KEY and AWS_CONFIG_KEY in merged:
                value = merge_aws_config(merged.get(AWS_CONFIG_KEY), value)
            elif key == USER_KEY and USER_KEY in merged:
                value = merge_user_context(merged.get(USER_KEY), value)
            merged.set(key, value)
    return merged


def context_from_headers(headers: Mapping[str, str]) -> RuntimeContext:
    """Build a runtime context from the ``X-AWS-*`` headers set by the gateway."""
    lowered = {k.lower(): v for k, v in headers.items()}
    ctx = RuntimeContext()

    access_key = lowered.get(ACCESS_KEY_HEADER)
    secret_key = lowered.get(SECRET_KEY_HEADER)
    if access_key and secret_key:
        ctx.set(
            AWS_CREDENTIALS_KEY,
            AwsCredentials(
                access_key_id=access_key,
                secret_access_key=secret_key,
                session_token=lowered.get(SESSION_TOKEN_HEADER) or None,
            ),
        )

    region = lowered.get(REGION_HEADER)
    if region:
        ctx.set(AWS_CONFIG_KEY, AwsConfig(region=region))

    user_id = lowered.get(USER_ID_HEADER)
    if user_id:
        ctx.set(USER_KEY, UserContext(user_id=user_id, authenticated=True))
    return ctx


def credential_headers(credentials: AwsCredentials, region: str | None = None) -> dict[str, str]:
    """Inverse of ``context_from_headers`` for forwarding a request."""
    headers = {
        "X-AWS-Access-Key-ID": credentials.access_key_id,
        "X-AWS-Secret-Access-Key": credentials.secret_access_key,
    }
    if credentials.session_token:
        headers["X-AWS-Session-Token"] = credentials.session_token
    if region:
        headers["X-AWS-Region"] = region
    return headers


def get_temporary_credentials(
    credentials: AwsCredentials,
    region: str,
    duration_seconds: int = 3600,
    max_retries: int = 3,
) -> AwsCredentials:
    """Exchange a long-term key pair for STS session credentials."""
    if credentials.is_temporary and credentials.session_token:
        return credentials

    sts = boto3.client("sts", region_name=region, **credentials.boto_kwargs())
    response = retry_aws_operation(
        lambda: sts.get_session_token(DurationSeconds=duration_seconds),
        "sts:GetSessionToken",
        max_retries=max_retries,
    )
    issued = response["Credentials"]
    logger.info("Issued temporary credentials expiring at %s", issued.get("Expiration"))
    return AwsCredentials(
        access_key_id=issued["AccessKeyId"],
        secret_access_key=issued["SecretAccessKey"],
        session_token=issued["SessionToken"],
    )
