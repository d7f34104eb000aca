import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from cfn_lifecycle_agent.errors import (
    AWSConfigurationError,
    AWSCredentialsError,
    AWSError,
    AWSPermissionError,
    AWSValidationError,
    CfnError,
    CfnValidationError,
    CredentialsExpiredError,
    InsufficientCapabilitiesError,
    ResourceAlreadyExistsError,
    ServiceLimitExceededError,
    StackNotFoundError,
    classify_error,
    describe_cfn_error,
    error_entry,
    handle_aws_error,
    retry_aws_operation,
    retry_cfn_operation,
)


def client_error(code: str, message: str = "boom", operation: str = "CreateStack") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class TestDescribeCfnError(unittest.TestCase):
    def test_mapping(self):
        cases = [
            (client_error("ValidationError", "Stack with id x does not exist"), StackNotFoundError),
            (client_error("ValidationError", "Template format error"), CfnValidationError),
            (client_error("AlreadyExistsException"), ResourceAlreadyExistsError),
            (client_error("LimitExceededException"), ServiceLimitExceededError),
            (client_error("InsufficientCapabilitiesException"), InsufficientCapabilitiesError),
            (client_error("ExpiredToken"), CredentialsExpiredError),
            (client_error("ExpiredTokenException"), CredentialsExpiredError),
            (client_error("Throttling"), CfnError),
        ]
        for error, expected in cases:
            with self.subTest(code=error.response["Error"]["Code"]):
                self.assertIs(type(describe_cfn_error(error)), expected)

    def test_messages(self):
        self.assertEqual(
            str(describe_cfn_error(client_error("ValidationError", "bad"))),
            "CloudFormation validation error: bad",
        )
        self.assertIn(
            "CAPABILITY_NAMED_IAM",
            str(describe_cfn_error(client_error("InsufficientCapabilitiesException"))),
        )
        self.assertEqual(
            str(describe_cfn_error(client_error("ExpiredToken"))),
            "AWS credentials expired. Please refresh your session.",
        )

    def test_context_keeps_class(self):
        error = describe_cfn_error(client_error("AlreadyExistsException", "dup"), "Failed to create")
        self.assertIsInstance(error, ResourceAlreadyExistsError)
        self.assertEqual(str(error), "Failed to create: Resource already exists: dup")


class TestClassification(unittest.TestCase):
    def test_plain_exception_by_message(self):
        self.assertIs(classify_error(Exception("Stack not found: abc")), StackNotFoundError)
        self.assertEqual(classify_error(Exception("tools are in read-only mode.")).code, "READ_ONLY_MODE")
        self.assertIs(classify_error(Exception("something else")), CfnError)

    def test_error_entry(self):
        self.assertEqual(
            error_entry(CfnValidationError("CloudFormation validation error: x")),
            {
                "code": "VALIDATION_ERROR",
                "message": "CloudFormation validation error: x",
                "severity": "warning",
            },
        )
        self.assertEqual(error_entry(RuntimeError("kaput"))["code"], "UNKNOWN_ERROR")
        self.assertEqual(error_entry(CredentialsExpiredError("x"))["severity"], "critical")


class TestHandleAwsError(unittest.TestCase):
    def test_codes(self):
        cases = [
            (NoCredentialsError(), AWSCredentialsError, "CREDENTIALS_ERROR"),
            (client_error("AccessDenied"), AWSPermissionError, "ACCESS_DENIED"),
            (client_error("UnauthorizedOperation"), AWSPermissionError, "PERMISSION_ERROR"),
            (client_error("SignatureDoesNotMatch"), AWSCredentialsError, "SIGNATURE_MISMATCH"),
            (client_error("InvalidUserID.NotFound"), AWSCredentialsError, "INVALID_USER"),
            (client_error("ExpiredToken"), AWSCredentialsError, "TOKEN_EXPIRED"),
            (client_error("ValidationError"), AWSValidationError, "VALIDATION_ERROR"),
            (
                EndpointConnectionError(endpoint_url="https://x"),
                AWSConfigurationError,
                "NETWORK_ERROR",
            ),
            (client_error("Bad", "unknown region"), AWSConfigurationError, "REGION_ERROR"),
            (client_error("Throttling"), AWSError, "UNKNOWN_ERROR"),
        ]
        for error, expected_cls, expected_code in cases:
            with self.subTest(error=repr(error)):
                result = handle_aws_error(error, "sts:GetSessionToken")
                self.assertIs(type(result), expected_cls)
                self.assertEqual(result.code, expected_code)


class TestRetry(unittest.TestCase):
    def setUp(self):
        self.sleep = MagicMock()

    def test_retries_transient_then_succeeds(self):
        operation = MagicMock(side_effect=[client_error("Throttling"), client_error("Throttling"), "ok"])
        result = retry_cfn_operation(operation, "describe", max_retries=3, sleep=self.sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(operation.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_gives_up_after_max_retries(self):
        error = client_error("Throttling")
        operation = MagicMock(side_effect=error)
        with self.assertRaises(ClientError) as ctx:
            retry_cfn_operation(operation, "describe", max_retries=2, base_delay=0.5, sleep=self.sleep)
        self.assertIs(ctx.exception, error)
        self.assertEqual(operation.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [0.5, 1.0])

    def test_cfn_no_retry_for_permanent_errors(self):
        for code in ("ValidationError", "AccessDenied", "AlreadyExistsException"):
            with self.subTest(code=code):
                operation = MagicMock(side_effect=client_error(code))
                with self.assertRaises(ClientError):
                    retry_cfn_operation(operation, "create", sleep=self.sleep)
                operation.assert_called_once()
        self.sleep.assert_not_called()

    def test_aws_retry_raises_classified(self):
        operation = MagicMock(side_effect=client_error("AccessDenied"))
        with self.assertRaises(AWSPermissionError) as ctx:
            retry_aws_operation(operation, "sts:GetSessionToken", sleep=self.sleep)
        self.assertIsInstance(ctx.exception.__cause__, ClientError)
        operation.assert_called_once()

    def test_aws_retry_transient(self):
        operation = MagicMock(side_effect=[client_error("Throttling"), {"ok": True}])
        self.assertEqual(retry_aws_operation(operation, "op", sleep=self.sleep), {"ok": True})
        self.sleep.assert_called_once_with(1.0)


if __name__ == "__main__":
    unittest.main()
