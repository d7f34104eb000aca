import json
import sys
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import yaml

# Mock external dependencies before importing application code
for mod in (
    "bedrock_agentcore",
    "bedrock_agentcore.memory",
    "bedrock_agentcore.memory.integrations",
    "bedrock_agentcore.memory.integrations.strands",
    "bedrock_agentcore.memory.integrations.strands.config",
    "bedrock_agentcore.memory.integrations.strands.session_manager",
):
    if mod not in sys.modules:
        sys.modules[mod] = MagicMock()

from botocore.exceptions import ClientError  # noqa: E402

from cfn_lifecycle_agent.errors import (  # noqa: E402
    ReadOnlyModeError,
    ResourceAlreadyExistsError,
    StackNotFoundError,
)
from cfn_lifecycle_agent.tools.cfn_tools import (  # noqa: E402
    CloudFormationTools,
    extract_schema_properties,
    format_template,
    parse_template,
)

STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/bucket/abc"

TEMPLATE = {
    "AWSTemplateFormatVersion": "2010-09-09",
    "Description": "Template for AWS::S3::Bucket",
    "Resources": {
        "Resource": {"Type": "AWS::S3::Bucket", "Properties": {"BucketName": "b"}}
    },
}


def client_error(code: str, message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "Op")


def stack(name="bucket", status="CREATE_COMPLETE", tags=None):
    return {
        "StackId": STACK_ID,
        "StackName": name,
        "StackStatus": status,
        "CreationTime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
        "Outputs": [{"OutputKey": "ResourceId", "OutputValue": "b"}],
    }


class TestCreateResource(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.create_stack.return_value = {"StackId": STACK_ID}
        self.tools = CloudFormationTools(self.client, timeout_in_minutes=5)

    def test_create_sends_template_and_tags(self):
        result = self.tools.create_resource(
            "AWS::SQS::Queue", {"QueueName": "q"}, stack_name="queue", tags={"Env": "dev"}
        )

        self.assertEqual(
            result,
            {
                "stackId": STACK_ID,
                "stackName": "queue",
                "status": "CREATE_IN_PROGRESS",
                "resourceType": "AWS::SQS::Queue",
            },
        )
        params = self.client.create_stack.call_args[1]
        self.assertEqual(params["StackName"], "queue")
        self.assertEqual(params["TimeoutInMinutes"], 5)
        self.assertNotIn("Capabilities", params)
        body = json.loads(params["TemplateBody"])
        self.assertEqual(body["Resources"]["Resource"]["Properties"], {"QueueName": "q"})
        tags = {t["Key"]: t["Value"] for t in params["Tags"]}
        self.assertEqual(tags["ManagedBy"], "Mastra-CloudFormation-Tools")
        self.assertEqual(tags["ResourceType"], "AWS::SQS::Queue")
        self.assertEqual(tags["Env"], "dev")
        self.assertIn("CreatedAt", tags)

    def test_caller_cannot_override_managed_by(self):
        self.tools.create_resource("AWS::SQS::Queue", {}, tags={"ManagedBy": "someone-else"})
        tags = {t["Key"]: t["Value"] for t in self.client.create_stack.call_args[1]["Tags"]}
        self.assertEqual(tags["ManagedBy"], "Mastra-CloudFormation-Tools")

    def test_generated_stack_name(self):
        result = self.tools.create_resource("AWS::SQS::Queue", {})
        self.assertTrue(result["stackName"].startswith("aws--sqs--queue-"))

    def test_iam_capabilities(self):
        self.tools.create_resource("AWS::IAM::Role", {"RoleName": "r"})
        self.assertEqual(
            self.client.create_stack.call_args[1]["Capabilities"],
            ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
        )

    def test_already_exists(self):
        self.client.create_stack.side_effect = client_error("AlreadyExistsException", "queue")
        with self.assertRaises(ResourceAlreadyExistsError) as ctx:
            self.tools.create_resource("AWS::SQS::Queue", {}, stack_name="queue")
        self.assertIn("Failed to create resource AWS::SQS::Queue", str(ctx.exception))


class TestReadOnly(unittest.TestCase):
    def test_mutations_refused_without_calls(self):
        client = MagicMock()
        tools = CloudFormationTools(client, readonly=True)

        with self.assertRaises(ReadOnlyModeError) as ctx:
            tools.create_resource("AWS::S3::Bucket", {})
        self.assertEqual(
            str(ctx.exception),
            "CloudFormation tools are in read-only mode. Resource creation is disabled.",
        )
        with self.assertRaises(ReadOnlyModeError):
            tools.update_resource(STACK_ID, {"A": 1})
        with self.assertRaises(ReadOnlyModeError):
            tools.delete_resource(STACK_ID)

        self.assertEqual(client.method_calls, [])

    def test_reads_still_work(self):
        client = MagicMock()
        client.describe_stacks.return_value = {"Stacks": [stack()]}
        tools = CloudFormationTools(client, readonly=True)
        self.assertTrue(tools.get_request_status(STACK_ID)["isSuccessful"])


class TestReadOperations(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.describe_stacks.return_value = {
            "Stacks": [stack(tags={"ManagedBy": "Mastra-CloudFormation-Tools"})]
        }
        self.tools = CloudFormationTools(self.client)

    def test_get_resource(self):
        self.client.describe_stack_resource.return_value = {
            "StackResourceDetail": {
                "LogicalResourceId": "Resource",
                "PhysicalResourceId": "b",
                "ResourceType": "AWS::S3::Bucket",
                "ResourceStatus": "CREATE_COMPLETE",
                "LastUpdatedTimestamp": datetime(2025, 1, 2, tzinfo=timezone.utc),
            }
        }
        result = self.tools.get_resource(STACK_ID)

        self.client.describe_stack_resource.assert_called_once_with(
            StackName=STACK_ID, LogicalResourceId="Resource"
        )
        details = result["resourceDetails"]
        self.assertEqual(details["physicalResourceId"], "b")
        self.assertEqual(details["timestamp"], "2025-01-02T00:00:00+00:00")
        self.assertEqual(details["metadata"]["stackTags"]["ManagedBy"], "Mastra-CloudFormation-Tools")
        self.assertEqual(result["outputs"][0]["outputValue"], "b")

    def test_missing_stack(self):
        self.client.describe_stacks.side_effect = client_error(
            "ValidationError", f"Stack with id {STACK_ID} does not exist"
        )
        with self.assertRaises(StackNotFoundError):
            self.tools.get_resource(STACK_ID)

    def test_empty_describe_is_not_found(self):
        self.client.describe_stacks.return_value = {"Stacks": []}
        with self.assertRaises(StackNotFoundError):
            self.tools.get_request_status(STACK_ID)

    def test_request_status(self):
        for status, complete, successful in (
            ("CREATE_IN_PROGRESS", False, False),
            ("CREATE_COMPLETE", True, True),
            ("ROLLBACK_COMPLETE", True, False),
            ("UPDATE_ROLLBACK_COMPLETE", True, False),
        ):
            with self.subTest(status=status):
                self.client.describe_stacks.return_value = {"Stacks": [stack(status=status)]}
                result = self.tools.get_request_status(STACK_ID)
                self.assertEqual(result["isComplete"], complete)
                self.assertEqual(result["isSuccessful"], successful)

    def test_create_template_yaml(self):
        self.client.get_template.return_value = {"TemplateBody": TEMPLATE}
        result = self.tools.create_template(STACK_ID, "YAML")

        self.client.get_template.assert_called_once_with(
            StackName=STACK_ID, TemplateStage="Original"
        )
        self.assertEqual(result["templateFormat"], "YAML")
        self.assertEqual(yaml.safe_load(result["template"]), TEMPLATE)
        self.assertEqual(result["templateSize"], len(result["template"].encode("utf-8")))

    def test_create_template_stored_yaml_reports_yaml(self):
        body = "Resources:\n  Resource:\n    Type: AWS::S3::Bucket\n    Properties:\n      BucketName: !Ref Name\n"
        self.client.get_template.return_value = {"TemplateBody": body}

        result = self.tools.create_template(STACK_ID, "JSON")

        self.assertEqual(result["template"], body)
        self.assertEqual(result["templateFormat"], "YAML")

    def test_create_template_json(self):
        self.client.get_template.return_value = {"TemplateBody": TEMPLATE}
        result = self.tools.create_template(STACK_ID)
        self.assertEqual(result["templateFormat"], "JSON")
        self.assertEqual(json.loads(result["template"]), TEMPLATE)


class TestUpdateAndDelete(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.describe_stacks.return_value = {
            "Stacks": [
                stack(
                    tags={
                        "ManagedBy": "Mastra-CloudFormation-Tools",
                        "ResourceType": "AWS::S3::Bucket",
                        "CreatedAt": "2025-01-01T00:00:00+00:00",
                    }
                )
            ]
        }
        self.client.get_template.return_value = {"TemplateBody": json.dumps(TEMPLATE)}
        self.client.update_stack.return_value = {"StackId": STACK_ID}
        self.tools = CloudFormationTools(self.client)

    def test_update_merges_properties(self):
        result = self.tools.update_resource(STACK_ID, {"VersioningConfiguration": {"Status": "Enabled"}})

        self.assertEqual(result["status"], "UPDATE_IN_PROGRESS")
        params = self.client.update_stack.call_args[1]
        body = json.loads(params["TemplateBody"])
        self.assertEqual(
            body["Resources"]["Resource"]["Properties"],
            {"BucketName": "b", "VersioningConfiguration": {"Status": "Enabled"}},
        )
        self.assertIn(" - Updated at ", body["Description"])
        tags = {t["Key"]: t["Value"] for t in params["Tags"]}
        self.assertEqual(tags["CreatedAt"], "2025-01-01T00:00:00+00:00")
        self.assertIn("LastUpdated", tags)

    def test_update_yaml_template(self):
        self.client.get_template.return_value = {"TemplateBody": yaml.safe_dump(TEMPLATE)}
        self.tools.update_resource(STACK_ID, {"BucketName": "c"})
        body = json.loads(self.client.update_stack.call_args[1]["TemplateBody"])
        self.assertEqual(body["Resources"]["Resource"]["Properties"]["BucketName"], "c")

    def test_delete_with_retained_resources(self):
        result = self.tools.delete_resource(STACK_ID, ["Resource"])
        self.client.delete_stack.assert_called_once_with(
            StackName=STACK_ID, RetainResources=["Resource"]
        )
        self.assertEqual(result["status"], "DELETE_IN_PROGRESS")
        self.assertEqual(result["stackName"], "bucket")

    def test_delete_without_retained_resources(self):
        self.tools.delete_resource(STACK_ID)
        self.client.delete_stack.assert_called_once_with(StackName=STACK_ID)


class TestListResources(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.list_stacks.return_value = {
            "StackSummaries": [
                {"StackId": "id-1", "StackName": "managed-bucket", "StackStatus": "CREATE_COMPLETE"},
                {"StackId": "id-2", "StackName": "foreign", "StackStatus": "CREATE_COMPLETE"},
                {"StackId": "id-3", "StackName": "broken", "StackStatus": "CREATE_COMPLETE"},
                {"StackId": "id-4", "StackName": "managed-queue", "StackStatus": "CREATE_COMPLETE"},
            ]
        }
        managed = {"ManagedBy": "Mastra-CloudFormation-Tools"}

        def describe(StackName):
            if StackName == "broken":
                raise client_error("Throttling")
            if StackName == "foreign":
                return {"Stacks": [stack(name="foreign", tags={"ManagedBy": "terraform"})]}
            if StackName == "managed-bucket":
                return {"Stacks": [stack(name=StackName, tags={**managed, "ResourceType": "AWS::S3::Bucket"})]}
            return {"Stacks": [stack(name=StackName, tags={**managed, "ResourceType": "AWS::SQS::Queue"})]}

        self.client.describe_stacks.side_effect = describe
        self.tools = CloudFormationTools(self.client)

    def test_only_managed_stacks(self):
        result = self.tools.list_resources()
        self.assertEqual(
            [r["stackName"] for r in result["resources"]], ["managed-bucket", "managed-queue"]
        )
        self.assertEqual(result["totalCount"], 2)
        self.assertFalse(result["hasMore"])

    def test_type_filter(self):
        result = self.tools.list_resources(resource_type_filter="S3")
        self.assertEqual([r["resourceType"] for r in result["resources"]], ["AWS::S3::Bucket"])

    def test_max_results(self):
        result = self.tools.list_resources(max_results=1)
        self.assertEqual(len(result["resources"]), 1)
        self.assertEqual(result["totalCount"], 2)
        self.assertTrue(result["hasMore"])

    def test_status_filter_forwarded(self):
        self.tools.list_resources(stack_status_filter=["CREATE_COMPLETE"])
        self.client.list_stacks.assert_called_once_with(StackStatusFilter=["CREATE_COMPLETE"])


class TestSchemaInformation(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.describe_type.return_value = {
            "Schema": json.dumps(
                {
                    "typeName": "AWS::S3::Bucket",
                    "properties": {
                        "BucketName": {"type": "string", "description": "Name"},
                        "Tags": {"type": "array"},
                    },
                    "required": ["BucketName"],
                }
            ),
            "DefaultVersionId": "00000001",
        }
        self.tools = CloudFormationTools(self.client)

    def test_schema_is_cached(self):
        first = self.tools.get_resource_schema_information("AWS::S3::Bucket")
        second = self.tools.get_resource_schema_information("AWS::S3::Bucket")

        self.assertIs(first, second)
        self.client.describe_type.assert_called_once_with(Type="RESOURCE", TypeName="AWS::S3::Bucket")
        self.assertEqual(first["schemaVersion"], "00000001")
        self.assertTrue(first["documentation"].endswith("AWS__S3__Bucket.html"))
        self.assertEqual(
            first["properties"][0],
            {"name": "BucketName", "type": "string", "required": True, "description": "Name"},
        )

    def test_version_is_part_of_cache_key(self):
        self.tools.get_resource_schema_information("AWS::S3::Bucket")
        self.tools.get_resource_schema_information("AWS::S3::Bucket", "00000002")
        self.assertEqual(self.client.describe_type.call_count, 2)
        self.assertEqual(self.client.describe_type.call_args[1]["VersionId"], "00000002")


class TestTemplateHelpers(unittest.TestCase):
    def test_nested_schema_properties(self):
        schema = {
            "properties": {
                "Properties": {
                    "properties": {"QueueName": {"type": "string"}},
                    "required": ["QueueName"],
                }
            }
        }
        self.assertEqual(
            extract_schema_properties(schema),
            [{"name": "QueueName", "type": "string", "required": True, "description": None}],
        )

    def test_parse_template_formats(self):
        self.assertEqual(parse_template(json.dumps(TEMPLATE)), TEMPLATE)
        self.assertEqual(parse_template(yaml.safe_dump(TEMPLATE)), TEMPLATE)
        self.assertEqual(parse_template(TEMPLATE), TEMPLATE)

    def test_format_leaves_short_form_yaml_alone(self):
        body = "Resources:\n  Resource:\n    Type: AWS::S3::Bucket\n    Properties:\n      BucketName: !Ref Name\n"
        self.assertEqual(format_template(body, "JSON"), body)

    def test_format_json(self):
        self.assertEqual(json.loads(format_template(TEMPLATE, "JSON")), TEMPLATE)


if __name__ == "__main__":
    unittest.main()
