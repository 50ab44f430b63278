"""
Shared fixtures for the runner fleet Lambda tests.

The Lambda modules read their configuration and create boto3 clients at import
time, so the environment is populated here before any test module imports
them. Tests then swap the module-level clients for the fakes below.
"""

import itertools
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List
from unittest.mock import Mock

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("SUBNET_IDS", "subnet-aaaa,subnet-bbbb")
os.environ.setdefault("SECURITY_GROUP_IDS", "sg-1234")
os.environ.setdefault("INSTANCE_PROFILE_ARN", "arn:aws:iam::123456789012:instance-profile/runner")
os.environ.setdefault("GITHUB_ORG", "example-org")
os.environ.setdefault("SNS_TOPIC_ARN", "arn:aws:sns:us-east-1:123456789012:fleet")
os.environ.pop("SECRET_ARN", None)

import pytest
from botocore.exceptions import ClientError

import fleet
import github_api
import metrics

NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def capacity_error(operation="RunInstances"):
    return ClientError(
        {"Error": {"Code": "InsufficientInstanceCapacity", "Message": "no spot capacity"}},
        operation,
    )


def make_instance(instance_id, architecture=fleet.ARM64, state="running", launched_ago=timedelta(hours=1),
                  lease=None, purpose=fleet.RUNNER_PURPOSE, now=NOW):
    tags = [
        {"Key": fleet.PURPOSE_TAG, "Value": purpose},
        {"Key": fleet.ARCHITECTURE_TAG, "Value": architecture},
    ]
    if lease is not None:
        tags.append({"Key": fleet.LEASE_TAG, "Value": fleet.format_lease(lease)})
    return {
        "InstanceId": instance_id,
        "State": {"Name": state},
        "LaunchTime": now - launched_ago,
        "Tags": tags,
    }


class FakeEC2:
    """In-memory stand-in for the EC2 calls the fleet Lambdas make."""

    def __init__(self, instances=None, images=None, failing_types=(), describe_delay=0.0):
        self.instances: List[Dict] = list(instances or [])
        self.images = images if images is not None else [
            {"ImageId": "ami-runner", "CreationDate": "2026-10-01T00:00:00.000Z"},
        ]
        self.failing_types = set(failing_types)
        self.describe_delay = describe_delay
        self.run_calls: List[Dict] = []
        self.tag_calls: List[Dict] = []
        self.terminated: List[str] = []
        self._ids = itertools.count(0xabc0000)

    def _matches(self, instance, filters):
        tags = fleet.tags_to_dict(instance.get("Tags"))
        for f in filters:
            name, values = f["Name"], f["Values"]
            if name.startswith("tag:"):
                if tags.get(name[4:]) not in values:
                    return False
            elif name == "instance-state-name":
                if instance["State"]["Name"] not in values:
                    return False
            elif name == "instance-id":
                if instance["InstanceId"] not in values:
                    return False
        return True

    def get_paginator(self, operation):
        assert operation == "describe_instances"
        fake = self

        class _Paginator:
            def paginate(self, Filters):
                matched = [dict(i) for i in fake.instances if fake._matches(i, Filters)]
                if fake.describe_delay:
                    time.sleep(fake.describe_delay)
                return [{"Reservations": [{"Instances": matched}]}]

        return _Paginator()

    def describe_images(self, Owners, Filters):
        return {"Images": list(self.images)}

    def run_instances(self, **params):
        self.run_calls.append(params)
        if params["InstanceType"] in self.failing_types:
            raise capacity_error()
        instance = {
            "InstanceId": f"i-{next(self._ids):017x}",
            "InstanceType": params["InstanceType"],
            "State": {"Name": "pending"},
            "LaunchTime": datetime.now(timezone.utc),
            "Tags": list(params["TagSpecifications"][0]["Tags"]),
        }
        self.instances.append(instance)
        return {"Instances": [instance]}

    def create_tags(self, Resources, Tags):
        self.tag_calls.append({"Resources": Resources, "Tags": Tags})
        for instance in self.instances:
            if instance["InstanceId"] in Resources:
                current = fleet.tags_to_dict(instance["Tags"])
                current.update({t["Key"]: t["Value"] for t in Tags})
                instance["Tags"] = [{"Key": k, "Value": v} for k, v in current.items()]

    def terminate_instances(self, InstanceIds):
        self.terminated.extend(InstanceIds)
        for instance in self.instances:
            if instance["InstanceId"] in InstanceIds:
                instance["State"] = {"Name": "shutting-down"}
        return {"TerminatingInstances": [{"InstanceId": i} for i in InstanceIds]}


class FakeGitHub:
    """Runner registry backed by a list; mirrors GitHub's delete semantics."""

    def __init__(self, runners=None, busy_on_delete=()):
        self.runners = list(runners or [])
        self.busy_on_delete = set(busy_on_delete)
        self.deleted: List[int] = []
        self.lock = threading.Lock()

    def list_runners(self):
        return [dict(r) for r in self.runners]

    def delete_runner(self, runner_id):
        if runner_id in self.busy_on_delete:
            raise github_api.GitHubAPIError(422, "Runner is currently running a job")
        before = len(self.runners)
        self.runners = [r for r in self.runners if r["id"] != runner_id]
        if len(self.runners) == before:
            return False
        self.deleted.append(runner_id)
        return True


def runner(runner_id, instance_id, busy=False, prefix="ephemeral-"):
    return {"id": runner_id, "name": f"{prefix}{instance_id}", "busy": busy, "status": "online"}


@pytest.fixture(autouse=True)
def quiet_cloudwatch(monkeypatch):
    """Custom metrics go to a Mock so no test ever reaches CloudWatch."""
    monkeypatch.setattr(metrics, "cloudwatch", Mock())


@pytest.fixture(autouse=True)
def no_github_secret(monkeypatch):
    monkeypatch.setattr(github_api, "_github_app_config", {})


@pytest.fixture
def now() -> datetime:
    return NOW
