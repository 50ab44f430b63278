"""Scale-Up - Launches leased EC2 spot runners for queued jobs."""
import logging
import os
import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

import fleet
from metrics import put_metric

SUBNET_IDS = os.environ["SUBNET_IDS"].split(",")
SECURITY_GROUP_IDS = os.environ["SECURITY_GROUP_IDS"].split(",")
INSTANCE_PROFILE_ARN = os.environ["INSTANCE_PROFILE_ARN"]
AMI_OWNER = os.environ.get("AMI_OWNER", "self")
INSTANCE_TYPES = {
    fleet.ARM64: os.environ.get("INSTANCE_TYPES_ARM64", "c7gd.2xlarge,c7g.2xlarge,m7g.2xlarge").split(","),
    fleet.X86_64: os.environ.get("INSTANCE_TYPES_X86_64", "c7id.2xlarge,c7i.2xlarge,m7i.2xlarge").split(","),
}
RUNNERS_MAX = int(os.environ.get("RUNNERS_MAX", "10"))
RUNNERS_MAX_PER_ARCH = {
    fleet.ARM64: int(os.environ.get("RUNNERS_MAX_ARM64", RUNNERS_MAX)),
    fleet.X86_64: int(os.environ.get("RUNNERS_MAX_X86_64", RUNNERS_MAX)),
}
RUNNER_LABELS = [label for label in os.environ.get("RUNNER_LABELS", "self-hosted").split(",") if label]
RUNNER_NAME_PREFIX = os.environ.get("RUNNER_NAME_PREFIX", "ephemeral-")
LEASE_MINUTES = int(os.environ.get("LEASE_MINUTES", "20"))
KEY_NAME = os.environ.get("KEY_NAME", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ec2 = boto3.client("ec2")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)

# Count-then-launch must never interleave. The function is also deployed with
# reserved concurrency 1 so separate execution environments cannot race either.
_launch_lock = threading.Lock()


class LaunchError(Exception):
    """No runner could be launched for a job that needed one."""


class NoImageError(LaunchError):
    """There is no runner image for the requested architecture."""


def count_active_runners(architecture: str) -> int:
    """Count currently running or pending runner instances of one architecture."""
    paginator = ec2.get_paginator("describe_instances")
    count = 0

    for page in paginator.paginate(Filters=[
        {"Name": f"tag:{fleet.PURPOSE_TAG}", "Values": [fleet.RUNNER_PURPOSE]},
        {"Name": f"tag:{fleet.ARCHITECTURE_TAG}", "Values": [architecture]},
        {"Name": "instance-state-name", "Values": ["pending", "running"]},
    ]):
        for reservation in page.get("Reservations", []):
            count += len(reservation.get("Instances", []))

    return count


def find_runner_image(architecture: str) -> str:
    """Newest available runner AMI built for this architecture."""
    response = ec2.describe_images(
        Owners=[AMI_OWNER],
        Filters=[
            {"Name": f"tag:{fleet.PURPOSE_TAG}", "Values": [fleet.RUNNER_PURPOSE]},
            {"Name": "architecture", "Values": [architecture]},
            {"Name": "state", "Values": ["available"]},
        ],
    )
    images = sorted(response.get("Images", []), key=lambda image: image["CreationDate"], reverse=True)
    if not images:
        raise NoImageError(f"No available {architecture} runner image owned by {AMI_OWNER}")
    return images[0]["ImageId"]


def launch_runner(architecture: str, labels: List[str], now: Optional[datetime] = None) -> Dict[str, str]:
    """Launch EC2 runner with fallback to multiple instance types."""
    now = now or datetime.now(timezone.utc)
    image_id = find_runner_image(architecture)
    lease_expires_at = now + timedelta(minutes=LEASE_MINUTES)
    tags = fleet.lease_tags(architecture, lease_expires_at) + [
        {"Key": "RunnerLabels", "Value": ",".join(sorted(set(RUNNER_LABELS + list(labels))))},
    ]

    # Spot capacity for a single shape runs dry regularly; try each in order
    last_error = None
    for instance_type in INSTANCE_TYPES[architecture]:
        try:
            params = {
                "ImageId": image_id,
                "MinCount": 1,
                "MaxCount": 1,
                "SubnetId": random.choice(SUBNET_IDS),
                "SecurityGroupIds": SECURITY_GROUP_IDS,
                "IamInstanceProfile": {"Arn": INSTANCE_PROFILE_ARN},
                "InstanceType": instance_type,
                "InstanceMarketOptions": {
                    "MarketType": "spot",
                    "SpotOptions": {
                        "SpotInstanceType": "one-time",
                        "InstanceInterruptionBehavior": "terminate",
                    },
                },
                "TagSpecifications": [
                    {"ResourceType": "instance", "Tags": tags},
                    {"ResourceType": "volume", "Tags": tags[:2]},
                ],
                "MetadataOptions": {
                    "HttpTokens": "required",
                    "HttpPutResponseHopLimit": 1,
                    "HttpEndpoint": "enabled",
                    "InstanceMetadataTags": "enabled",
                },
            }
            if KEY_NAME:
                params["KeyName"] = KEY_NAME

            response = ec2.run_instances(**params)
            instance_id = response["Instances"][0]["InstanceId"]
            logger.info(f"Launched {instance_id} (type: {instance_type}, arch: {architecture}), "
                        f"lease until {fleet.format_lease(lease_expires_at)}")
            break

        except ClientError as e:
            last_error = e
            logger.warning(f"Failed to launch {instance_type}: {e}, trying next type...")
    else:
        put_metric("RunnerLaunchErrors", 1, dimensions={"Architecture": architecture})
        raise LaunchError(
            f"All instance types failed for {architecture}: {', '.join(INSTANCE_TYPES[architecture])}"
        ) from last_error

    name = fleet.runner_name(RUNNER_NAME_PREFIX, instance_id)
    try:
        ec2.create_tags(Resources=[instance_id], Tags=[{"Key": "Name", "Value": name}])
    except ClientError as e:
        logger.warning(f"Failed to tag {instance_id} with Name={name}: {e}")

    put_metric("RunnerLaunched", 1, dimensions={"InstanceType": instance_type, "Architecture": architecture})
    return {"instance_id": instance_id, "instance_type": instance_type, "architecture": architecture}


def handle_job_queued(payload: dict, now: Optional[datetime] = None) -> Dict[str, str]:
    """Launch a runner for a queued workflow_job payload if there is room for one."""
    action = payload.get("action", "")
    job = payload.get("workflow_job") or {}
    labels = list(job.get("labels") or [])
    job_id = job.get("id", "unknown")

    if action != "queued":
        logger.info(f"Job {job_id} ignored: action={action}")
        return {"message": "Ignored", "reason": "ignored action"}

    if not fleet.labels_match(labels, RUNNER_LABELS):
        logger.info(f"Job {job_id} ignored: labels {labels} do not match {RUNNER_LABELS}")
        return {"message": "Ignored", "reason": "labels not matched"}

    architecture = fleet.infer_architecture(labels)

    with _launch_lock:
        current_count = count_active_runners(architecture)
        ceiling = RUNNERS_MAX_PER_ARCH[architecture]
        put_metric("ActiveRunners", current_count, dimensions={"Architecture": architecture})

        if current_count >= ceiling:
            logger.warning(f"Runner limit reached for {architecture} ({current_count}/{ceiling}), "
                           f"skipping job {job_id}")
            put_metric("RunnersSkipped", 1, dimensions={"Reason": "MaxLimit"})
            return {"message": "Ignored", "reason": "capacity reached", "architecture": architecture}

        launched = launch_runner(architecture, labels, now)

    logger.info(f"Launched {launched['instance_id']} for job {job_id}")
    return {"message": "Launched", **launched}
