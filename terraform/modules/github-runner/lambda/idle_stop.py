"""Idle-Stop Lambda - Stops development metal instances that have gone quiet.

An instance is stopped once every one of the last IDLE_HOURS hourly windows
peaked below CPU_THRESHOLD. Hourly maximum is used rather than average so a
short burst of work keeps the box up, and the window never reaches back past
the instance's own launch time so metrics from before a restart do not count.
"""
import json
import logging
import os
from datetime import datetime, timezone, timedelta
from typing import List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from metrics import hourly_cpu_peaks

AUTO_STOP_TAG_KEY = os.environ.get("AUTO_STOP_TAG_KEY", "AutoStop")
AUTO_STOP_TAG_VALUE = os.environ.get("AUTO_STOP_TAG_VALUE", "true")
IDLE_HOURS = int(os.environ.get("IDLE_HOURS", "3"))
CPU_THRESHOLD = float(os.environ.get("CPU_THRESHOLD", "5.0"))
SNS_TOPIC_ARN = os.environ.get("SNS_TOPIC_ARN", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

TOO_NEW = "too_new"
ACTIVE = "active"
INSUFFICIENT_DATA = "insufficient_data"
IDLE = "idle"

ec2 = boto3.client("ec2")
sns = boto3.client("sns")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


def evaluate_idle(launch_time: datetime, now: datetime, peaks: List[float],
                  hours: int, threshold: float) -> Tuple[str, Optional[float]]:
    """Classify an instance from its hourly CPU peaks. Returns (verdict, highest peak)."""
    if now - launch_time < timedelta(hours=hours):
        return TOO_NEW, None
    if len(peaks) < hours:
        return INSUFFICIENT_DATA, max(peaks, default=None)
    highest = max(peaks[-hours:])
    if highest >= threshold:
        return ACTIVE, highest
    return IDLE, highest


def notify(subject, message):
    """Send SNS notification if topic is configured."""
    if not SNS_TOPIC_ARN:
        logger.info(f"No SNS topic configured. Would send: {subject}")
        return
    try:
        sns.publish(TopicArn=SNS_TOPIC_ARN, Subject=subject[:100], Message=message)
    except ClientError as e:
        logger.error(f"Failed to send notification '{subject}': {e}")


def instance_name(instance):
    for tag in instance.get("Tags", []):
        if tag["Key"] == "Name":
            return tag["Value"]
    return instance["InstanceId"]


def stop_idle_instance(instance, highest_peak):
    instance_id = instance["InstanceId"]
    name = instance_name(instance)
    try:
        ec2.stop_instances(InstanceIds=[instance_id])
    except ClientError as e:
        logger.error(f"Failed to stop idle instance {instance_id} ({name}): {e}")
        notify(
            f"STOP FAILED: idle instance {name} is still running",
            f"Instance {instance_id} ({name}) peaked at {highest_peak:.1f}% CPU over the last "
            f"{IDLE_HOURS}h but could not be stopped:\n\n{e}\n\n"
            f"It keeps billing until someone stops it by hand.",
        )
        return False

    logger.info(f"Stopped idle instance {instance_id} ({name}), peak CPU {highest_peak:.1f}%")
    notify(
        f"Stopped idle instance {name}",
        f"Instance {instance_id} ({name}) peaked at {highest_peak:.1f}% CPU, below {CPU_THRESHOLD}%, "
        f"for {IDLE_HOURS} consecutive hours and has been stopped.",
    )
    return True


def check_instances(now: Optional[datetime] = None):
    now = now or datetime.now(timezone.utc)
    result = {"stopped": [], "failed": [], ACTIVE: [], TOO_NEW: [], INSUFFICIENT_DATA: [], "errors": 0}

    paginator = ec2.get_paginator("describe_instances")
    for page in paginator.paginate(Filters=[
        {"Name": f"tag:{AUTO_STOP_TAG_KEY}", "Values": [AUTO_STOP_TAG_VALUE]},
        {"Name": "instance-state-name", "Values": ["running"]},
    ]):
        for reservation in page.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                instance_id = instance["InstanceId"]
                launch_time = instance["LaunchTime"]
                try:
                    peaks = []
                    if now - launch_time >= timedelta(hours=IDLE_HOURS):
                        start = max(now - timedelta(hours=IDLE_HOURS), launch_time)
                        peaks = hourly_cpu_peaks(instance_id, start, now)
                    verdict, highest = evaluate_idle(launch_time, now, peaks, IDLE_HOURS, CPU_THRESHOLD)
                except Exception as e:
                    logger.error(f"Failed to evaluate {instance_id}: {e}", exc_info=True)
                    result["errors"] += 1
                    continue

                if verdict != IDLE:
                    logger.info(f"{instance_id}: {verdict} (peak {highest})")
                    result[verdict].append(instance_id)
                elif stop_idle_instance(instance, highest):
                    result["stopped"].append(instance_id)
                else:
                    result["failed"].append(instance_id)

    return result


def handler(event, context):
    """Stop AutoStop-tagged instances that have been idle for IDLE_HOURS."""
    result = check_instances()
    logger.info(f"Idle-stop completed: {result}")
    return {"statusCode": 200, "body": json.dumps(result)}
