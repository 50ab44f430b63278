"""Scale-Down Lambda - Reconciles runner leases, orphaned registrations and stale helpers.

Runs on a schedule. Every tick re-reads the fleet from EC2 tags and the GitHub
runner registry, then works through four independent phases:

1. orphan cleanup: drop GitHub registrations whose instance is gone
2. lease enforcement: renew busy runners, reclaim idle ones whose lease ran out
3. stale helper sweep: terminate image-builder instances that outlived their age ceiling
4. launch retry: re-invoke the launcher for jobs that are still queued

A failure inside one phase, or for one instance, is logged and counted but
never stops the rest of the tick.
"""
import json
import logging
import os
import urllib.error
from datetime import datetime, timezone, timedelta
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import ClientError

import fleet
import github_api
from metrics import put_metric

RUNNER_NAME_PREFIX = os.environ.get("RUNNER_NAME_PREFIX", "ephemeral-")
RUNNER_LABELS = [label for label in os.environ.get("RUNNER_LABELS", "self-hosted").split(",") if label]
LEASE_MINUTES = int(os.environ.get("LEASE_MINUTES", "20"))
STARTUP_GRACE_MINS = int(os.environ.get("STARTUP_GRACE_MINS", "5"))
HELPER_PURPOSE = os.environ.get("HELPER_PURPOSE", "image-builder")
HELPER_MAX_AGE_HOURS = float(os.environ.get("HELPER_MAX_AGE_HOURS", "2"))
LAUNCHER_FUNCTION_NAME = os.environ.get("LAUNCHER_FUNCTION_NAME", "")
GITHUB_REPOSITORIES = [r for r in os.environ.get("GITHUB_REPOSITORIES", "").split(",") if r]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

GONE_STATES = {"terminated", "shutting-down"}

ec2 = boto3.client("ec2")
lambda_client = boto3.client("lambda")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


def new_result() -> Dict:
    return {
        "terminated": [],
        "renewed": [],
        "initialized": [],
        "orphans_removed": [],
        "stale_helpers_terminated": [],
        "retried_launches": [],
        "skipped": 0,
        "errors": 0,
    }


def describe_instances(filters: List[dict]) -> List[dict]:
    paginator = ec2.get_paginator("describe_instances")
    instances = []
    for page in paginator.paginate(Filters=filters):
        for reservation in page.get("Reservations", []):
            instances.extend(reservation.get("Instances", []))
    return instances


def fetch_registrations() -> Optional[List[fleet.RunnerRegistration]]:
    """Current GitHub registrations, or None when GitHub cannot be reached."""
    try:
        runners = github_api.list_runners()
    except Exception as e:
        logger.error(f"Could not list GitHub runners, treating every runner as idle: {e}", exc_info=True)
        return None
    return [fleet.RunnerRegistration.from_api(runner, RUNNER_NAME_PREFIX) for runner in runners]


def cleanup_orphans(registrations: List[fleet.RunnerRegistration], result: Dict):
    """Phase 1 - deregister runners whose backing instance no longer exists."""
    tracked = [r for r in registrations if r.instance_id]
    if not tracked:
        return

    instance_ids = sorted({r.instance_id for r in tracked})
    states = {}
    for i in range(0, len(instance_ids), 100):
        chunk = instance_ids[i:i + 100]
        for instance in describe_instances([{"Name": "instance-id", "Values": chunk}]):
            states[instance["InstanceId"]] = instance["State"]["Name"]

    for registration in tracked:
        state = states.get(registration.instance_id)
        if state is not None and state not in GONE_STATES:
            continue
        try:
            if github_api.delete_runner(registration.registration_id):
                result["orphans_removed"].append(registration.name)
                logger.info(f"Removed orphaned runner {registration.name} "
                            f"(instance {registration.instance_id} is {state or 'gone'})")
        except Exception as e:
            logger.error(f"Failed to remove orphaned runner {registration.name}: {e}", exc_info=True)
            result["errors"] += 1


def write_lease(instance_id: str, expires_at: datetime):
    ec2.create_tags(Resources=[instance_id], Tags=[{"Key": fleet.LEASE_TAG, "Value": fleet.format_lease(expires_at)}])


def reclaim(decision: fleet.LeaseDecision, result: Dict):
    instance_id = decision.instance.instance_id
    registration = decision.registration
    if registration is not None:
        try:
            github_api.delete_runner(registration.registration_id)
        except github_api.GitHubAPIError as e:
            if e.status == 422:
                # GitHub refuses to delete a runner that is running a job
                logger.info(f"Runner {registration.name} picked up a job, not reclaiming {instance_id}")
                result["skipped"] += 1
                return
            logger.error(f"Failed to deregister {registration.name}, terminating anyway: {e}")
            result["errors"] += 1
        except (urllib.error.URLError, TimeoutError) as e:
            logger.error(f"Could not reach GitHub to deregister {registration.name}, terminating anyway: {e}")
            result["errors"] += 1

    ec2.terminate_instances(InstanceIds=[instance_id])
    result["terminated"].append(instance_id)
    logger.info(f"Terminated {instance_id} - idle since lease expired at "
                f"{fleet.format_lease(decision.instance.lease_expires_at)}")


def apply_decision(decision: fleet.LeaseDecision, result: Dict):
    instance_id = decision.instance.instance_id
    if decision.action == fleet.RENEW:
        write_lease(instance_id, decision.lease_expires_at)
        result["renewed"].append(instance_id)
        logger.info(f"Renewed lease on busy runner {instance_id} until {fleet.format_lease(decision.lease_expires_at)}")
    elif decision.action == fleet.INITIALIZE:
        write_lease(instance_id, decision.lease_expires_at)
        result["initialized"].append(instance_id)
        logger.info(f"Initialized missing lease on {instance_id}")
    elif decision.action == fleet.RECLAIM:
        reclaim(decision, result)
    else:
        logger.debug(f"Leaving {instance_id} alone ({decision.action})")
        result["skipped"] += 1


def enforce_leases(registrations: List[fleet.RunnerRegistration], now: datetime, result: Dict):
    """Phase 2 - renew busy runners, reclaim idle runners with lapsed leases."""
    instances = [
        fleet.WorkerInstance.from_ec2(instance)
        for instance in describe_instances([
            {"Name": f"tag:{fleet.PURPOSE_TAG}", "Values": [fleet.RUNNER_PURPOSE]},
            {"Name": "instance-state-name", "Values": ["running"]},
        ])
    ]
    decisions = fleet.plan_leases(
        instances,
        registrations,
        now,
        lease_duration=timedelta(minutes=LEASE_MINUTES),
        startup_grace=timedelta(minutes=STARTUP_GRACE_MINS),
    )
    for decision in decisions:
        try:
            apply_decision(decision, result)
        except Exception as e:
            logger.error(f"Failed to {decision.action} {decision.instance.instance_id}: {e}", exc_info=True)
            result["errors"] += 1


def sweep_stale_helpers(now: datetime, result: Dict):
    """Phase 3 - image builders are short-lived; an old one is a stuck build."""
    max_age = timedelta(hours=HELPER_MAX_AGE_HOURS)
    for instance in describe_instances([
        {"Name": f"tag:{fleet.PURPOSE_TAG}", "Values": [HELPER_PURPOSE]},
        {"Name": "instance-state-name", "Values": ["pending", "running"]},
    ]):
        instance_id = instance["InstanceId"]
        age = now - instance["LaunchTime"]
        if age <= max_age:
            continue
        try:
            ec2.terminate_instances(InstanceIds=[instance_id])
            result["stale_helpers_terminated"].append(instance_id)
            logger.info(f"Terminated stale {HELPER_PURPOSE} {instance_id} - running for {age}")
        except ClientError as e:
            logger.error(f"Failed to terminate {instance_id}: {e}")
            result["errors"] += 1


def queued_job_labels(jobs: Iterable[dict]) -> Dict[str, List[str]]:
    """Map each architecture with a queued self-hosted job to one job's labels."""
    wanted = {}
    for job in jobs:
        if job.get("status") != "queued":
            continue
        labels = job.get("labels") or []
        if not fleet.labels_match(labels, RUNNER_LABELS):
            continue
        wanted.setdefault(fleet.infer_architecture(labels), labels)
    return wanted


def retry_queued_launches(result: Dict):
    """Phase 4 - webhook deliveries get lost; launch again for anything still queued."""
    if not LAUNCHER_FUNCTION_NAME:
        logger.debug("LAUNCHER_FUNCTION_NAME not set, skipping launch retry")
        return

    repositories = GITHUB_REPOSITORIES or github_api.list_installation_repositories()
    wanted = {}
    for repository in repositories:
        try:
            for run in github_api.list_pending_runs(repository):
                jobs = github_api.list_run_jobs(repository, run["id"])
                for architecture, labels in queued_job_labels(jobs).items():
                    wanted.setdefault(architecture, labels)
        except Exception as e:
            logger.error(f"Failed to read queued jobs for {repository}: {e}", exc_info=True)
            result["errors"] += 1

    for architecture, labels in sorted(wanted.items()):
        payload = {
            "internal_retry": True,
            "action": "queued",
            "workflow_job": {"labels": list(labels)},
        }
        try:
            lambda_client.invoke(
                FunctionName=LAUNCHER_FUNCTION_NAME,
                InvocationType="Event",
                Payload=json.dumps(payload).encode(),
            )
            result["retried_launches"].append(architecture)
            logger.info(f"Re-invoked {LAUNCHER_FUNCTION_NAME} for queued {architecture} jobs")
        except ClientError as e:
            logger.error(f"Failed to re-invoke launcher for {architecture}: {e}")
            result["errors"] += 1


def run_phase(name: str, result: Dict, func, *args):
    try:
        func(*args)
    except Exception as e:
        logger.error(f"Phase {name} failed: {e}", exc_info=True)
        result["errors"] += 1


def reconcile(now: Optional[datetime] = None) -> Dict:
    now = now or datetime.now(timezone.utc)
    result = new_result()

    registrations = fetch_registrations()
    github_reachable = registrations is not None

    if github_reachable:
        run_phase("orphan-cleanup", result, cleanup_orphans, registrations, result)
    run_phase("lease-enforcement", result, enforce_leases, registrations or [], now, result)
    run_phase("stale-helper-sweep", result, sweep_stale_helpers, now, result)
    if github_reachable:
        run_phase("launch-retry", result, retry_queued_launches, result)

    put_metric("RunnersReclaimed", len(result["terminated"]))
    put_metric("LeasesRenewed", len(result["renewed"]))
    put_metric("OrphansRemoved", len(result["orphans_removed"]))
    return result


def handler(event, context):
    """Reconcile the runner fleet."""
    result = reconcile()
    logger.info(f"Scale-down completed: {result}")
    return {"statusCode": 200, "body": json.dumps(result)}
