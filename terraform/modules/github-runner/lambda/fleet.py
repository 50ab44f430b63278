"""Runner fleet model shared by the scale-up and scale-down Lambdas.

Fleet state lives entirely in EC2 tags and in GitHub's runner registry. This
module turns both into small value objects and decides, without touching AWS,
what should happen to each runner on a reconcile tick.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

PURPOSE_TAG = "Purpose"
RUNNER_PURPOSE = "github-runner"
ARCHITECTURE_TAG = "Architecture"
LEASE_TAG = "LeaseExpiresAt"

ARM64 = "arm64"
X86_64 = "x86_64"
ARCHITECTURES = (ARM64, X86_64)
X86_LABEL_ALIASES = {"x64", "x86_64", "amd64"}

LEASE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Lease decisions
STARTING = "starting"
RENEW = "renew"
INITIALIZE = "initialize"
RECLAIM = "reclaim"
KEEP = "keep"


def infer_architecture(labels: Iterable[str]) -> str:
    """Pick the runner architecture a job asks for; arm64 unless an x86 alias is present."""
    if any(label.lower() in X86_LABEL_ALIASES for label in labels):
        return X86_64
    return ARM64


def labels_match(job_labels: Iterable[str], runner_labels: Iterable[str]) -> bool:
    wanted = {label.lower() for label in runner_labels if label}
    if not wanted:
        return True
    return bool(wanted.intersection(label.lower() for label in job_labels))


def format_lease(expires_at: datetime) -> str:
    return expires_at.astimezone(timezone.utc).strftime(LEASE_FORMAT)


def parse_lease(value: Optional[str]) -> Optional[datetime]:
    """Parse a lease tag value. Garbage is treated the same as a missing tag."""
    if not value:
        return None
    try:
        return datetime.strptime(value, LEASE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def lease_tags(architecture: str, expires_at: datetime) -> List[Dict[str, str]]:
    return [
        {"Key": PURPOSE_TAG, "Value": RUNNER_PURPOSE},
        {"Key": ARCHITECTURE_TAG, "Value": architecture},
        {"Key": LEASE_TAG, "Value": format_lease(expires_at)},
    ]


def runner_name(prefix: str, instance_id: str) -> str:
    return f"{prefix}{instance_id}"


def instance_id_from_runner_name(name: str, prefix: str) -> Optional[str]:
    match = re.fullmatch(re.escape(prefix) + r"(i-[0-9a-f]{8,17})", name or "")
    return match.group(1) if match else None


def tags_to_dict(tags) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in tags or []}


@dataclass
class WorkerInstance:
    instance_id: str
    architecture: str
    launch_time: datetime
    state: str
    lease_expires_at: Optional[datetime] = None

    @classmethod
    def from_ec2(cls, instance: dict) -> "WorkerInstance":
        tags = tags_to_dict(instance.get("Tags"))
        return cls(
            instance_id=instance["InstanceId"],
            architecture=tags.get(ARCHITECTURE_TAG) or instance.get("Architecture", ARM64),
            launch_time=instance["LaunchTime"],
            state=instance.get("State", {}).get("Name", "unknown"),
            lease_expires_at=parse_lease(tags.get(LEASE_TAG)),
        )


@dataclass
class RunnerRegistration:
    registration_id: int
    name: str
    busy: bool
    instance_id: Optional[str] = None

    @classmethod
    def from_api(cls, runner: dict, prefix: str) -> "RunnerRegistration":
        return cls(
            registration_id=runner["id"],
            name=runner["name"],
            busy=bool(runner.get("busy")),
            instance_id=instance_id_from_runner_name(runner["name"], prefix),
        )


@dataclass
class LeaseDecision:
    action: str
    instance: WorkerInstance
    registration: Optional[RunnerRegistration] = None
    lease_expires_at: Optional[datetime] = None


def plan_leases(
    instances: Iterable[WorkerInstance],
    registrations: Iterable[RunnerRegistration],
    now: datetime,
    lease_duration: timedelta,
    startup_grace: timedelta,
) -> List[LeaseDecision]:
    """Decide the lease action for every running worker.

    Busy runners get a fresh lease of ``now + lease_duration``. Idle runners
    are never renewed, so their lease runs out and they are reclaimed on the
    first tick after expiry. A runner without a lease gets one and survives at
    least one more interval.
    """
    by_instance = {r.instance_id: r for r in registrations if r.instance_id}
    decisions = []
    for instance in instances:
        registration = by_instance.get(instance.instance_id)
        if now - instance.launch_time < startup_grace:
            decisions.append(LeaseDecision(STARTING, instance, registration))
        elif registration is not None and registration.busy:
            decisions.append(LeaseDecision(RENEW, instance, registration, now + lease_duration))
        elif instance.lease_expires_at is None:
            decisions.append(LeaseDecision(INITIALIZE, instance, registration, now + lease_duration))
        elif instance.lease_expires_at <= now:
            decisions.append(LeaseDecision(RECLAIM, instance, registration))
        else:
            decisions.append(LeaseDecision(KEEP, instance, registration, instance.lease_expires_at))
    return decisions
