"""CloudWatch helpers - custom fleet metrics and CPU utilization reads."""
import logging
import os
from datetime import datetime
from typing import List

import boto3

NAMESPACE = "GitHubRunners"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

cloudwatch = boto3.client("cloudwatch")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


def put_metric(metric_name: str, value: float, unit: str = "Count", dimensions: dict = None,
               namespace: str = NAMESPACE):
    """Put custom CloudWatch metric."""
    try:
        cloudwatch.put_metric_data(
            Namespace=namespace,
            MetricData=[{
                "MetricName": metric_name,
                "Value": value,
                "Unit": unit,
                "Dimensions": [{"Name": k, "Value": v} for k, v in (dimensions or {}).items()]
            }]
        )
    except Exception as e:
        logger.warning(f"Failed to put metric {metric_name}: {e}")


def hourly_cpu_peaks(instance_id: str, start: datetime, end: datetime) -> List[float]:
    """Hourly maximum CPUUtilization for an instance, oldest hour first."""
    response = cloudwatch.get_metric_statistics(
        Namespace="AWS/EC2",
        MetricName="CPUUtilization",
        Dimensions=[{"Name": "InstanceId", "Value": instance_id}],
        StartTime=start,
        EndTime=end,
        Period=3600,
        Statistics=["Maximum"],
    )
    datapoints = sorted(response.get("Datapoints", []), key=lambda d: d["Timestamp"])
    return [d["Maximum"] for d in datapoints]
