"""Cost-Report Lambda - Emails yesterday's AWS spend and the month-to-date total."""
import json
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import boto3

SNS_TOPIC_ARN = os.environ["SNS_TOPIC_ARN"]
TOP_SERVICES = int(os.environ.get("TOP_SERVICES", "10"))
MIN_SERVICE_COST = 0.01
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ce = boto3.client("ce")
sns = boto3.client("sns")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


def report_periods(today: date) -> Tuple[Tuple[date, date], Tuple[date, date]]:
    """(yesterday, month-to-date) as half-open [start, end) periods.

    On the first of the month month-to-date would be empty, so the whole
    previous month is reported instead.
    """
    yesterday = (today - timedelta(days=1), today)
    month_start = today.replace(day=1)
    if month_start == today:
        month_start = (today - timedelta(days=1)).replace(day=1)
    return yesterday, (month_start, today)


def costs_by_service(start: date, end: date) -> Dict[str, float]:
    response = ce.get_cost_and_usage(
        TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
        Granularity="DAILY",
        Metrics=["UnblendedCost"],
        GroupBy=[{"Type": "DIMENSION", "Key": "SERVICE"}],
    )
    services = {}
    for day in response["ResultsByTime"]:
        for group in day.get("Groups", []):
            service = group["Keys"][0]
            services[service] = services.get(service, 0.0) + float(group["Metrics"]["UnblendedCost"]["Amount"])
    return services


def total_cost(start: date, end: date) -> float:
    response = ce.get_cost_and_usage(
        TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
        Granularity="MONTHLY",
        Metrics=["UnblendedCost"],
    )
    return sum(float(period["Total"]["UnblendedCost"]["Amount"]) for period in response["ResultsByTime"])


def format_report(day: date, services: Dict[str, float], month: Tuple[date, date], month_total: float) -> str:
    ranked: List[Tuple[str, float]] = sorted(
        ((name, cost) for name, cost in services.items() if cost >= MIN_SERVICE_COST),
        key=lambda item: item[1],
        reverse=True,
    )
    lines = [
        f"AWS spend for {day.isoformat()}: ${sum(services.values()):.2f}",
        "",
    ]
    for name, cost in ranked[:TOP_SERVICES]:
        lines.append(f"  {name:<50} ${cost:>9.2f}")
    if len(ranked) > TOP_SERVICES:
        rest = sum(cost for _, cost in ranked[TOP_SERVICES:])
        lines.append(f"  {'(other services)':<50} ${rest:>9.2f}")
    lines += [
        "",
        f"Total {month[0].isoformat()} to {(month[1] - timedelta(days=1)).isoformat()}: ${month_total:.2f}",
    ]
    return "\n".join(lines)


def send_report(today: Optional[date] = None) -> Dict:
    today = today or datetime.now(timezone.utc).date()
    (day_start, day_end), month = report_periods(today)

    services = costs_by_service(day_start, day_end)
    month_total = total_cost(*month)
    report = format_report(day_start, services, month, month_total)

    day_total = sum(services.values())
    sns.publish(
        TopicArn=SNS_TOPIC_ARN,
        Subject=f"AWS cost report {day_start.isoformat()}: ${day_total:.2f}",
        Message=report,
    )
    logger.info(f"Sent cost report for {day_start}: ${day_total:.2f} (period total ${month_total:.2f})")
    return {"date": day_start.isoformat(), "total": round(day_total, 2), "period_total": round(month_total, 2)}


def handler(event, context):
    """Publish the daily cost report."""
    result = send_report()
    return {"statusCode": 200, "body": json.dumps(result)}
