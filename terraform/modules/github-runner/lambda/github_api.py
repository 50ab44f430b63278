"""GitHub API client - GitHub App auth, runner registry and job queue."""
import base64
import json
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import boto3
import jwt

SECRET_ARN = os.environ.get("SECRET_ARN", "")
GITHUB_ORG = os.environ.get("GITHUB_ORG", "")
GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com").rstrip("/")
REQUEST_TIMEOUT = int(os.environ.get("GITHUB_TIMEOUT_SECS", "10"))
PER_PAGE = 100
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

secrets = boto3.client("secretsmanager")
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


class GitHubAPIError(Exception):
    """A GitHub call that came back with a non-retryable status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"GitHub API error {status}: {message}")
        self.status = status


def _is_rate_limited(e: urllib.error.HTTPError) -> bool:
    if e.code == 429:
        return True
    headers = e.headers or {}
    return e.code == 403 and (
        headers.get("Retry-After") is not None or headers.get("X-RateLimit-Remaining") == "0"
    )


def retry_github_api(max_retries: int = 3, backoff_factor: float = 2.0):
    """Decorator for GitHub API calls with exponential backoff and rate limit handling."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                last_attempt = attempt == max_retries - 1
                try:
                    return func(*args, **kwargs)
                except urllib.error.HTTPError as e:
                    if _is_rate_limited(e):
                        wait_time = int(float((e.headers or {}).get("Retry-After", backoff_factor ** attempt)))
                        reason = "Rate limited"
                    elif e.code in [500, 502, 503, 504]:
                        wait_time = backoff_factor ** attempt
                        reason = f"Server error {e.code}"
                    else:
                        # Other 4xx are the caller's problem
                        raise
                    if last_attempt:
                        raise
                except (urllib.error.URLError, TimeoutError) as e:
                    if last_attempt:
                        raise
                    wait_time = backoff_factor ** attempt
                    reason = f"Error {e}"
                logger.warning(f"{reason} (attempt {attempt + 1}/{max_retries}), waiting {wait_time}s")
                time.sleep(wait_time)
        return wrapper
    return decorator


_github_app_config = None
_installation_token = None
_installation_token_expires = 0.0


def get_github_app_config() -> Dict[str, Any]:
    global _github_app_config
    if _github_app_config is None:
        if not SECRET_ARN:
            _github_app_config = {}
        else:
            response = secrets.get_secret_value(SecretId=SECRET_ARN)
            _github_app_config = json.loads(response["SecretString"])
    return _github_app_config


def get_webhook_secret() -> Optional[str]:
    """Shared webhook secret, or None when the deployment has not configured one."""
    return get_github_app_config().get("webhook_secret") or None


def generate_jwt() -> str:
    config = get_github_app_config()
    private_key = base64.b64decode(config["private_key"]).decode()
    now = int(time.time())
    payload = {"iat": now - 60, "exp": now + 600, "iss": str(config["app_id"])}
    return jwt.encode(payload, private_key, algorithm="RS256")


@retry_github_api(max_retries=3)
def _fetch_installation_token() -> str:
    config = get_github_app_config()
    url = f"{GITHUB_API_URL}/app/installations/{config['installation_id']}/access_tokens"
    req = urllib.request.Request(url, method="POST", headers={
        "Authorization": f"Bearer {generate_jwt()}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    })
    with urllib.request.urlopen(req, timeout=REQUEST_TIMEOUT) as response:
        return json.loads(response.read())["token"]


def get_installation_token() -> str:
    # Installation tokens live an hour; reuse across warm invocations
    global _installation_token, _installation_token_expires
    if _installation_token is None or time.time() >= _installation_token_expires:
        _installation_token = _fetch_installation_token()
        _installation_token_expires = time.time() + 50 * 60
    return _installation_token


@retry_github_api(max_retries=3)
def _send(method: str, url: str, token: str):
    req = urllib.request.Request(url, method=method, headers={
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    })
    with urllib.request.urlopen(req, timeout=REQUEST_TIMEOUT) as response:
        raw = response.read()
        return json.loads(raw) if raw else None


def api_request(method: str, path: str, params: Optional[Dict[str, Any]] = None):
    url = f"{GITHUB_API_URL}{path}"
    if params:
        url = f"{url}?{urllib.parse.urlencode(params)}"
    try:
        return _send(method, url, get_installation_token())
    except urllib.error.HTTPError as e:
        raise GitHubAPIError(e.code, f"{method} {path}: {e.reason}") from e


def paginate(path: str, key: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
    items = []
    page = 1
    while True:
        data = api_request("GET", path, {**(params or {}), "per_page": PER_PAGE, "page": page})
        batch = (data or {}).get(key, [])
        items.extend(batch)
        if len(batch) < PER_PAGE:
            return items
        page += 1


def list_runners() -> List[dict]:
    """All self-hosted runners registered to the organization."""
    return paginate(f"/orgs/{GITHUB_ORG}/actions/runners", "runners")


def delete_runner(runner_id: int) -> bool:
    """Deregister a runner. Returns False if GitHub no longer knows it."""
    try:
        api_request("DELETE", f"/orgs/{GITHUB_ORG}/actions/runners/{runner_id}")
    except GitHubAPIError as e:
        if e.status == 404:
            logger.info(f"Runner {runner_id} already deregistered")
            return False
        raise
    return True


def list_installation_repositories() -> List[str]:
    repos = paginate("/installation/repositories", "repositories")
    return [repo["full_name"] for repo in repos if not repo.get("archived")]


def list_pending_runs(repository: str) -> List[dict]:
    """Workflow runs that may still have jobs waiting for a runner."""
    runs = []
    # A run goes in_progress as soon as its first job starts, while siblings can still be queued
    for status in ("queued", "in_progress"):
        runs.extend(paginate(f"/repos/{repository}/actions/runs", "workflow_runs", {"status": status}))
    return runs


def list_run_jobs(repository: str, run_id: int) -> List[dict]:
    return paginate(f"/repos/{repository}/actions/runs/{run_id}/jobs", "jobs", {"filter": "latest"})
