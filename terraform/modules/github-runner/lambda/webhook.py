"""Webhook Lambda - Receives GitHub workflow_job events and launches runners."""
import base64
import hashlib
import hmac
import json
import logging
import os

import github_api
import scale_up

INTERNAL_RETRY_KEY = "internal_retry"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)


def verify_signature(payload, signature, secret):
    """Check a GitHub X-Hub-Signature-256 header. No secret configured means no check."""
    if not secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def response(status_code, body):
    return {"statusCode": status_code, "body": json.dumps(body)}


def handle_internal_retry(event, request_id):
    """Direct invocation from the scale-down reconciler. Errors propagate to the invoker."""
    labels = (event.get("workflow_job") or {}).get("labels", [])
    logger.info(f"[{request_id}] Internal launch retry for labels={labels}")
    result = scale_up.handle_job_queued(event)
    logger.info(f"[{request_id}] Internal retry result: {result}")
    return response(200, {**result, "request_id": request_id})


def handler(event, context):
    """Handle GitHub webhook events."""
    request_id = context.aws_request_id if context else "unknown"

    if event.get(INTERNAL_RETRY_KEY) is True:
        return handle_internal_retry(event, request_id)

    logger.info(f"[{request_id}] Processing webhook event")

    try:
        body = event.get("body") or ""
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode()

        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
        github_event = headers.get("x-github-event", "")
        github_delivery = headers.get("x-github-delivery", "unknown")

        logger.info(f"[{request_id}] Event: {github_event}, Delivery: {github_delivery}")

        secret = github_api.get_webhook_secret()
        if not verify_signature(body.encode(), headers.get("x-hub-signature-256", ""), secret):
            logger.warning(f"[{request_id}] Invalid webhook signature for delivery {github_delivery}")
            return response(401, {"error": "Invalid signature", "request_id": request_id})

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            logger.error(f"[{request_id}] Invalid JSON in webhook: {e}", exc_info=True)
            return response(400, {"error": "Invalid JSON", "request_id": request_id, "details": str(e)})

        if github_event and github_event != "workflow_job":
            logger.debug(f"[{request_id}] Ignoring event type: {github_event}")
            return response(200, {"message": "Ignored", "event": github_event})

        repository = (payload.get("repository") or {}).get("full_name", "unknown")
        logger.info(f"[{request_id}] action={payload.get('action')}, repo={repository}")

        result = scale_up.handle_job_queued(payload)
        return response(200, {**result, "request_id": request_id})

    except scale_up.LaunchError as e:
        logger.error(f"[{request_id}] Failed to launch runner: {e}", exc_info=True)
        return response(500, {"error": str(e), "request_id": request_id, "type": type(e).__name__})

    except Exception as e:
        logger.error(f"[{request_id}] Error processing webhook: {e}", exc_info=True)
        return response(500, {
            "error": "Internal server error",
            "request_id": request_id,
            "type": type(e).__name__
        })
