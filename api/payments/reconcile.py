"""Payment reconciliation sweep endpoint (can be called via Vercel cron)."""

import json
import logging
from src.services.engine import get_engine, run_sync

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

DEFAULT_MAX_ITEMS = 50


def handler(request):
    """
    Verify unsettled Chapa checkouts once each.

    Can be called manually or via Vercel cron job.
    """
    try:
        query_params = request.get("query", {}) or {}
        max_items = int(query_params.get("max_items", str(DEFAULT_MAX_ITEMS)))
        if max_items <= 0:
            raise ValueError("max_items must be positive")
    except (TypeError, ValueError) as e:
        return {
            "statusCode": 400,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({"error": f"invalid max_items: {e}"})
        }

    try:
        summary = run_sync(get_engine().reconciler.reconcile_pending_once(max_items))

        return {
            "statusCode": 200,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({
                "ok": True,
                "summary": summary,
                "max_items": max_items
            })
        }

    except Exception as e:
        logger.error(f"Error reconciling payments: {e}", exc_info=True)
        return {
            "statusCode": 500,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({"error": str(e)})
        }
