"""
Delivery health report - sends delivery stats to Discord.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import requests

from insight_delivery.database.connection import Database
from insight_delivery.database.repository import (
    ChannelAttemptRepository,
    DeliveryJobRepository,
    TrackingRepository,
)

SUCCESS_RATE_TARGET = 99.0
LATENCY_TARGET_MS = 5000.0


def collect_health(
    db: Database, window_hours: int = 24, now: Optional[datetime] = None
) -> dict[str, Any]:
    """Gather job counts and attempt stats for the trailing window."""
    now = now or datetime.now(timezone.utc)
    stats = ChannelAttemptRepository(db).delivery_stats(now - timedelta(hours=window_hours))
    return {
        "window_hours": window_hours,
        "active_tracking": len(TrackingRepository(db).list_active_tracking()),
        "jobs": DeliveryJobRepository(db).count_by_status(),
        "attempts": stats,
        "healthy": (
            stats["total"] == 0
            or stats["success_rate_percent"] >= SUCCESS_RATE_TARGET
        ),
    }


def format_report(health: dict[str, Any]) -> str:
    """Plain text version of the report."""
    attempts = health["attempts"]
    lines = [
        f"Window: last {health['window_hours']}h",
        f"Active tracking: {health['active_tracking']}",
        "Jobs: " + (", ".join(f"{k}={v}" for k, v in sorted(health["jobs"].items())) or "none"),
        f"Attempts: {attempts['total']} ({attempts['success_rate_percent']}% success)",
    ]
    for channel, c in attempts["channels"].items():
        slow = " SLOW" if c["max_latency_ms"] > LATENCY_TARGET_MS else ""
        lines.append(
            f"  {channel}: {c['succeeded']}/{c['total']} ok, "
            f"avg {c['avg_latency_ms']}ms, max {c['max_latency_ms']}ms{slow}"
        )
    return "\n".join(lines)


def run_healthcheck(db: Database, window_hours: int = 24) -> dict[str, Any]:
    """Run health check and send status to Discord.

    Args:
        db: Database instance (already initialized)
        window_hours: Size of the trailing window to report on
    """
    health = collect_health(db, window_hours)
    report = format_report(health)

    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        print(report)
        return health

    payload = {
        "embeds": [{
            "title": "Insight Delivery Health Check",
            "description": (
                "Delivery is within target."
                if health["healthy"]
                else f"Success rate below {SUCCESS_RATE_TARGET}%."
            ),
            "color": 0x2ECC71 if health["healthy"] else 0xFF0000,
            "fields": [
                {"name": "Report", "value": f"```{report}```", "inline": False},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }]
    }

    response = requests.post(webhook_url, json=payload, timeout=10)
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"{now} - Health check sent (status: {response.status_code})")
    return health
