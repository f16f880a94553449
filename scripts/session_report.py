#!/usr/bin/env python3
"""Print the signed-in user's active sessions and unread security alerts.

Usage:
    # Reuse stored credentials:
    python scripts/session_report.py

    # Sign in first:
    CIVIC_EMAIL=me@example.com CIVIC_PASSWORD=secret python scripts/session_report.py

    # Sign out every other device after printing the report:
    python scripts/session_report.py --revoke-others

Environment Variables:
    CIVIC_API_BASE_URL: API root (default http://localhost:5000/api)
    CIVIC_CREDENTIAL_BACKEND: memory, file or redis
    CIVIC_EMAIL / CIVIC_PASSWORD: Credentials used when none are stored
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _session_row(session) -> dict:
    return {
        "id": session.id,
        "device": session.device_label,
        "location": session.location,
        "status": session.status.value,
        "risk": session.risk_level.value,
        "current": session.is_current,
        "login_time": session.login_time.isoformat(),
    }


def _alert_row(alert) -> dict:
    return {
        "id": alert.id,
        "type": alert.type,
        "severity": alert.severity.value,
        "status": alert.status.value,
        "created_at": alert.created_at.isoformat(),
    }


async def session_report(
    email: str | None, password: str | None, revoke_others: bool = False
) -> dict:
    # Import here so env vars set by main() are picked up by settings
    from civicsession.logging import set_correlation_id
    from civicsession.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()
    try:
        if await runtime.auth.restore() is None:
            if not email or not password:
                raise RuntimeError("no stored credentials; pass --email and --password")
            await runtime.auth.login(email, password)

        sessions = await runtime.sessions.list_sessions()
        await runtime.alerts.fetch()
        report = {
            "sessions": [_session_row(s) for s in sessions],
            "unread_alerts": [
                _alert_row(a) for a in runtime.alerts.alerts if a.status.value == "unread"
            ],
        }
        if revoke_others:
            report["revoked_count"] = await runtime.sessions.revoke_all_others()
        return report
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Report active sessions and unread security alerts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("CIVIC_EMAIL"),
        help="Account email (or set CIVIC_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("CIVIC_PASSWORD"),
        help="Account password (or set CIVIC_PASSWORD env var)",
    )
    parser.add_argument(
        "--revoke-others",
        action="store_true",
        help="Revoke every session except this one after reporting",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Override CIVIC_API_BASE_URL",
    )

    args = parser.parse_args()
    if args.base_url:
        os.environ["CIVIC_API_BASE_URL"] = args.base_url

    from civicsession.service.errors import ServiceError

    try:
        result = asyncio.run(session_report(args.email, args.password, args.revoke_others))
    except (ServiceError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
