#!/usr/bin/env python3
"""
Complete booking and payment flow against a local server.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls and signed provider webhooks.
All rules live in the backend.

Usage:
    python scripts/flow_book_and_pay.py --builder-id builder-1 --start 2026-11-02T15:00:00+00:00
    python scripts/flow_book_and_pay.py --builder-id builder-1 --start 2026-11-02T15:00:00+00:00 --cancel

Flow:
    1. Mint a client session token
    2. Create booking
    3. Send signed Calendly invitee.created webhook
    4. Read booking (payment session is opened in the background)
    5. Send signed Stripe checkout.session.completed webhook
    6. Read booking and history
    7. Optionally cancel (refund follows the notice-period policy)
"""

import argparse
import json
import sys
import time
import uuid
from datetime import UTC, datetime, timedelta

import httpx
from jose import jwt

from booking_coordinator.config import settings
from booking_coordinator.core.webhook_security import (
    CALENDLY_SIGNATURE_HEADER,
    STRIPE_SIGNATURE_HEADER,
    sign_webhook_payload,
)

BASE_URL = "http://localhost:8000"


def mint_token(user_id: str, roles: list[str]) -> str:
    """Mint a session token the way the identity provider would."""
    claims = {
        "sub": user_id,
        settings.auth_roles_claim: roles,
        "exp": datetime.now(UTC) + timedelta(hours=1),
    }
    if settings.auth_jwt_audience:
        claims["aud"] = settings.auth_jwt_audience
    return jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def api_request(token: str, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make authenticated API request."""
    headers = {"Authorization": f"Bearer {token}"}
    url = f"{BASE_URL}{settings.api_prefix}{endpoint}"

    if method == "GET":
        response = httpx.get(url, headers=headers, timeout=10.0)
    elif method == "POST":
        response = httpx.post(url, headers=headers, json=data or {}, timeout=10.0)
    else:
        raise ValueError(f"Unknown method: {method}")

    return {"status": response.status_code, "data": response.json() if response.text else {}}


def send_webhook(provider: str, body: dict, secret: str | None, header: str) -> dict:
    """POST a provider webhook signed with the configured secret."""
    if not secret:
        print(f"ERROR: no {provider} signing secret configured")
        sys.exit(1)
    payload = json.dumps(body).encode("utf-8")
    signature = sign_webhook_payload(secret, payload, int(time.time()))
    response = httpx.post(
        f"{BASE_URL}{settings.api_prefix}/webhooks/{provider}",
        content=payload,
        headers={header: signature, "Content-Type": "application/json"},
        timeout=10.0,
    )
    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None):
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    data = result["data"]
    if fields and isinstance(data, dict):
        data = {k: data.get(k) for k in fields if k in data}
    print(json.dumps(data, indent=2))
    return True


def main():
    parser = argparse.ArgumentParser(description="Complete booking and payment flow")
    parser.add_argument("--builder-id", required=True, help="Builder id")
    parser.add_argument("--start", required=True, help="Session start (ISO-8601 with offset)")
    parser.add_argument("--minutes", type=int, default=60, help="Session length")
    parser.add_argument("--amount", type=int, default=15000, help="Price in minor units")
    parser.add_argument("--client-id", default="client-demo", help="Client id")
    parser.add_argument("--email", default="client@example.com", help="Client email")
    parser.add_argument("--cancel", action="store_true", help="Cancel after payment")
    args = parser.parse_args()

    start = datetime.fromisoformat(args.start)
    end = start + timedelta(minutes=args.minutes)

    # Step 1: Token
    print_step(1, "Mint client token")
    token = mint_token(args.client_id, ["client"])
    print(f"Token for {args.client_id}")

    # Step 2: Create booking
    print_step(2, "Create booking")
    created = api_request(token, "POST", "/bookings", {
        "builder_id": args.builder_id,
        "session_type_id": "consultation",
        "requested_start": start.isoformat(),
        "requested_end": end.isoformat(),
        "client_timezone": "UTC",
        "client_email": args.email,
        "amount": args.amount,
    })
    if not print_result(created):
        sys.exit(1)
    booking_id = created["data"]["booking_id"]

    # Step 3: Calendly confirms the slot
    print_step(3, "Calendly invitee.created")
    event_uri = f"https://api.calendly.com/scheduled_events/{uuid.uuid4()}"
    calendly = send_webhook("calendly", {
        "event": "invitee.created",
        "created_at": datetime.now(UTC).isoformat(),
        "payload": {
            "uri": f"{event_uri}/invitees/{uuid.uuid4()}",
            "email": args.email,
            "timezone": "UTC",
            "scheduled_event": {
                "uri": event_uri,
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
            },
            "tracking": {"utm_content": booking_id},
        },
    }, settings.calendly_webhook_signing_key, CALENDLY_SIGNATURE_HEADER)
    if not print_result(calendly):
        sys.exit(1)

    # Step 4: Payment session
    print_step(4, "Read booking")
    time.sleep(2)
    booking = api_request(token, "GET", f"/bookings/{booking_id}")
    if not print_result(booking, ["state", "payment_state", "processing"]):
        sys.exit(1)

    # Step 5: Stripe reports the checkout as paid
    print_step(5, "Stripe checkout.session.completed")
    stripe_result = send_webhook("stripe", {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": f"cs_test_{uuid.uuid4().hex[:24]}",
                "object": "checkout.session",
                "payment_status": "paid",
                "client_reference_id": booking_id,
                "metadata": {"booking_id": booking_id},
            }
        },
    }, settings.stripe_webhook_secret, STRIPE_SIGNATURE_HEADER)
    if not print_result(stripe_result):
        sys.exit(1)

    # Step 6: Confirmed
    print_step(6, "Read booking and history")
    booking = api_request(token, "GET", f"/bookings/{booking_id}")
    print_result(booking, ["state", "payment_state", "processing"])
    history = api_request(token, "GET", f"/bookings/{booking_id}/history")
    print_result(history)

    if not args.cancel:
        print("\n" + "="*60)
        print("FLOW COMPLETE")
        print("="*60)
        return

    # Step 7: Cancel
    print_step(7, "Cancel booking")
    cancelled = api_request(token, "POST", f"/bookings/{booking_id}/cancel", {"reason": "Plans changed"})
    if not print_result(cancelled):
        sys.exit(1)

    print("\n" + "="*60)
    print("FLOW COMPLETE (cancelled)")
    print("="*60)


if __name__ == "__main__":
    main()
