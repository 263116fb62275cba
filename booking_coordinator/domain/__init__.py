"""Booking domain: aggregate, events, state machines and refund policy."""
