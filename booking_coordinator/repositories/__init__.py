"""Booking aggregate stores."""
