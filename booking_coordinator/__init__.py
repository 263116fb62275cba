"""Booking lifecycle coordinator."""

__version__ = "1.0.0"
