"""Booking availability, pricing and lifecycle service for a vacation-rental marketplace."""

__version__ = "1.0.0"
