"""Booking lifecycle orchestrator for the car-rental backend."""

__version__ = "1.0.0"
