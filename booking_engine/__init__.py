"""Scheduling engine: availability, conflict detection, recurring series and booking lifecycle."""

__version__ = "1.0.0"
