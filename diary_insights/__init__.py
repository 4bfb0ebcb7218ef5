"""Diary reflection scheduling: queue producer, consumer and trigger API."""

__version__ = "0.1.0"
