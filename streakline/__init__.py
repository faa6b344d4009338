"""Streakline: habit-tracking engagement engine (streaks, badges, compliance)."""

__version__ = "0.1.0"
