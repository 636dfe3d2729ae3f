"""Multi-user todo API with due-date and overdue email notifications."""

__version__ = "0.1.0"
