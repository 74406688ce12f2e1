"""calwatch: Google Calendar sync and upcoming-event notifications for a chat bot."""

__version__ = "0.1.0"
